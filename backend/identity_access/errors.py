"""
Error catalog shared by the identity, teaching and realtime packages.

Each family carries a ``kind`` code. Callers branch on ``kind`` rather than on
message text; messages are short machine-ish strings like the web layer's
``invalid_title`` codes.
"""
from __future__ import annotations

from typing import ClassVar, FrozenSet, Optional

INVALID_CREDENTIALS = "invalid-credentials"
DUPLICATE_ACCOUNT = "duplicate-account"
TRANSPORT_ERROR = "transport-error"
TIMEOUT = "timeout"
AUTHORIZATION_DENIED = "authorization-denied"
VALIDATION_FAILED = "validation-failed"
NOT_FOUND = "not-found"


class ProgressTrackerError(Exception):
    """Base class: ``kind`` must be one of the subclass's ``KINDS``."""

    KINDS: ClassVar[FrozenSet[str]] = frozenset()

    def __init__(self, kind: str, detail: Optional[str] = None) -> None:
        if kind not in self.KINDS:
            raise ValueError(f"unknown {type(self).__name__} kind: {kind}")
        super().__init__(f"{kind}: {detail}" if detail else kind)
        self.kind = kind
        self.detail = detail


class AuthError(ProgressTrackerError):
    KINDS = frozenset({INVALID_CREDENTIALS, DUPLICATE_ACCOUNT, TRANSPORT_ERROR})


class ResolutionError(ProgressTrackerError):
    KINDS = frozenset({TIMEOUT, TRANSPORT_ERROR})


class QueryError(ProgressTrackerError):
    KINDS = frozenset({AUTHORIZATION_DENIED, VALIDATION_FAILED, TRANSPORT_ERROR, NOT_FOUND})


class SubscriptionError(ProgressTrackerError):
    KINDS = frozenset({TRANSPORT_ERROR})


__all__ = [
    "AUTHORIZATION_DENIED",
    "DUPLICATE_ACCOUNT",
    "INVALID_CREDENTIALS",
    "NOT_FOUND",
    "TIMEOUT",
    "TRANSPORT_ERROR",
    "VALIDATION_FAILED",
    "AuthError",
    "ProgressTrackerError",
    "QueryError",
    "ResolutionError",
    "SubscriptionError",
]
