"""Shared plumbing for the teaching services: reads, writes, input checks."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional, TypeVar

from identity_access.domain import Profile
from identity_access.errors import AUTHORIZATION_DENIED, VALIDATION_FAILED, QueryError
from storage.ports import RemoteStoreError, RemoteTransportError

from ..errors import query_error_from

logger = logging.getLogger("progress_tracker.teaching")

T = TypeVar("T")

ProfileProvider = Callable[[], Optional[Profile]]

DEFAULT_READ_BACKOFF_SECONDS = 0.5


async def run_read(call: Callable[[], Awaitable[T]], *, op: str, backoff_seconds: float) -> T:
    """Run a read; retry once after `backoff_seconds` on transport errors only."""
    try:
        return await call()
    except RemoteTransportError as exc:
        logger.info("Read %s hit a transport error; retrying once", op)
        first = exc
    except RemoteStoreError as exc:
        raise query_error_from(exc, op=op) from exc
    await asyncio.sleep(max(0.0, backoff_seconds))
    try:
        return await call()
    except (RemoteTransportError, RemoteStoreError) as exc:
        raise query_error_from(exc, op=op) from first


async def run_write(call: Callable[[], Awaitable[T]], *, op: str) -> T:
    """Run a mutation exactly once; rejections surface as `QueryError`."""
    try:
        return await call()
    except (RemoteTransportError, RemoteStoreError) as exc:
        logger.info("Write %s failed: %s", op, exc.__class__.__name__)
        raise query_error_from(exc, op=op) from exc


def require_profile(provider: ProfileProvider) -> Profile:
    profile = provider()
    if profile is None:
        raise QueryError(AUTHORIZATION_DENIED, "profile_unavailable")
    return profile


def require_id(value: object, code: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise QueryError(VALIDATION_FAILED, code)
    return value.strip()


def require_text(value: object, code: str, *, max_len: int = 200) -> str:
    if not isinstance(value, str):
        raise QueryError(VALIDATION_FAILED, code)
    trimmed = value.strip()
    if not trimmed or len(trimmed) > max_len:
        raise QueryError(VALIDATION_FAILED, code)
    return trimmed


def optional_text(value: object, code: str, *, max_len: int = 200) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or len(value.strip()) > max_len:
        raise QueryError(VALIDATION_FAILED, code)
    return value.strip() or None


def normalize_score(value: object) -> int:
    """Validate a score in [0, 100] and round half-up to an integer."""
    if isinstance(value, bool):
        raise QueryError(VALIDATION_FAILED, "invalid_score")
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError as exc:
            raise QueryError(VALIDATION_FAILED, "invalid_score") from exc
    if not isinstance(value, (int, float)) or math.isnan(value):
        raise QueryError(VALIDATION_FAILED, "invalid_score")
    if value < 0 or value > 100:
        raise QueryError(VALIDATION_FAILED, "invalid_score")
    return int(math.floor(value + 0.5))


__all__ = [
    "DEFAULT_READ_BACKOFF_SECONDS",
    "ProfileProvider",
    "normalize_score",
    "optional_text",
    "require_id",
    "require_profile",
    "require_text",
    "run_read",
    "run_write",
]
