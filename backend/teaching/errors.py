"""Map remote store failures onto `QueryError` kinds."""
from __future__ import annotations

from identity_access.errors import (
    AUTHORIZATION_DENIED,
    NOT_FOUND,
    TRANSPORT_ERROR,
    VALIDATION_FAILED,
    QueryError,
)
from storage.ports import RemoteStoreError, RemoteTransportError

# PostgREST JWT rejections: expired, missing or malformed credentials.
JWT_REJECTION_CODES = frozenset({"PGRST301", "PGRST302", "PGRST303"})


def query_error_from(exc: Exception, *, op: str) -> QueryError:
    """Classify a store exception. Never returns a success-like result."""
    if isinstance(exc, QueryError):
        return exc
    if isinstance(exc, RemoteTransportError):
        return QueryError(TRANSPORT_ERROR, op)
    if isinstance(exc, RemoteStoreError):
        code = exc.code or ""
        if code == "42501" or code in JWT_REJECTION_CODES or exc.status in (401, 403):
            return QueryError(AUTHORIZATION_DENIED, f"{op}:{code or exc.status}")
        if exc.is_not_found:
            return QueryError(NOT_FOUND, op)
        # Class 22 (data exception) and 23 (integrity constraint violation).
        if code.startswith("22") or code.startswith("23") or exc.status in (400, 409, 422):
            return QueryError(VALIDATION_FAILED, f"{op}:{code or exc.status}")
        if exc.status is not None and exc.status >= 500:
            return QueryError(TRANSPORT_ERROR, f"{op}:{exc.status}")
        return QueryError(VALIDATION_FAILED, f"{op}:{code or 'rejected'}")
    return QueryError(TRANSPORT_ERROR, f"{op}:{exc.__class__.__name__}")


__all__ = ["JWT_REJECTION_CODES", "query_error_from"]
