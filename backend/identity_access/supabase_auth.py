"""
Supabase Auth adapter for the identity backend port.

This module is a thin, framework-agnostic adapter around `client.auth` of a
Supabase async client. It converts library objects into `AuthSession` values
and library errors into `AuthBackendError` / `RemoteTransportError` so the
identity store never depends on supabase types.

Security: Never log credentials or tokens. This adapter does not persist any
sensitive data; session persistence is the client's own storage concern.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

import httpx
from supabase import AuthApiError, AuthRetryableError
from supabase import AuthError as SupabaseAuthError

from storage.ports import RemoteTransportError

from .ports import AuthBackendError, AuthSession, AuthStateListener

logger = logging.getLogger("progress_tracker.identity_access")


def _to_session(session: Any, user: Any = None) -> Optional[AuthSession]:
    if session is None:
        return None
    user = user or getattr(session, "user", None)
    if user is None:
        return None
    metadata = getattr(user, "user_metadata", None) or {}
    expires_at = getattr(session, "expires_at", None)
    return AuthSession(
        user_id=str(getattr(user, "id", "")),
        email=str(getattr(user, "email", "") or ""),
        access_token=str(getattr(session, "access_token", "") or ""),
        refresh_token=getattr(session, "refresh_token", None),
        expires_at=int(expires_at) if expires_at is not None else None,
        user_metadata=dict(metadata),
    )


def _event_name(event: Any) -> str:
    # AuthChangeEvent is a str literal in supabase_auth; enums expose .value.
    raw = getattr(event, "value", event)
    return str(raw or "").strip().lower()


class SupabaseAuthBackend:
    """Identity backend over Supabase Auth (email/password)."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @property
    def _auth(self) -> Any:
        return self._client.auth

    async def _call(self, op: str, coro: Any) -> Any:
        try:
            return await coro
        except AuthRetryableError as exc:
            raise RemoteTransportError(f"{op}_transport") from exc
        except AuthApiError as exc:
            raise AuthBackendError(
                getattr(exc, "message", "") or str(exc),
                code=getattr(exc, "code", None),
                status=getattr(exc, "status", None),
            ) from exc
        except SupabaseAuthError as exc:
            raise AuthBackendError(getattr(exc, "message", "") or str(exc), code=getattr(exc, "code", None)) from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise RemoteTransportError(f"{op}_transport") from exc

    async def get_session(self) -> Optional[AuthSession]:
        session = await self._call("get_session", self._auth.get_session())
        return _to_session(session)

    async def sign_in_with_password(self, *, email: str, password: str) -> AuthSession:
        res = await self._call(
            "sign_in", self._auth.sign_in_with_password({"email": email, "password": password})
        )
        session = _to_session(getattr(res, "session", None), getattr(res, "user", None))
        if session is None:
            raise AuthBackendError("sign_in_without_session", code="invalid_credentials")
        return session

    async def sign_up(self, *, email: str, password: str, metadata: Mapping[str, Any]) -> Optional[AuthSession]:
        res = await self._call(
            "sign_up",
            self._auth.sign_up({"email": email, "password": password, "options": {"data": dict(metadata)}}),
        )
        if getattr(res, "user", None) is None:
            raise AuthBackendError("sign_up_without_user")
        # No session means the project requires email confirmation first.
        return _to_session(getattr(res, "session", None), getattr(res, "user", None))

    async def sign_out(self) -> None:
        await self._call("sign_out", self._auth.sign_out())

    def on_auth_state_change(self, listener: AuthStateListener) -> Callable[[], None]:
        def _forward(event: Any, session: Any) -> None:
            listener(_event_name(event), _to_session(session))

        subscription = self._auth.on_auth_state_change(_forward)

        def _unsubscribe() -> None:
            try:
                subscription.unsubscribe()
            except Exception as exc:  # pragma: no cover - client-version specific
                logger.warning("Auth listener unsubscribe failed: %s", exc.__class__.__name__)

        return _unsubscribe


__all__ = ["SupabaseAuthBackend"]
