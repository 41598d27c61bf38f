"""
Identity backend port (sign-up, sign-in, sign-out, session lookup, events).

Metadata passed on sign-up is advisory only; the authoritative role lives in
the profile row once bootstrapped.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol

# Backend event names, lower-cased from the Supabase auth events.
SIGNED_IN = "signed_in"
SIGNED_OUT = "signed_out"
TOKEN_REFRESHED = "token_refreshed"
USER_UPDATED = "user_updated"
INITIAL_SESSION = "initial_session"


@dataclass(frozen=True)
class AuthSession:
    user_id: str
    email: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    user_metadata: Mapping[str, Any] = field(default_factory=dict)


class AuthBackendError(Exception):
    """Identity backend rejected a request (bad credentials, existing user, ...)."""

    def __init__(self, message: str = "", *, code: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message or code or "auth_backend_error")
        self.message = message
        self.code = code
        self.status = status


AuthStateListener = Callable[[str, Optional[AuthSession]], None]


class AuthBackendProtocol(Protocol):
    async def get_session(self) -> Optional[AuthSession]: ...

    async def sign_in_with_password(self, *, email: str, password: str) -> AuthSession: ...

    async def sign_up(self, *, email: str, password: str, metadata: Mapping[str, Any]) -> Optional[AuthSession]:
        """Return the new session, or None when email confirmation is pending."""
        ...

    async def sign_out(self) -> None: ...

    def on_auth_state_change(self, listener: AuthStateListener) -> Callable[[], None]:
        """Register ``listener(event, session)``; returns an unsubscribe callable."""
        ...


__all__ = [
    "INITIAL_SESSION",
    "SIGNED_IN",
    "SIGNED_OUT",
    "TOKEN_REFRESHED",
    "USER_UPDATED",
    "AuthBackendError",
    "AuthBackendProtocol",
    "AuthSession",
    "AuthStateListener",
]
