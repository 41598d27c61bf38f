"""
Identity store: owns the raw session state and its change notifications.

Why:
    Keep credential/session handling in one place with no role knowledge. The
    session orchestrator reacts to identity transitions through `on_change`
    listeners instead of reading backend state ad hoc.

Behavior:
    - `restore()` never raises; any backend/transport failure means "no session".
    - Transitions (sign-in, sign-out, token refresh) are delivered to listeners
      at most once each, sequentially, from a dispatcher task. A listener never
      runs inside the stack of the call that caused the transition.
    - `sign_out()` is idempotent and runs the registered sign-out hooks (e.g.
      closing realtime subscriptions) before it talks to the backend.

Security: Never log passwords or tokens. Identities are logged by id only.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from storage.ports import RemoteTransportError

from .domain import ALLOWED_ROLES, Identity, clean_display_name
from .errors import DUPLICATE_ACCOUNT, INVALID_CREDENTIALS, TRANSPORT_ERROR, AuthError
from .ports import (
    INITIAL_SESSION,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    USER_UPDATED,
    AuthBackendError,
    AuthBackendProtocol,
    AuthSession,
)

logger = logging.getLogger("progress_tracker.identity_access")

MIN_PASSWORD_LENGTH = 6


@dataclass(frozen=True)
class IdentityChange:
    event: str
    identity: Optional[Identity]
    sequence: int


ChangeListener = Callable[[IdentityChange], Union[Awaitable[None], None]]
SignOutHook = Callable[[], Awaitable[None]]


def _to_identity(session: Optional[AuthSession]) -> Optional[Identity]:
    if session is None or not session.user_id:
        return None
    return Identity(
        id=session.user_id,
        email=session.email,
        access_token=session.access_token,
        expires_at=session.expires_at,
        metadata=dict(session.user_metadata or {}),
    )


def _normalize_email(email: object) -> str:
    if not isinstance(email, str) or "@" not in email.strip():
        raise ValueError("invalid_email")
    return email.strip().lower()


def _check_password(password: object) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError("invalid_password")
    return password


def _classify(exc: Exception, *, op: str) -> AuthError:
    if isinstance(exc, RemoteTransportError):
        return AuthError(TRANSPORT_ERROR, f"{op}_transport")
    code = (getattr(exc, "code", None) or "").lower()
    message = (getattr(exc, "message", None) or str(exc)).lower()
    status = getattr(exc, "status", None)
    if isinstance(status, int) and status >= 500:
        return AuthError(TRANSPORT_ERROR, f"{op}_upstream_{status}")
    if code in {"user_already_exists", "email_exists"} or "already registered" in message or "already exists" in message:
        return AuthError(DUPLICATE_ACCOUNT, op)
    if op == "sign_up" and status == 422:
        return AuthError(DUPLICATE_ACCOUNT, op)
    return AuthError(INVALID_CREDENTIALS, op)


class IdentityStore:
    """Owns the current Identity and notifies listeners about transitions."""

    def __init__(self, backend: AuthBackendProtocol) -> None:
        self._backend = backend
        self._identity: Optional[Identity] = None
        self._listeners: List[ChangeListener] = []
        self._sign_out_hooks: List[SignOutHook] = []
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._sequence = 0
        self._last_published: Optional[Tuple[str, Optional[str], Optional[str]]] = None
        self._detach_backend: Optional[Callable[[], None]] = None

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def sequence(self) -> int:
        """Sequence number of the latest published transition."""
        return self._sequence

    # --- Listener plumbing ---------------------------------------------------------

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a transition listener; returns a callable that removes it."""
        self._listeners.append(listener)
        if self._detach_backend is None:
            self._detach_backend = self._backend.on_auth_state_change(self._on_backend_event)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def add_sign_out_hook(self, hook: SignOutHook) -> None:
        self._sign_out_hooks.append(hook)

    def _on_backend_event(self, event: str, session: Optional[AuthSession]) -> None:
        if event == INITIAL_SESSION:
            # Covered by restore(); publishing it would double-resolve.
            return
        if event == SIGNED_OUT:
            self._publish(SIGNED_OUT, None)
            return
        if event in (SIGNED_IN, TOKEN_REFRESHED, USER_UPDATED):
            identity = _to_identity(session)
            if identity is not None:
                self._publish(event, identity)

    def _publish(self, event: str, identity: Optional[Identity]) -> None:
        key = (event, identity.id if identity else None, identity.access_token if identity else None)
        if key == self._last_published:
            return
        self._last_published = key
        self._identity = identity
        self._sequence += 1
        change = IdentityChange(event=event, identity=identity, sequence=self._sequence)
        logger.debug("Identity transition #%s: %s (%s)", change.sequence, event, identity.id if identity else "-")
        self._ensure_dispatcher()
        assert self._queue is not None
        self._queue.put_nowait(change)

    def _ensure_dispatcher(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._dispatcher is None or self._dispatcher.done():
            loop = asyncio.get_running_loop()
            self._dispatcher = loop.create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        assert self._queue is not None
        while True:
            change = await self._queue.get()
            try:
                for listener in list(self._listeners):
                    try:
                        result = listener(change)
                        if inspect.isawaitable(result):
                            await result
                    except Exception:
                        logger.exception("Identity listener failed on %s", change.event)
            finally:
                self._queue.task_done()

    async def wait_idle(self) -> None:
        """Wait until every published transition has been handled by listeners."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._detach_backend is not None:
            self._detach_backend()
            self._detach_backend = None
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

    # --- Operations ------------------------------------------------------------------

    async def restore(self) -> Optional[Identity]:
        """Recover a previously persisted session; None on any failure."""
        try:
            session = await self._backend.get_session()
        except Exception as exc:
            logger.warning("Session restore failed; continuing anonymous: %s", exc.__class__.__name__)
            return None
        identity = _to_identity(session)
        if identity is not None and identity.is_expired():
            logger.info("Restored session for %s is expired", identity.id)
            identity = None
        self._identity = identity
        return identity

    async def sign_in(self, email: str, password: str) -> Identity:
        """Authenticate with email/password.

        Raises:
            AuthError: ``invalid-credentials`` or ``transport-error``.
        """
        try:
            email = _normalize_email(email)
        except ValueError as exc:
            raise AuthError(INVALID_CREDENTIALS, "sign_in_invalid_email") from exc
        try:
            session = await self._backend.sign_in_with_password(email=email, password=password)
        except (AuthBackendError, RemoteTransportError) as exc:
            raise _classify(exc, op="sign_in") from exc
        identity = _to_identity(session)
        if identity is None:
            raise AuthError(INVALID_CREDENTIALS, "sign_in_without_session")
        self._publish(SIGNED_IN, identity)
        logger.info("Signed in %s", identity.id)
        return identity

    async def sign_up(
        self,
        email: str,
        password: str,
        *,
        role_hint: str = "student",
        display_name: Optional[str] = None,
    ) -> Optional[Identity]:
        """Register a new account; returns None while email confirmation is pending.

        The role hint is stored as advisory metadata; the profile bootstrap
        decides the authoritative role.

        Raises:
            ValueError: ``invalid_email``, ``invalid_password``, ``invalid_role``
                before any backend call.
            AuthError: ``duplicate-account``, ``invalid-credentials``, ``transport-error``.
        """
        email = _normalize_email(email)
        password = _check_password(password)
        role = (role_hint or "").strip().lower()
        if role not in ALLOWED_ROLES:
            raise ValueError("invalid_role")
        metadata = {"role": role}
        name = clean_display_name(display_name)
        if name:
            metadata["name"] = name
        try:
            session = await self._backend.sign_up(email=email, password=password, metadata=metadata)
        except (AuthBackendError, RemoteTransportError) as exc:
            raise _classify(exc, op="sign_up") from exc
        identity = _to_identity(session)
        if identity is None:
            logger.info("Sign-up accepted; confirmation pending")
            return None
        self._publish(SIGNED_IN, identity)
        return identity

    async def sign_out(self) -> None:
        """Sign out; idempotent. Hooks run before the backend call."""
        for hook in list(self._sign_out_hooks):
            try:
                await hook()
            except Exception:
                logger.exception("Sign-out hook failed")
        had_identity = self._identity is not None
        try:
            await self._backend.sign_out()
        except Exception as exc:
            # Local state is cleared regardless; the backend token expires on its own.
            logger.warning("Backend sign-out failed: %s", exc.__class__.__name__)
        if had_identity:
            self._publish(SIGNED_OUT, None)
        self._identity = None


__all__ = ["IdentityChange", "IdentityStore", "MIN_PASSWORD_LENGTH"]
