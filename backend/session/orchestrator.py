"""
Session orchestrator: one observable `{identity, profile, status}` value.

Why:
    The presentation layer needs a single, injected owner of "who is signed in"
    instead of module-level globals. The orchestrator composes the identity
    store, the profile resolver, the role-scoped services and the subscription
    manager, and is the only writer of the session state.

Behavior:
    - Status machine: initializing -> {authenticated, anonymous}; sign-out ->
      anonymous; sign-in -> authenticated. It never returns to initializing.
    - Startup restores the session, resolves (or bootstraps) the profile and
      only then leaves `initializing`. A liveness bound forces the transition
      regardless; late results still fill in the profile afterwards.
    - Identity changes are processed one at a time by the identity store's
      dispatcher. Each resolution carries a generation token; a result whose
      token is no longer current (sign-out, newer identity) is discarded.
    - A failed resolution yields an authenticated-but-degraded state (no
      profile, `resolution_error` set) rather than blocking sign-in.

Permissions:
    Services read the current profile through `current_profile`, so no query
    runs for a role the session has not confirmed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

from identity_access.domain import Identity, Profile
from identity_access.errors import TIMEOUT, TRANSPORT_ERROR, ResolutionError
from identity_access.profiles import ProfileResolver
from identity_access.stores import IdentityChange, IdentityStore
from live_sync.read_models import LiveReadModel
from live_sync.subscriptions import SubscriptionManager
from storage.ports import CLASSROOM, PROGRESS, RemoteStoreProtocol
from teaching.models import Classroom, ProgressRecord
from teaching.policy import CLASSROOM_LIST, PROGRESS_LIST, change_filter
from teaching.services.classrooms import ClassroomsService
from teaching.services.common import DEFAULT_READ_BACKOFF_SECONDS, require_profile
from teaching.services.progress import ProgressService
from teaching.services.users import UsersService

logger = logging.getLogger("progress_tracker.session")

STATUS_INITIALIZING = "initializing"
STATUS_AUTHENTICATED = "authenticated"
STATUS_ANONYMOUS = "anonymous"

DEFAULT_INIT_TIMEOUT_SECONDS = 8.0


@dataclass(frozen=True)
class SessionState:
    status: str = STATUS_INITIALIZING
    identity: Optional[Identity] = None
    profile: Optional[Profile] = None
    resolution_error: Optional[ResolutionError] = None

    @property
    def role(self) -> Optional[str]:
        return self.profile.role if self.profile is not None else None

    @property
    def degraded(self) -> bool:
        """Authenticated without a confirmed profile (missing or provisional)."""
        return self.status == STATUS_AUTHENTICATED and (self.profile is None or self.profile.provisional)


ANONYMOUS = SessionState(status=STATUS_ANONYMOUS)

StateListener = Callable[[SessionState], None]


class SessionOrchestrator:
    def __init__(
        self,
        identity_store: IdentityStore,
        resolver: ProfileResolver,
        store: RemoteStoreProtocol,
        subscriptions: SubscriptionManager,
        *,
        init_timeout_seconds: float = DEFAULT_INIT_TIMEOUT_SECONDS,
        read_backoff_seconds: float = DEFAULT_READ_BACKOFF_SECONDS,
    ) -> None:
        self._identity_store = identity_store
        self._resolver = resolver
        self._init_timeout = init_timeout_seconds
        self._state = SessionState()
        self._listeners: List[StateListener] = []
        self._generation = 0
        self._settled = asyncio.Event()
        self._init_task: Optional[asyncio.Task] = None
        self._pending_identity: Optional[Identity] = None
        self._detach: Optional[Callable[[], None]] = None
        self.subscriptions = subscriptions
        self.progress = ProgressService(store, self.current_profile, read_backoff_seconds)
        self.classrooms = ClassroomsService(store, self.current_profile, read_backoff_seconds)
        self.users = UsersService(store, self.current_profile, read_backoff_seconds)
        identity_store.add_sign_out_hook(subscriptions.close_all)

    # --- Observable state --------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    def current_profile(self) -> Optional[Profile]:
        if self._state.status != STATUS_AUTHENTICATED:
            return None
        return self._state.profile

    def watch(self, listener: StateListener) -> Callable[[], None]:
        """Call `listener` with the current state now and on every change."""
        self._listeners.append(listener)
        listener(self._state)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        if previous.status != state.status:
            logger.info("Session %s -> %s", previous.status, state.status)
        if state.status != STATUS_INITIALIZING:
            self._settled.set()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Session state listener failed")

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _attach(self) -> None:
        if self._detach is None:
            self._detach = self._identity_store.on_change(self._on_identity_change)

    # --- Startup -------------------------------------------------------------------------

    async def start(self) -> SessionState:
        """Restore the session and settle out of `initializing` within the bound."""
        self._attach()
        if self._init_task is not None:
            return self._state
        generation = self._next_generation()
        self._init_task = asyncio.get_running_loop().create_task(self._initialize(generation))
        try:
            await asyncio.wait_for(asyncio.shield(self._init_task), timeout=self._init_timeout)
        except asyncio.TimeoutError:
            self._force_settle()
        return self._state

    async def _initialize(self, generation: int) -> None:
        try:
            identity = await self._identity_store.restore()
            if not self._is_current(generation):
                return
            if identity is None:
                self._set_state(ANONYMOUS)
                return
            self._pending_identity = identity
            profile, error = await self._load_profile(identity)
            if not self._is_current(generation):
                logger.debug("Discarding startup profile for %s (superseded)", identity.id)
                return
            if self._state.status == STATUS_INITIALIZING:
                self._set_state(SessionState(STATUS_AUTHENTICATED, identity, profile, error))
            elif self._state.identity is not None and self._state.identity.id == identity.id:
                # Liveness bound already fired; fill in what arrived late.
                self._set_state(replace(self._state, profile=profile, resolution_error=error))
        except Exception:
            logger.exception("Session initialization failed; continuing anonymous")
            if self._is_current(generation) and self._state.status == STATUS_INITIALIZING:
                self._set_state(ANONYMOUS)

    def _force_settle(self) -> None:
        if self._state.status != STATUS_INITIALIZING:
            return
        identity = self._pending_identity
        logger.warning("Session initialization exceeded %.1fs; settling without profile", self._init_timeout)
        if identity is None:
            self._set_state(ANONYMOUS)
            return
        self._set_state(
            SessionState(
                STATUS_AUTHENTICATED,
                identity,
                None,
                ResolutionError(TIMEOUT, "session_init_timeout"),
            )
        )

    async def _load_profile(self, identity: Identity) -> Tuple[Optional[Profile], Optional[ResolutionError]]:
        """Resolve or bootstrap; one retry on transport errors, then degrade."""
        for attempt in (1, 2):
            try:
                return await self._resolver.resolve_or_bootstrap(identity), None
            except ResolutionError as exc:
                if exc.kind == TRANSPORT_ERROR and attempt == 1:
                    logger.info("Profile resolution for %s failed; retrying once", identity.id)
                    continue
                logger.warning("Profile resolution for %s failed: %s", identity.id, exc.kind)
                return None, exc
        return None, None  # pragma: no cover - loop always returns

    # --- Identity transitions ---------------------------------------------------------

    async def _on_identity_change(self, change: IdentityChange) -> None:
        if self._state.status == STATUS_INITIALIZING and self._init_task is not None:
            await self._settled.wait()
        if change.sequence != self._identity_store.sequence:
            # A newer transition is queued; it supersedes this one.
            return
        identity = change.identity
        if identity is None:
            self._next_generation()
            await self.subscriptions.close_all()
            self._set_state(ANONYMOUS)
            return

        generation = self._next_generation()
        current = self._state
        same_user = current.identity is not None and current.identity.id == identity.id
        if current.identity is not None and not same_user:
            await self.subscriptions.close_all()
        kept = current.profile if same_user else None
        # Stay authenticated while resolving: no return to a loading state.
        self._set_state(
            SessionState(STATUS_AUTHENTICATED, identity, kept, current.resolution_error if same_user else None)
        )
        profile, error = await self._load_profile(identity)
        if not self._is_current(generation):
            logger.debug("Discarding profile for %s (superseded)", identity.id)
            return
        self._set_state(SessionState(STATUS_AUTHENTICATED, identity, profile or kept, error))

    # --- Commands ------------------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> SessionState:
        """Sign in and return the state once the transition was processed.

        Raises:
            AuthError: from the identity store; the state is left unchanged.
        """
        self._attach()
        await self._identity_store.sign_in(email, password)
        await self._identity_store.wait_idle()
        return self._state

    async def sign_up(
        self, email: str, password: str, *, display_name: Optional[str] = None, role: str = "student"
    ) -> SessionState:
        self._attach()
        identity = await self._identity_store.sign_up(email, password, role_hint=role, display_name=display_name)
        if identity is not None:
            await self._identity_store.wait_idle()
        return self._state

    async def sign_out(self) -> SessionState:
        """Sign out; idempotent. Subscriptions are released before it returns."""
        self._next_generation()
        await self._identity_store.sign_out()
        self._pending_identity = None
        self._set_state(ANONYMOUS)
        return self._state

    async def refresh_profile(self) -> Optional[Profile]:
        """Re-read the profile (e.g. to confirm a provisional one)."""
        identity = self._state.identity
        if self._state.status != STATUS_AUTHENTICATED or identity is None:
            return None
        generation = self._generation
        profile, error = await self._load_profile(identity)
        if not self._is_current(generation):
            return self.current_profile()
        if profile is None:
            self._set_state(replace(self._state, resolution_error=error))
        else:
            self._set_state(replace(self._state, profile=profile, resolution_error=None))
        return self.current_profile()

    async def update_display_name(self, display_name: str) -> Profile:
        """Owner-only edit of the display name; QueryError propagates."""
        generation = self._generation
        profile = await self.users.update_display_name(display_name)
        if self._is_current(generation):
            self._set_state(replace(self._state, profile=profile))
        return profile

    # --- Live views -----------------------------------------------------------------------

    async def watch_progress(self, view: str = "progress") -> LiveReadModel[List[ProgressRecord]]:
        """Live progress listing for the current role, refreshed on every change."""
        profile = require_profile(self.current_profile)
        model: LiveReadModel[List[ProgressRecord]] = LiveReadModel(view, self.progress.list, initial=[])
        await model.bind(self.subscriptions, PROGRESS, filters=change_filter(PROGRESS_LIST, profile))
        return model

    async def watch_classrooms(self, view: str = "classrooms") -> LiveReadModel[List[Classroom]]:
        profile = require_profile(self.current_profile)
        model: LiveReadModel[List[Classroom]] = LiveReadModel(view, self.classrooms.list, initial=[])
        if profile.is_student:
            # Students see classrooms through their own progress rows.
            await model.bind(self.subscriptions, PROGRESS, filters=change_filter(PROGRESS_LIST, profile))
        else:
            await model.bind(self.subscriptions, CLASSROOM, filters=change_filter(CLASSROOM_LIST, profile))
        return model

    async def close(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None
        await self.subscriptions.close_all()
        await self._identity_store.close()


__all__ = [
    "ANONYMOUS",
    "STATUS_ANONYMOUS",
    "STATUS_AUTHENTICATED",
    "STATUS_INITIALIZING",
    "SessionOrchestrator",
    "SessionState",
]
