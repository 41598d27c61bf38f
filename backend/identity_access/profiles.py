"""
Profile resolution: map an Identity to its role-tagged Profile row.

Why:
    The identity backend knows nothing about roles. The `users` row is the
    authoritative source; when it is missing (first sign-in) we create it from
    the advisory sign-up metadata.

Behavior:
    - `resolve()` distinguishes "no row" (returns None) from transport trouble
      (raises `ResolutionError`) and bounds the wait with a timeout.
    - `bootstrap()` upserts idempotently by id, bounded by the same timeout.
      When the write fails or times out it returns a locally synthesized
      profile tagged `provisional=True` so callers are never blocked; its
      `created_at` is not what storage will hold.

Permissions:
    Runs with the signed-in user's session; RLS restricts the row to its owner.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from storage.ports import USERS, RemoteStoreError, RemoteStoreProtocol, RemoteTransportError

from .domain import (
    DEFAULT_ROLE,
    Identity,
    Profile,
    ProfileHints,
    clean_display_name,
    display_name_from_email,
    normalize_role,
    utc_now_iso,
)
from .errors import TIMEOUT, TRANSPORT_ERROR, ResolutionError

logger = logging.getLogger("progress_tracker.identity_access")

DEFAULT_RESOLVE_TIMEOUT_SECONDS = 10.0


class ProfileResolver:
    def __init__(
        self,
        store: RemoteStoreProtocol,
        *,
        timeout_seconds: float = DEFAULT_RESOLVE_TIMEOUT_SECONDS,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._store = store
        self._timeout = timeout_seconds
        self._clock = clock

    async def resolve(self, identity: Identity) -> Optional[Profile]:
        """Fetch the profile row for `identity`.

        Returns:
            The stored Profile, or None when no row exists for the id.

        Raises:
            ResolutionError: ``timeout`` when the bound elapses, ``transport-error``
                for network faults or unexpected server rejections.
        """
        try:
            rows = await asyncio.wait_for(
                self._store.select(USERS, columns="*", filters={"id": identity.id}, limit=1),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Profile resolve timed out after %.1fs for %s", self._timeout, identity.id)
            raise ResolutionError(TIMEOUT, "profile_resolve_timeout") from exc
        except RemoteTransportError as exc:
            raise ResolutionError(TRANSPORT_ERROR, "profile_resolve_transport") from exc
        except RemoteStoreError as exc:
            if exc.is_not_found:
                return None
            raise ResolutionError(TRANSPORT_ERROR, f"profile_resolve_rejected:{exc.code}") from exc
        if not rows:
            return None
        return Profile.from_row(rows[0])

    def synthesize(self, identity: Identity, hints: Optional[ProfileHints] = None) -> Profile:
        """Build the profile `bootstrap` would write, tagged provisional."""
        hints = hints or ProfileHints.from_metadata(identity.metadata)
        return Profile(
            id=identity.id,
            email=identity.email,
            display_name=clean_display_name(hints.display_name) or display_name_from_email(identity.email),
            role=normalize_role(hints.role) or DEFAULT_ROLE,
            created_at=self._clock(),
            provisional=True,
        )

    async def bootstrap(self, identity: Identity, hints: Optional[ProfileHints] = None) -> Profile:
        """Create (or idempotently re-create) the profile row for `identity`."""
        draft = self.synthesize(identity, hints)
        try:
            row = await asyncio.wait_for(
                self._store.upsert(USERS, draft.to_row(), on_conflict="id"),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Profile bootstrap write timed out after %.1fs for %s; using provisional profile",
                self._timeout,
                identity.id,
            )
            return draft
        except (RemoteStoreError, RemoteTransportError) as exc:
            # Duplicate-key races and transient faults must not block sign-in.
            logger.warning(
                "Profile bootstrap write failed for %s (%s); using provisional profile",
                identity.id,
                exc.__class__.__name__,
            )
            return draft
        logger.info("Profile bootstrapped for %s as %s", identity.id, draft.role)
        return Profile.from_row(row)

    async def resolve_or_bootstrap(self, identity: Identity, hints: Optional[ProfileHints] = None) -> Profile:
        """Resolve, bootstrapping when no row exists. ResolutionError propagates."""
        profile = await self.resolve(identity)
        if profile is not None:
            return profile
        return await self.bootstrap(identity, hints)


__all__ = ["DEFAULT_RESOLVE_TIMEOUT_SECONDS", "ProfileResolver"]
