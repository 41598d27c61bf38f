"""User directory and self-service profile edits."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from identity_access.domain import DISPLAY_NAME_MAX_LEN, Profile
from identity_access.errors import NOT_FOUND, QueryError
from storage.ports import USERS, RemoteStoreProtocol

from ..models import StudentSummary
from ..policy import STUDENT_DIRECTORY, read_shape
from .common import (
    DEFAULT_READ_BACKOFF_SECONDS,
    ProfileProvider,
    require_profile,
    require_text,
    run_read,
    run_write,
)


@dataclass
class UsersService:
    store: RemoteStoreProtocol
    current_profile: ProfileProvider
    read_backoff_seconds: float = DEFAULT_READ_BACKOFF_SECONDS

    async def list_students(self) -> List[StudentSummary]:
        """Students ordered by name, for the teacher's progress form."""
        shape = read_shape(STUDENT_DIRECTORY, require_profile(self.current_profile))
        rows = await run_read(
            lambda: self.store.select(
                shape.collection, columns=shape.columns, filters=shape.filter_map, order_by=shape.order_by
            ),
            op="list_students",
            backoff_seconds=self.read_backoff_seconds,
        )
        return [StudentSummary.from_row(row) for row in rows]

    async def update_display_name(self, display_name: object) -> Profile:
        """Change the caller's own display name; the only editable profile field.

        Returns the updated profile as stored.
        """
        profile = require_profile(self.current_profile)
        name = " ".join(require_text(display_name, "invalid_display_name", max_len=DISPLAY_NAME_MAX_LEN).split())
        rows = await run_write(
            lambda: self.store.update(USERS, {"name": name}, filters={"id": profile.id}),
            op="update_display_name",
        )
        if not rows:
            # Filtered on the caller's own id: no row means it was never written.
            raise QueryError(NOT_FOUND, "update_display_name:no_profile_row")
        return Profile.from_row(rows[0])


__all__ = ["UsersService"]
