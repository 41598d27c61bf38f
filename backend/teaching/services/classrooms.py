"""Classroom service: teacher-owned classroom management.

Teachers list and manage only classrooms they own. Students have no
classroom listing of their own; they see the classrooms linked to their
progress records instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from identity_access.errors import NOT_FOUND, VALIDATION_FAILED, QueryError
from storage.ports import CLASSROOM, RemoteStoreProtocol
from storage.rows import one_or_none

from ..models import Classroom
from ..policy import CLASSROOM_LIST, PROGRESS_LIST, read_shape, require_teacher
from .common import (
    DEFAULT_READ_BACKOFF_SECONDS,
    ProfileProvider,
    optional_text,
    require_id,
    require_profile,
    require_text,
    run_read,
    run_write,
)

logger = logging.getLogger("progress_tracker.teaching")

_UNSET = object()


@dataclass
class ClassroomsService:
    store: RemoteStoreProtocol
    current_profile: ProfileProvider
    read_backoff_seconds: float = DEFAULT_READ_BACKOFF_SECONDS

    async def list(self) -> List[Classroom]:
        """Return the caller's classrooms, newest first.

        Teachers get their own classrooms with progress counts. Students get
        the distinct classrooms linked to their own progress records.
        """
        profile = require_profile(self.current_profile)
        if profile.is_student:
            return await self._list_for_student()
        shape = read_shape(CLASSROOM_LIST, profile)
        rows = await run_read(
            lambda: self.store.select(
                shape.collection,
                columns=shape.columns,
                filters=shape.filter_map,
                order_by=shape.order_by,
                descending=shape.descending,
            ),
            op="list_classrooms",
            backoff_seconds=self.read_backoff_seconds,
        )
        return [Classroom.from_row(row) for row in rows if str(row.get("teacher_id")) == profile.id]

    async def _list_for_student(self) -> List[Classroom]:
        profile = require_profile(self.current_profile)
        shape = read_shape(PROGRESS_LIST, profile)
        rows = await run_read(
            lambda: self.store.select(
                shape.collection,
                columns=shape.columns,
                filters=shape.filter_map,
                order_by=shape.order_by,
                descending=shape.descending,
            ),
            op="list_student_classrooms",
            backoff_seconds=self.read_backoff_seconds,
        )
        seen: Dict[str, Classroom] = {}
        for row in rows:
            if str(row.get("user_id")) != profile.id:
                continue
            linked = one_or_none(row.get("classroom"))
            if linked is None or not linked.get("id") or str(linked["id"]) in seen:
                continue
            seen[str(linked["id"])] = Classroom.from_row(linked)
        return list(seen.values())

    async def get(self, classroom_id: str) -> Classroom:
        profile = require_teacher(require_profile(self.current_profile), "get_classroom")
        classroom_id = require_id(classroom_id, "invalid_classroom_id")
        shape = read_shape(CLASSROOM_LIST, profile).narrowed(id=classroom_id)
        rows = await run_read(
            lambda: self.store.select(shape.collection, columns=shape.columns, filters=shape.filter_map, limit=1),
            op="get_classroom",
            backoff_seconds=self.read_backoff_seconds,
        )
        if not rows:
            raise QueryError(NOT_FOUND, "classroom_not_found")
        return Classroom.from_row(rows[0])

    async def create(self, *, name: object, schedule: object = None, room_number: object = None) -> Classroom:
        profile = require_teacher(require_profile(self.current_profile), "create_classroom")
        row = {
            "name": require_text(name, "invalid_name"),
            "schedule": optional_text(schedule, "invalid_schedule"),
            "room_number": optional_text(room_number, "invalid_room_number", max_len=50),
            "teacher_id": profile.id,
        }
        created = await run_write(lambda: self.store.insert(CLASSROOM, row), op="create_classroom")
        logger.info("Classroom %s created by %s", created.get("id"), profile.id)
        return Classroom.from_row(created)

    async def update(
        self,
        classroom_id: str,
        *,
        name: object = _UNSET,
        schedule: object = _UNSET,
        room_number: object = _UNSET,
    ) -> Classroom:
        profile = require_teacher(require_profile(self.current_profile), "update_classroom")
        classroom_id = require_id(classroom_id, "invalid_classroom_id")
        values: Dict[str, Any] = {}
        if name is not _UNSET:
            values["name"] = require_text(name, "invalid_name")
        if schedule is not _UNSET:
            values["schedule"] = optional_text(schedule, "invalid_schedule")
        if room_number is not _UNSET:
            values["room_number"] = optional_text(room_number, "invalid_room_number", max_len=50)
        if not values:
            raise QueryError(VALIDATION_FAILED, "empty_update")
        # Owner filter keeps the request inside the teacher's own rows.
        filters = {"id": classroom_id, "teacher_id": profile.id}
        rows = await run_write(lambda: self.store.update(CLASSROOM, values, filters=filters), op="update_classroom")
        if not rows:
            raise QueryError(NOT_FOUND, "classroom_not_found")
        return Classroom.from_row(rows[0])

    async def delete(self, classroom_id: str) -> None:
        profile = require_teacher(require_profile(self.current_profile), "delete_classroom")
        classroom_id = require_id(classroom_id, "invalid_classroom_id")
        filters = {"id": classroom_id, "teacher_id": profile.id}
        rows = await run_write(lambda: self.store.delete(CLASSROOM, filters=filters), op="delete_classroom")
        if not rows:
            raise QueryError(NOT_FOUND, "classroom_not_found")
        logger.info("Classroom %s deleted by %s", classroom_id, profile.id)


__all__ = ["ClassroomsService"]
