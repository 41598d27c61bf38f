"""Progress records service (role-scoped list/get/create/update/delete).

Why:
    Encapsulates the progress use cases so the presentation layer stays thin
    and validation can be unit-tested without a network.

Behavior:
    - Listings use the per-role query shape (`teaching.policy`) and drop any
      row outside the role's visibility before returning.
    - Mutations are validated client-side first (ids non-empty, score in
      [0, 100] rounded to int, known status); invalid input never reaches the
      store. Server rejections surface as `QueryError`, never as success.

Permissions:
    Students read their own records. Teachers read all records (dashboard) and
    mutate records of classrooms they own; ownership is enforced by the store.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from identity_access.domain import utc_now_iso
from identity_access.errors import AUTHORIZATION_DENIED, NOT_FOUND, VALIDATION_FAILED, QueryError
from storage.ports import PROGRESS, RemoteStoreProtocol

from ..models import PROGRESS_STATUSES, STATUS_IN_PROGRESS, DashboardSummary, ProgressRecord
from ..policy import PROGRESS_COLUMNS, PROGRESS_LIST, read_shape, require_teacher, visible_progress
from .common import (
    DEFAULT_READ_BACKOFF_SECONDS,
    ProfileProvider,
    normalize_score,
    require_id,
    require_profile,
    require_text,
    run_read,
    run_write,
)

logger = logging.getLogger("progress_tracker.teaching")

_UNSET = object()


def _normalize_status(value: object) -> str:
    if not isinstance(value, str):
        raise QueryError(VALIDATION_FAILED, "invalid_status")
    status = value.strip().lower()
    if status not in PROGRESS_STATUSES:
        raise QueryError(VALIDATION_FAILED, "invalid_status")
    return status


def filter_records(
    records: Iterable[ProgressRecord], *, classroom_id: Optional[str] = None, status: Optional[str] = None
) -> List[ProgressRecord]:
    """Filter an already-fetched read-model by classroom and/or status."""
    out = []
    for record in records:
        if classroom_id and record.classroom_id != classroom_id:
            continue
        if status and record.status != status:
            continue
        out.append(record)
    return out


def dashboard_summary(records: Iterable[ProgressRecord]) -> DashboardSummary:
    """Aggregate a read-model into dashboard figures."""
    items = list(records)
    counts = Counter(record.status for record in items)
    classrooms: Dict[str, Dict[str, Any]] = {}
    for record in items:
        # Linked classroom may be None when the policy hides it.
        if record.classroom and record.classroom.get("id"):
            classrooms.setdefault(str(record.classroom["id"]), record.classroom)
    average = round(sum(r.score for r in items) / len(items), 1) if items else None
    return DashboardSummary(
        total_records=len(items),
        distinct_students=len({r.student_id for r in items}),
        average_score=average,
        status_counts={status: counts.get(status, 0) for status in PROGRESS_STATUSES},
        classrooms=sorted(classrooms.values(), key=lambda c: str(c.get("name") or "")),
    )


@dataclass
class ProgressService:
    """Use cases for progress records (framework-independent)."""

    store: RemoteStoreProtocol
    current_profile: ProfileProvider
    read_backoff_seconds: float = DEFAULT_READ_BACKOFF_SECONDS

    async def list(self, *, classroom_id: Optional[str] = None, status: Optional[str] = None) -> List[ProgressRecord]:
        profile = require_profile(self.current_profile)
        shape = read_shape(PROGRESS_LIST, profile).narrowed(
            classroom_id=classroom_id,
            status=_normalize_status(status) if status is not None else None,
        )
        rows = await run_read(
            lambda: self.store.select(
                shape.collection,
                columns=shape.columns,
                filters=shape.filter_map,
                order_by=shape.order_by,
                descending=shape.descending,
            ),
            op="list_progress",
            backoff_seconds=self.read_backoff_seconds,
        )
        visible = visible_progress(profile, rows)
        if len(visible) != len(rows):
            logger.warning("Dropped %d progress rows outside %s visibility", len(rows) - len(visible), profile.role)
        return [ProgressRecord.from_row(row) for row in visible]

    async def get(self, record_id: str) -> ProgressRecord:
        profile = require_profile(self.current_profile)
        record_id = require_id(record_id, "invalid_progress_id")
        shape = read_shape(PROGRESS_LIST, profile).narrowed(id=record_id)
        rows = await run_read(
            lambda: self.store.select(shape.collection, columns=shape.columns, filters=shape.filter_map, limit=1),
            op="get_progress",
            backoff_seconds=self.read_backoff_seconds,
        )
        visible = visible_progress(profile, rows)
        if not visible:
            raise QueryError(NOT_FOUND, "progress_not_found")
        return ProgressRecord.from_row(visible[0])

    async def create(
        self,
        *,
        student_id: object,
        classroom_id: object,
        subject: object,
        score: object,
        status: object = STATUS_IN_PROGRESS,
    ) -> ProgressRecord:
        profile = require_teacher(require_profile(self.current_profile), "create_progress")
        row = {
            "user_id": require_id(student_id, "invalid_student_id"),
            "classroom_id": require_id(classroom_id, "invalid_classroom_id"),
            "subject": require_text(subject, "invalid_subject"),
            "score": normalize_score(score),
            "status": _normalize_status(status),
        }
        created = await run_write(lambda: self.store.insert(PROGRESS, row), op="create_progress")
        logger.info("Progress %s created by %s", created.get("id"), profile.id)
        return ProgressRecord.from_row(created)

    async def update(
        self,
        record_id: str,
        *,
        student_id: object = _UNSET,
        classroom_id: object = _UNSET,
        subject: object = _UNSET,
        score: object = _UNSET,
        status: object = _UNSET,
    ) -> ProgressRecord:
        profile = require_teacher(require_profile(self.current_profile), "update_progress")
        record_id = require_id(record_id, "invalid_progress_id")
        values: Dict[str, Any] = {}
        if student_id is not _UNSET:
            values["user_id"] = require_id(student_id, "invalid_student_id")
        if classroom_id is not _UNSET:
            values["classroom_id"] = require_id(classroom_id, "invalid_classroom_id")
        if subject is not _UNSET:
            values["subject"] = require_text(subject, "invalid_subject")
        if score is not _UNSET:
            values["score"] = normalize_score(score)
        if status is not _UNSET:
            values["status"] = _normalize_status(status)
        if not values:
            raise QueryError(VALIDATION_FAILED, "empty_update")
        values["updated_at"] = utc_now_iso()
        rows = await run_write(
            lambda: self.store.update(PROGRESS, values, filters={"id": record_id}), op="update_progress"
        )
        if not rows:
            raise await self._zero_rows_error(record_id, op="update_progress")
        logger.info("Progress %s updated by %s", record_id, profile.id)
        return ProgressRecord.from_row(rows[0])

    async def delete(self, record_id: str) -> None:
        profile = require_teacher(require_profile(self.current_profile), "delete_progress")
        record_id = require_id(record_id, "invalid_progress_id")
        rows = await run_write(lambda: self.store.delete(PROGRESS, filters={"id": record_id}), op="delete_progress")
        if not rows:
            raise await self._zero_rows_error(record_id, op="delete_progress")
        logger.info("Progress %s deleted by %s", record_id, profile.id)

    async def _zero_rows_error(self, record_id: str, *, op: str) -> QueryError:
        """Explain a mutation that matched nothing.

        The store hides rows of foreign classrooms from mutations without an
        error. Teachers can still read every record, so an existing row means
        the write was denied.
        """
        rows = await run_read(
            lambda: self.store.select(PROGRESS, columns=PROGRESS_COLUMNS, filters={"id": record_id}, limit=1),
            op=f"{op}_recheck",
            backoff_seconds=self.read_backoff_seconds,
        )
        if rows:
            return QueryError(AUTHORIZATION_DENIED, f"{op}:not_owner")
        return QueryError(NOT_FOUND, "progress_not_found")

    async def summary(self, *, classroom_id: Optional[str] = None, status: Optional[str] = None) -> DashboardSummary:
        return dashboard_summary(await self.list(classroom_id=classroom_id, status=status))


__all__ = ["ProgressService", "dashboard_summary", "filter_records"]
