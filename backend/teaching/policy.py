"""
Per-role query shapes mirroring the server's row-level policies.

Why:
    The remote store enforces authorization, but the client must request only
    what the role may see so it never renders or targets foreign rows. Keeping
    the role -> shape mapping in one table makes it enumerable and testable
    without a transport.

Policy (mirrors the server):
    - student: progress rows where ``user_id`` is the student's own id; no
      classroom management, no student directory.
    - teacher: classrooms where ``teacher_id`` is the teacher's own id; the
      progress dashboard reads the whole collection (intentional broad read);
      progress mutations are limited server-side to owned classrooms.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from identity_access.domain import ROLE_STUDENT, ROLE_TEACHER, Profile
from identity_access.errors import AUTHORIZATION_DENIED, QueryError
from storage.ports import CLASSROOM, PROGRESS, USERS

# Read views, one per UI listing.
PROGRESS_LIST = "progress.list"
CLASSROOM_LIST = "classroom.list"
STUDENT_DIRECTORY = "users.students"

PROGRESS_COLUMNS = "id, user_id, classroom_id, subject, score, status, updated_at"
STUDENT_PROGRESS_COLUMNS = (
    PROGRESS_COLUMNS + ", classroom:classroom_id (id, name, schedule, room_number, teacher_id, created_at)"
)
TEACHER_PROGRESS_COLUMNS = (
    PROGRESS_COLUMNS
    + ", student:user_id (id, name, email)"
    + ", classroom:classroom_id (id, name, room_number, teacher_id)"
)
CLASSROOM_COLUMNS = "id, name, schedule, room_number, teacher_id, created_at, progress:progress!classroom_id(count)"
STUDENT_DIRECTORY_COLUMNS = "id, name, email"


@dataclass(frozen=True)
class QueryShape:
    """Collection, columns, equality filters and order for one read."""

    collection: str
    columns: str = "*"
    filters: Tuple[Tuple[str, Any], ...] = ()
    order_by: Optional[str] = None
    descending: bool = False

    @property
    def filter_map(self) -> Dict[str, Any]:
        return dict(self.filters)

    def narrowed(self, **extra: Any) -> "QueryShape":
        """Add equality filters; role filters cannot be overridden."""
        current = self.filter_map
        added = []
        for column, value in extra.items():
            if value is None:
                continue
            if column in current and current[column] != value:
                raise QueryError(AUTHORIZATION_DENIED, f"filter_conflict:{column}")
            if column not in current:
                added.append((column, value))
        return replace(self, filters=self.filters + tuple(added))


def _student_progress(profile: Profile) -> QueryShape:
    return QueryShape(
        collection=PROGRESS,
        columns=STUDENT_PROGRESS_COLUMNS,
        filters=(("user_id", profile.id),),
        order_by="updated_at",
        descending=True,
    )


def _teacher_progress(profile: Profile) -> QueryShape:
    return QueryShape(
        collection=PROGRESS,
        columns=TEACHER_PROGRESS_COLUMNS,
        order_by="updated_at",
        descending=True,
    )


def _teacher_classrooms(profile: Profile) -> QueryShape:
    return QueryShape(
        collection=CLASSROOM,
        columns=CLASSROOM_COLUMNS,
        filters=(("teacher_id", profile.id),),
        order_by="created_at",
        descending=True,
    )


def _teacher_student_directory(profile: Profile) -> QueryShape:
    return QueryShape(
        collection=USERS,
        columns=STUDENT_DIRECTORY_COLUMNS,
        filters=(("role", ROLE_STUDENT),),
        order_by="name",
    )


READ_SHAPES: Mapping[str, Mapping[str, Callable[[Profile], QueryShape]]] = {
    PROGRESS_LIST: {ROLE_STUDENT: _student_progress, ROLE_TEACHER: _teacher_progress},
    CLASSROOM_LIST: {ROLE_TEACHER: _teacher_classrooms},
    STUDENT_DIRECTORY: {ROLE_TEACHER: _teacher_student_directory},
}

# Change-feed filters per view: the server-side equality filter a
# subscription should carry for the role (None means whole collection).
CHANGE_FILTERS: Mapping[str, Mapping[str, Callable[[Profile], Optional[Dict[str, Any]]]]] = {
    PROGRESS_LIST: {
        ROLE_STUDENT: lambda p: {"user_id": p.id},
        ROLE_TEACHER: lambda p: None,
    },
    CLASSROOM_LIST: {ROLE_TEACHER: lambda p: {"teacher_id": p.id}},
    STUDENT_DIRECTORY: {ROLE_TEACHER: lambda p: None},
}


def views_for_role(role: str) -> FrozenSet[str]:
    return frozenset(view for view, per_role in READ_SHAPES.items() if role in per_role)


def read_shape(view: str, profile: Optional[Profile]) -> QueryShape:
    """Return the query shape `profile` may issue for `view`.

    Raises:
        QueryError: ``authorization-denied`` without a profile or for a role
            that has no shape for the view.
    """
    if profile is None:
        raise QueryError(AUTHORIZATION_DENIED, "profile_unavailable")
    builder = READ_SHAPES.get(view, {}).get(profile.role)
    if builder is None:
        raise QueryError(AUTHORIZATION_DENIED, f"{view}:{profile.role}")
    return builder(profile)


def change_filter(view: str, profile: Optional[Profile]) -> Optional[Dict[str, Any]]:
    if profile is None:
        raise QueryError(AUTHORIZATION_DENIED, "profile_unavailable")
    builder = CHANGE_FILTERS.get(view, {}).get(profile.role)
    if builder is None:
        raise QueryError(AUTHORIZATION_DENIED, f"{view}:{profile.role}")
    return builder(profile)


def can_view_progress(profile: Optional[Profile], row: Mapping[str, Any]) -> bool:
    if profile is None:
        return False
    if profile.is_teacher:
        return True
    return profile.is_student and str(row.get("user_id")) == profile.id


def visible_progress(profile: Optional[Profile], rows: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Drop rows outside the role's visibility, whatever the server returned."""
    return [row for row in rows if can_view_progress(profile, row)]


def can_manage_classroom(profile: Optional[Profile], row: Optional[Mapping[str, Any]] = None) -> bool:
    if profile is None or not profile.is_teacher:
        return False
    if row is None:
        return True
    return str(row.get("teacher_id")) == profile.id


def require_teacher(profile: Optional[Profile], op: str) -> Profile:
    if profile is None:
        raise QueryError(AUTHORIZATION_DENIED, "profile_unavailable")
    if not profile.is_teacher:
        raise QueryError(AUTHORIZATION_DENIED, f"{op}:{profile.role}")
    return profile


__all__ = [
    "CHANGE_FILTERS",
    "CLASSROOM_LIST",
    "PROGRESS_LIST",
    "READ_SHAPES",
    "STUDENT_DIRECTORY",
    "QueryShape",
    "can_manage_classroom",
    "can_view_progress",
    "change_filter",
    "read_shape",
    "require_teacher",
    "views_for_role",
    "visible_progress",
]
