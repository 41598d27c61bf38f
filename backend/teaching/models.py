"""Classroom and progress value objects built from store rows."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from storage.rows import embedded_count, one_or_none

STATUS_NOT_STARTED = "not-started"
STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
PROGRESS_STATUSES = (STATUS_NOT_STARTED, STATUS_IN_PROGRESS, STATUS_COMPLETED)


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class Classroom:
    id: str
    name: str
    schedule: Optional[str]
    room_number: Optional[str]
    owner_teacher_id: Optional[str]
    created_at: Optional[str]
    progress_count: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Classroom":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            schedule=_opt_str(row.get("schedule")),
            room_number=_opt_str(row.get("room_number")),
            owner_teacher_id=_opt_str(row.get("teacher_id")),
            created_at=_opt_str(row.get("created_at")),
            progress_count=embedded_count(row.get("progress")),
        )


@dataclass(frozen=True)
class ProgressRecord:
    id: str
    student_id: str
    classroom_id: str
    subject: str
    score: int
    status: str
    updated_at: Optional[str]
    # Linked rows from composite selects, normalized to object-or-None.
    classroom: Optional[Dict[str, Any]] = None
    student: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ProgressRecord":
        return cls(
            id=str(row["id"]),
            student_id=str(row.get("user_id") or ""),
            classroom_id=str(row.get("classroom_id") or ""),
            subject=str(row.get("subject") or ""),
            score=int(row.get("score") or 0),
            status=str(row.get("status") or STATUS_NOT_STARTED),
            updated_at=_opt_str(row.get("updated_at")),
            classroom=one_or_none(row.get("classroom")),
            student=one_or_none(row.get("student")),
        )


@dataclass(frozen=True)
class StudentSummary:
    id: str
    name: str
    email: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "StudentSummary":
        return cls(id=str(row["id"]), name=str(row.get("name") or ""), email=str(row.get("email") or ""))


@dataclass(frozen=True)
class DashboardSummary:
    total_records: int
    distinct_students: int
    average_score: Optional[float]
    status_counts: Dict[str, int] = field(default_factory=dict)
    classrooms: List[Dict[str, Any]] = field(default_factory=list)


def score_band(score: int) -> str:
    """Bucket a score the way the dashboards colour it."""
    if score >= 90:
        return "excellent"
    if score >= 80:
        return "good"
    if score >= 70:
        return "fair"
    return "needs-attention"


__all__ = [
    "PROGRESS_STATUSES",
    "STATUS_COMPLETED",
    "STATUS_IN_PROGRESS",
    "STATUS_NOT_STARTED",
    "Classroom",
    "DashboardSummary",
    "ProgressRecord",
    "StudentSummary",
    "score_band",
]
