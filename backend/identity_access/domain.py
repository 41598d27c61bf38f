"""
Identity domain constants, value objects and simple helpers.

Why:
- Centralize allowed roles to avoid drift between query shaping, profile
  bootstrap and the UI guards that consume the session.
- Keep terms aligned with the glossary (Identity, Profile, Role).
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

ROLE_STUDENT = "student"
ROLE_TEACHER = "teacher"

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({ROLE_STUDENT, ROLE_TEACHER})
DEFAULT_ROLE = ROLE_STUDENT

DISPLAY_NAME_MAX_LEN = 100
_EMAIL_PREFIX_RE = re.compile(r"[^A-Za-z0-9._\-]+")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_role(value: Any) -> Optional[str]:
    """Return a known role in lower case, or None for anything else."""
    if not isinstance(value, str):
        return None
    role = value.strip().lower()
    return role if role in ALLOWED_ROLES else None


def display_name_from_email(email: Optional[str]) -> str:
    """Derive a display name from the local part of an email address.

    Characters outside ``[A-Za-z0-9._-]`` are dropped; falls back to "User".
    """
    local = (email or "").split("@", 1)[0]
    cleaned = _EMAIL_PREFIX_RE.sub("", local).strip("._-")
    return cleaned[:50] or "User"


def clean_display_name(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    collapsed = " ".join(value.split())
    if not collapsed:
        return None
    return collapsed[:DISPLAY_NAME_MAX_LEN]


@dataclass(frozen=True)
class Identity:
    """Authenticated principal as seen by the identity backend (role-agnostic)."""

    id: str
    email: str
    access_token: str
    expires_at: Optional[int] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[int] = None) -> bool:
        if self.expires_at is None:
            return False
        current = int(time.time()) if now is None else now
        return self.expires_at <= current


@dataclass(frozen=True)
class ProfileHints:
    """Advisory role/name hints captured at sign-up (user metadata)."""

    role: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def from_metadata(cls, metadata: Optional[Mapping[str, Any]]) -> "ProfileHints":
        data = dict(metadata or {})
        return cls(role=data.get("role"), display_name=data.get("name"))


@dataclass(frozen=True)
class Profile:
    """Role-tagged user record derived from an Identity.

    ``provisional`` marks a profile synthesized locally after a failed
    bootstrap write; its ``created_at`` is not what storage will hold.
    """

    id: str
    email: str
    display_name: str
    role: str
    created_at: str
    provisional: bool = False

    @property
    def is_teacher(self) -> bool:
        return self.role == ROLE_TEACHER

    @property
    def is_student(self) -> bool:
        return self.role == ROLE_STUDENT

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        role = normalize_role(row.get("role")) or DEFAULT_ROLE
        email = str(row.get("email") or "")
        return cls(
            id=str(row["id"]),
            email=email,
            display_name=clean_display_name(row.get("name")) or display_name_from_email(email),
            role=role,
            created_at=str(row.get("created_at") or ""),
        )

    def to_row(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.display_name, "role": self.role}


__all__ = [
    "ALLOWED_ROLES",
    "DEFAULT_ROLE",
    "DISPLAY_NAME_MAX_LEN",
    "ROLE_STUDENT",
    "ROLE_TEACHER",
    "Identity",
    "Profile",
    "ProfileHints",
    "clean_display_name",
    "display_name_from_email",
    "normalize_role",
    "utc_now_iso",
]
