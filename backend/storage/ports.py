"""
Remote store ports used by the identity and teaching subsystems.

Keep these small and framework-agnostic so tests can supply simple fakes.

Security:
    Every call runs with the caller's session token. The remote store applies
    Row Level Security and may reject any operation or silently hide rows.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol


# Collection names on the remote store.
USERS = "users"
CLASSROOM = "classroom"
PROGRESS = "progress"


class RemoteStoreError(Exception):
    """Server-side rejection of a store call (policy, constraint, missing row).

    Attributes:
        code: PostgREST/Postgres error code when known (e.g. ``42501``).
        status: HTTP status when known.
    """

    def __init__(self, message: str = "", *, code: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message or code or "remote_store_error")
        self.message = message
        self.code = code
        self.status = status

    @property
    def is_not_found(self) -> bool:
        return self.code == "PGRST116" or self.status in (404, 406)


class RemoteTransportError(Exception):
    """Network, timeout or protocol fault before the server could answer."""


class RemoteStoreProtocol(Protocol):
    """Minimal interface over named collections with equality filters.

    Intent:
        Allow query shaping and profile bootstrap to run against Supabase in
        production and an in-memory policy fake in tests.

    Behavior:
        - ``columns`` follows PostgREST select syntax and may embed linked
          collections (``classroom:classroom_id (id, name)``).
        - ``update``/``delete`` return the affected rows; an empty list means
          nothing matched or the policy hid the rows.
    """

    async def select(
        self,
        collection: str,
        *,
        columns: str = "*",
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    async def insert(self, collection: str, row: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def upsert(self, collection: str, row: Mapping[str, Any], *, on_conflict: str = "id") -> Dict[str, Any]: ...

    async def update(
        self, collection: str, values: Mapping[str, Any], *, filters: Mapping[str, Any]
    ) -> List[Dict[str, Any]]: ...

    async def delete(self, collection: str, *, filters: Mapping[str, Any]) -> List[Dict[str, Any]]: ...


__all__ = [
    "CLASSROOM",
    "PROGRESS",
    "USERS",
    "RemoteStoreError",
    "RemoteStoreProtocol",
    "RemoteTransportError",
]
