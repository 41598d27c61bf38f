"""
Push-channel port: a black-box subscribe/unsubscribe primitive.

Implementations call ``on_event`` from their own callback stack; the
subscription manager re-schedules delivery onto its own tasks.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"
EVENT_KINDS = frozenset({INSERT, UPDATE, DELETE})
# Local catch-up signal after a resubscribe; never sent by the transport.
RESYNC = "resync"


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    collection: str
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)

    def matches(self, filters: Optional[Mapping[str, Any]]) -> bool:
        """Equality check against the row; absent columns count as a match.

        Delete payloads often carry only the primary key, so a missing column
        lets the event through (callers tolerate extra refetches).
        """
        if not filters:
            return True
        row = self.record or self.old_record
        for column, expected in filters.items():
            if column in row and str(row[column]) != str(expected):
                return False
        return True


EventCallback = Callable[[ChangeEvent], None]


class PushChannelProtocol(Protocol):
    async def subscribe(
        self, collection: str, *, filters: Optional[Mapping[str, Any]], on_event: EventCallback
    ) -> Any:
        """Open a channel for one collection; returns an opaque handle."""
        ...

    async def unsubscribe(self, handle: Any) -> None: ...

    def on_reconnect(self, callback: Callable[[], None]) -> None:
        """Register a callback fired after the transport re-established itself."""
        ...


__all__ = [
    "DELETE",
    "EVENT_KINDS",
    "INSERT",
    "RESYNC",
    "UPDATE",
    "ChangeEvent",
    "EventCallback",
    "PushChannelProtocol",
]
