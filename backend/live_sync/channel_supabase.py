"""
Supabase Realtime adapter for the push-channel port.

The client is expected to expose `.channel(topic)` returning a channel that
offers `on_postgres_changes(event, callback, table=..., schema=..., filter=...)`
and an awaitable `subscribe()`, plus an awaitable `remove_channel(channel)`.
It is duck-typed so tests can pass a stub.

Realtime payloads differ between library versions; `_to_event` accepts the
nested ``{"data": {"type", "record", "old_record"}}`` form and the flat
``{"eventType", "new", "old"}`` form.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from identity_access.errors import TRANSPORT_ERROR, SubscriptionError

from .ports import EVENT_KINDS, ChangeEvent, EventCallback

logger = logging.getLogger("progress_tracker.live_sync")


def _first_key(d: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return None


def _to_event(collection: str, payload: Any) -> Optional[ChangeEvent]:
    if not isinstance(payload, Mapping):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
    kind = str(_first_key(data, "type", "eventType") or "").lower()
    if kind not in EVENT_KINDS:
        return None
    record = _first_key(data, "record", "new") or {}
    old = _first_key(data, "old_record", "old") or {}
    return ChangeEvent(
        kind=kind,
        collection=str(data.get("table") or collection),
        record=dict(record) if isinstance(record, Mapping) else {},
        old_record=dict(old) if isinstance(old, Mapping) else {},
    )


def postgres_filter(filters: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Render the server-side filter (Realtime supports a single ``col=eq.val``)."""
    if not filters:
        return None
    if len(filters) > 1:
        raise ValueError("realtime_supports_single_filter")
    column, value = next(iter(filters.items()))
    return f"{column}=eq.{value}"


class SupabasePushChannel:
    """Push channel using a supabase client's Realtime channels."""

    def __init__(self, client: Any, *, schema: str = "public") -> None:
        self._client = client
        self._schema = schema
        self._reconnect_callbacks: List[Callable[[], None]] = []

    async def subscribe(
        self, collection: str, *, filters: Optional[Mapping[str, Any]], on_event: EventCallback
    ) -> Any:
        topic = f"{collection}-changes-{uuid4().hex[:12]}"
        channel = self._client.channel(topic)

        def _callback(payload: Any, *_: Any) -> None:
            event = _to_event(collection, payload)
            if event is None:
                logger.debug("Ignoring unrecognized realtime payload on %s", topic)
                return
            on_event(event)

        kwargs: Dict[str, Any] = {"table": collection, "schema": self._schema}
        server_filter = postgres_filter(filters)
        if server_filter:
            kwargs["filter"] = server_filter
        channel.on_postgres_changes("*", _callback, **kwargs)
        await channel.subscribe()
        logger.debug("Realtime channel %s subscribed", topic)
        return channel

    async def unsubscribe(self, handle: Any) -> None:
        try:
            await self._client.remove_channel(handle)
        except Exception as exc:
            raise SubscriptionError(TRANSPORT_ERROR, "remove_channel") from exc

    def on_reconnect(self, callback: Callable[[], None]) -> None:
        self._reconnect_callbacks.append(callback)

    def notify_reconnected(self) -> None:
        """Signal that the realtime socket reconnected; fires registered callbacks."""
        for callback in list(self._reconnect_callbacks):
            callback()


__all__ = ["SupabasePushChannel", "postgres_filter"]
