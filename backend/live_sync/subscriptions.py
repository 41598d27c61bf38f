"""
Change subscription manager: one push channel per active view.

Intent:
    Views register interest in a collection and get their handler called for
    each matching change. The manager owns channel lifetimes so that sign-out,
    identity changes and view teardown can release every channel.

Behavior:
    - State per subscription: unsubscribed -> subscribing -> active -> unsubscribed.
    - At most one live subscription per view key; opening a new one closes the
      previous first.
    - Transport callbacks only enqueue events. A consumer task per subscription
      starts each handler as its own task, so handlers never run inside the
      transport's callback stack and a second event may arrive while the
      first handler is still running (handlers must be reentrant-safe).
    - `close()` stops delivery immediately and is safe to call repeatedly.
      Handlers already running are not cancelled.
    - Delivery is at-least-once; reconnects resubscribe every open channel and
      then hand each handler one `resync` event to catch up on missed changes.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Union

from identity_access.errors import TRANSPORT_ERROR, SubscriptionError

from .ports import RESYNC, ChangeEvent, PushChannelProtocol

logger = logging.getLogger("progress_tracker.live_sync")

UNSUBSCRIBED = "unsubscribed"
SUBSCRIBING = "subscribing"
ACTIVE = "active"

EventHandler = Callable[[ChangeEvent], Union[Awaitable[None], None]]

_channel_ids = itertools.count(1)


class Subscription:
    """A view's registration on one collection (ephemeral, never persisted)."""

    def __init__(
        self,
        *,
        view: str,
        collection: str,
        filters: Optional[Mapping[str, Any]],
        on_event: EventHandler,
    ) -> None:
        self.channel_id = f"{view}:{collection}:{next(_channel_ids)}"
        self.view = view
        self.collection = collection
        self.filters: Optional[Dict[str, Any]] = dict(filters) if filters else None
        self.on_event = on_event
        self.state = UNSUBSCRIBED
        self.delivered = 0
        self._handle: Any = None
        self._queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"Subscription({self.channel_id!r}, state={self.state!r})"

    @property
    def is_active(self) -> bool:
        return self.state == ACTIVE

    def matches(self, event: ChangeEvent) -> bool:
        if event.collection and event.collection != self.collection:
            return False
        return event.matches(self.filters)

    def deliver(self, event: ChangeEvent) -> None:
        """Transport callback: enqueue only, never run the handler here."""
        if self.state != ACTIVE or not self.matches(event):
            return
        self._queue.put_nowait(event)

    def _start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self._consume())

    def _stop(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        # Drop queued-but-unstarted events; in-flight handlers finish on their own.
        while not self._queue.empty():
            self._queue.get_nowait()

    async def _consume(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            event = await self._queue.get()
            if self.state != ACTIVE:
                continue
            self.delivered += 1
            task = loop.create_task(self._run_handler(event))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _run_handler(self, event: ChangeEvent) -> None:
        try:
            result = self.on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Change handler failed for %s (%s)", self.channel_id, event.kind)

    async def wait_idle(self) -> None:
        """Wait until queued events are dispatched and running handlers finished."""
        while True:
            await asyncio.sleep(0)
            if self._inflight:
                await asyncio.gather(*list(self._inflight), return_exceptions=True)
                continue
            if self._queue.empty() or self.state != ACTIVE:
                return


class SubscriptionManager:
    """Owns push channels keyed by view."""

    def __init__(self, channel: PushChannelProtocol) -> None:
        self._channel = channel
        self._by_view: Dict[str, Subscription] = {}
        self._reconnects: Set[asyncio.Task] = set()
        channel.on_reconnect(self._on_reconnect)

    def get(self, view: str) -> Optional[Subscription]:
        return self._by_view.get(view)

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._by_view.values())

    async def open(
        self,
        view: str,
        collection: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        on_event: EventHandler,
    ) -> Subscription:
        """Open a subscription for `view`, replacing any previous one.

        Raises:
            SubscriptionError: ``transport-error`` when the channel cannot be opened.
        """
        previous = self._by_view.get(view)
        if previous is not None:
            await self.close(previous)
        sub = Subscription(view=view, collection=collection, filters=filters, on_event=on_event)
        sub.state = SUBSCRIBING
        self._by_view[view] = sub
        try:
            handle = await self._channel.subscribe(collection, filters=sub.filters, on_event=sub.deliver)
        except Exception as exc:
            sub.state = UNSUBSCRIBED
            if self._by_view.get(view) is sub:
                del self._by_view[view]
            logger.warning("Subscribe failed for %s: %s", sub.channel_id, exc.__class__.__name__)
            raise SubscriptionError(TRANSPORT_ERROR, sub.channel_id) from exc
        if sub.state != SUBSCRIBING:
            # Closed (or replaced) while the subscribe call was in flight.
            await self._release(handle, sub)
            return sub
        sub._handle = handle
        sub.state = ACTIVE
        sub._start()
        logger.debug("Subscription %s active", sub.channel_id)
        return sub

    async def close(self, subscription: Optional[Subscription]) -> None:
        """Stop delivery and release the channel; idempotent."""
        if subscription is None:
            return
        subscription.state = UNSUBSCRIBED
        subscription._stop()
        if self._by_view.get(subscription.view) is subscription:
            del self._by_view[subscription.view]
        handle, subscription._handle = subscription._handle, None
        if handle is not None:
            await self._release(handle, subscription)

    async def close_view(self, view: str) -> None:
        await self.close(self._by_view.get(view))

    async def close_all(self) -> None:
        subs = list(self._by_view.values())
        for sub in subs:
            await self.close(sub)
        if subs:
            logger.info("Closed %d subscriptions", len(subs))

    async def _release(self, handle: Any, subscription: Subscription) -> None:
        try:
            await self._channel.unsubscribe(handle)
        except Exception as exc:
            # Delivery is already stopped locally; the server drops the channel with the socket.
            logger.warning("Unsubscribe failed for %s: %s", subscription.channel_id, exc.__class__.__name__)

    def _on_reconnect(self) -> None:
        task = asyncio.get_running_loop().create_task(self.resubscribe_all())
        self._reconnects.add(task)
        task.add_done_callback(self._reconnects.discard)

    async def wait_reconnected(self) -> None:
        """Wait for resubscribes started by reconnect signals."""
        while self._reconnects:
            await asyncio.gather(*list(self._reconnects), return_exceptions=True)

    async def resubscribe_all(self) -> None:
        """Re-open every active subscription after the transport reconnected."""
        for sub in list(self._by_view.values()):
            if sub.state != ACTIVE:
                continue
            old, sub._handle = sub._handle, None
            if old is not None:
                await self._release(old, sub)
            sub.state = SUBSCRIBING
            try:
                handle = await self._channel.subscribe(sub.collection, filters=sub.filters, on_event=sub.deliver)
            except Exception as exc:
                logger.warning("Resubscribe failed for %s: %s", sub.channel_id, exc.__class__.__name__)
                await self.close(sub)
                continue
            if sub.state != SUBSCRIBING:
                await self._release(handle, sub)
                continue
            sub._handle = handle
            sub.state = ACTIVE
            # Changes made while the transport was down were never delivered.
            sub._queue.put_nowait(ChangeEvent(kind=RESYNC, collection=sub.collection))
            logger.info("Resubscribed %s", sub.channel_id)


__all__ = ["ACTIVE", "SUBSCRIBING", "UNSUBSCRIBED", "Subscription", "SubscriptionManager"]
