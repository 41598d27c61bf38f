"""
Live read-models: a view's local data, replaced wholesale on every refetch.

Why:
    Change events are delivered at-least-once and may overlap. Instead of
    applying deltas, each event triggers an idempotent refetch of the whole
    view. A generation counter makes "last refetch started wins": results of
    older refetches that finish late are discarded.

Behavior:
    - A failed refetch keeps the previous value and records the error.
    - `bind()` opens the view's subscription through the manager and loads
      the initial value; `unbind()` closes it. A refetch already running when
      the view is unbound still completes; its result is simply unused.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Generic, List, Mapping, Optional, TypeVar

from identity_access.errors import ProgressTrackerError

from .ports import ChangeEvent
from .subscriptions import Subscription, SubscriptionManager

logger = logging.getLogger("progress_tracker.live_sync")

T = TypeVar("T")


class LiveReadModel(Generic[T]):
    def __init__(self, view: str, fetch: Callable[[], Awaitable[T]], *, initial: Optional[T] = None) -> None:
        self.view = view
        self._fetch = fetch
        self.value: Optional[T] = initial
        self.error: Optional[ProgressTrackerError] = None
        self.applied_count = 0
        self._started = 0
        self._listeners: List[Callable[[Optional[T]], None]] = []
        self._subscription: Optional[Subscription] = None
        self._manager: Optional[SubscriptionManager] = None

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    def watch(self, listener: Callable[[Optional[T]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def refresh(self) -> Optional[T]:
        """Refetch and replace the value unless a newer refetch has started."""
        self._started += 1
        generation = self._started
        try:
            result = await self._fetch()
        except ProgressTrackerError as exc:
            if generation == self._started:
                self.error = exc
            logger.info("Refetch of %s failed: %s", self.view, exc.kind)
            return self.value
        if generation != self._started:
            logger.debug("Discarding stale refetch %d of %s (latest %d)", generation, self.view, self._started)
            return self.value
        self.value = result
        self.error = None
        self.applied_count += 1
        for listener in list(self._listeners):
            listener(result)
        return result

    async def handle_event(self, event: ChangeEvent) -> None:
        await self.refresh()

    async def bind(
        self,
        manager: SubscriptionManager,
        collection: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Subscription:
        """Subscribe the view to `collection` changes, then load its value."""
        self._manager = manager
        self._subscription = await manager.open(self.view, collection, filters=filters, on_event=self.handle_event)
        await self.refresh()
        return self._subscription

    async def unbind(self) -> None:
        if self._manager is not None and self._subscription is not None:
            await self._manager.close(self._subscription)
        self._subscription = None


__all__ = ["LiveReadModel"]
