"""Async broadcast event bus.

The event bus fans scheduler state changes (scan started/complete, new
device list, config changes) out to every connected observer. Each
subscriber owns a bounded queue; publishing never blocks and never fails
because of one slow or gone subscriber. There is no buffering for
subscribers that are not registered yet and no replay: a late subscriber
pulls current state separately.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100

# Wakes a consumer blocked in get() when its subscription is closed.
_CLOSED = object()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Event:
    """A single published state change."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_message(self) -> dict[str, Any]:
        """Return the JSON-serializable wire form ``{event, data, timestamp}``."""
        return {"event": self.kind, "data": self.payload, "timestamp": self.timestamp}


@dataclass(eq=False)
class Subscription:
    """Represents an active event subscription.

    Iterate with ``async for event in subscription`` or call ``get()``;
    both end once the subscription is closed and drained.
    """

    id: str = field(default_factory=lambda: uuid4().hex)
    event_types: list[str] = field(default_factory=lambda: ["*"])
    maxsize: int = DEFAULT_QUEUE_SIZE
    closed: bool = False
    _queue: asyncio.Queue = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._queue = asyncio.Queue(maxsize=self.maxsize)

    def matches(self, event_type: str) -> bool:
        return "*" in self.event_types or event_type in self.event_types

    def offer(self, event: Event) -> bool:
        """Non-blocking send. Returns False if the subscriber cannot receive now."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> Event | None:
        """Wait for the next event. Returns ``None`` once closed and drained."""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # A full queue means nobody is blocked in get().
            pass

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Broadcast pub/sub over a registered-subscriber set.

    Parameters
    ----------
    queue_size:
        Default per-subscriber queue bound. A subscriber whose queue is full
        misses events until it catches up.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscriptions: dict[str, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        event_types: list[str] | None = None,
        maxsize: int | None = None,
    ) -> Subscription:
        """Register a subscriber for the given event types (default: all).

        Returns a ``Subscription`` that can be passed to ``unsubscribe()``.
        """
        sub = Subscription(
            event_types=list(event_types) if event_types else ["*"],
            maxsize=maxsize if maxsize is not None else self._queue_size,
        )
        self._subscriptions[sub.id] = sub
        logger.debug("Subscriber %s registered (%d total)", sub.id, len(self._subscriptions))
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription and wake any consumer waiting on it."""
        self._subscriptions.pop(subscription.id, None)
        subscription.close()
        logger.debug(
            "Subscriber %s removed (%d remaining)", subscription.id, len(self._subscriptions)
        )

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Deliver an event to every matching subscriber.

        Returns the number of subscribers that accepted it. Closed or full
        subscribers are skipped.
        """
        event = Event(kind=event_type, payload=dict(payload or {}))
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if not sub.matches(event_type):
                continue
            if sub.offer(event):
                delivered += 1
            else:
                logger.debug("Subscriber %s skipped for %s (closed or full)", sub.id, event_type)
        return delivered
