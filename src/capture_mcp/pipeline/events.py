"""Publish/subscribe channel for record-set change notifications.

Every subscriber owns a FIFO queue. A clear enqueues ``DataClear`` and an
empty ``DataUpdate`` back to back, so no subscriber can observe post-clear
data before the clear itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Literal

from capture_mcp.models import TransactionRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataUpdate:
    """Full ordered record list after a change."""

    records: tuple[TransactionRecord, ...] = ()
    kind: Literal["dataUpdate"] = field(default="dataUpdate", init=False)


@dataclass(frozen=True)
class DataClear:
    """The record set was reset."""

    kind: Literal["dataClear"] = field(default="dataClear", init=False)


Event = DataUpdate | DataClear


class Subscription:
    """One subscriber's ordered event stream.

    Iterate with ``async for`` or call ``get()``; ``close()`` ends the stream.
    """

    def __init__(self, publisher: EventPublisher) -> None:
        self._publisher = publisher
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self.closed = False

    def deliver(self, event: Event) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Event | None:
        """Wait for the next event; None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def get_nowait(self) -> Event | None:
        """Next queued event, or None if nothing is queued."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)
        self._publisher.unsubscribe(self)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventPublisher:
    """Fans out record-set notifications to subscribers.

    Queue subscribers receive events through ``Subscription``; listeners are
    plain callables invoked synchronously in publication order.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Callable[[Event], None]] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_listener(self, listener: Callable[[Event], None]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)

    def _dispatch(self, *events: Event) -> None:
        for subscription in list(self._subscriptions):
            for event in events:
                subscription.deliver(event)
        for listener in list(self._listeners):
            for event in events:
                try:
                    listener(event)
                except Exception as e:
                    logger.error(f"Event listener failed on {event.kind}: {e}", exc_info=True)

    def publish_update(self, records: list[TransactionRecord]) -> None:
        self._dispatch(DataUpdate(tuple(records)))

    def publish_clear(self) -> None:
        self._dispatch(DataClear(), DataUpdate(()))
