"""Unit tests for the event publisher."""

from __future__ import annotations

import asyncio

import pytest

from capture_mcp.pipeline.events import DataClear, DataUpdate, Event, EventPublisher
from tests.factories import create_record


class TestEventPublisher:
    """Tests for EventPublisher and Subscription."""

    def test_update_carries_records(self, publisher: EventPublisher) -> None:
        """A published update carries the full record list."""
        subscription = publisher.subscribe()
        records = [create_record("a"), create_record("b")]

        publisher.publish_update(records)

        event = subscription.get_nowait()
        assert isinstance(event, DataUpdate)
        assert event.kind == "dataUpdate"
        assert [r.id for r in event.records] == ["a", "b"]

    def test_clear_observed_before_later_updates(self, publisher: EventPublisher) -> None:
        """Every subscriber sees dataClear before post-clear updates."""
        first = publisher.subscribe()
        second = publisher.subscribe()

        publisher.publish_update([create_record("old")])
        publisher.publish_clear()
        publisher.publish_update([create_record("new")])

        for subscription in (first, second):
            kinds = []
            while (event := subscription.get_nowait()) is not None:
                kinds.append(event.kind)
            assert kinds == ["dataUpdate", "dataClear", "dataUpdate", "dataUpdate"]

    def test_listener_receives_events_in_order(self, publisher: EventPublisher) -> None:
        """Callback listeners are invoked synchronously in order."""
        seen: list[Event] = []
        publisher.add_listener(seen.append)

        publisher.publish_clear()

        assert [e.kind for e in seen] == ["dataClear", "dataUpdate"]

    def test_remove_listener(self, publisher: EventPublisher) -> None:
        """A removed listener is no longer called."""
        seen: list[Event] = []
        remove = publisher.add_listener(seen.append)
        remove()

        publisher.publish_update([])

        assert seen == []
        assert publisher.subscriber_count == 0

    def test_failing_listener_does_not_block_others(self, publisher: EventPublisher) -> None:
        """An exception in one listener does not stop delivery."""
        seen: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("boom")

        publisher.add_listener(broken)
        publisher.add_listener(seen.append)

        publisher.publish_update([])

        assert len(seen) == 1

    def test_closed_subscription_is_removed(self, publisher: EventPublisher) -> None:
        """Closing a subscription unsubscribes it."""
        subscription = publisher.subscribe()
        subscription.close()

        publisher.publish_update([])

        assert publisher.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_async_iteration_ends_on_close(self, publisher: EventPublisher) -> None:
        """Async iteration yields queued events and stops after close."""
        subscription = publisher.subscribe()
        received: list[str] = []

        async def consume() -> None:
            async for event in subscription:
                received.append(event.kind)

        task = asyncio.create_task(consume())
        publisher.publish_update([])
        publisher.publish_clear()
        await asyncio.sleep(0)
        subscription.close()
        await asyncio.wait_for(task, timeout=1)

        assert received == ["dataUpdate", "dataClear", "dataUpdate"]

    def test_data_clear_kind(self) -> None:
        """DataClear is tagged as dataClear."""
        assert DataClear().kind == "dataClear"
