"""Tests for the event bus."""

from __future__ import annotations

import asyncio

import pytest

from crowdcut.jobs.events import Event, EventBus, Subscription


class TestEventBus:
    """Tests for EventBus publish/subscribe."""

    def test_project_filter(self) -> None:
        """Subscribers only see their own project's events."""
        bus = EventBus()
        sub = bus.subscribe(project_id="p1")

        bus.publish("p1", "job.added", {"id": "a"})
        bus.publish("p2", "job.added", {"id": "b"})

        events = sub.drain()
        assert [e.payload["id"] for e in events] == ["a"]

    def test_event_name_filter(self) -> None:
        """Subscribers can restrict to specific event names."""
        bus = EventBus()
        sub = bus.subscribe(event_names=["workflow.progress"])

        bus.publish("p1", "job.added", {})
        bus.publish("p1", "workflow.progress", {"progress": 10})

        events = sub.drain()
        assert len(events) == 1
        assert events[0].name == "workflow.progress"

    def test_bounded_queue_drops_oldest(self) -> None:
        """A full subscriber queue drops its oldest event."""
        bus = EventBus(max_queue_size=2)
        sub = bus.subscribe()

        for i in range(4):
            bus.publish("p1", "tick", {"n": i})

        assert [e.payload["n"] for e in sub.drain()] == [2, 3]
        assert sub.dropped == 2

    def test_callback_subscription(self) -> None:
        """Callbacks are invoked inline; their errors are contained."""
        bus = EventBus()
        received: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(callback=broken)
        bus.subscribe(callback=received.append)

        bus.publish("p1", "job.started", {"id": "a"})

        assert len(received) == 1
        assert received[0].project_id == "p1"

    def test_unsubscribe(self) -> None:
        """Unsubscribed handles receive nothing further."""
        bus = EventBus()
        with bus.subscribe(project_id="p1") as sub:
            assert bus.subscriber_count("p1") == 1
        bus.publish("p1", "job.added", {})

        assert sub.drain() == []
        assert bus.subscriber_count() == 0

    def test_callback_subscription_has_no_queue(self) -> None:
        """Reading from a callback subscription is an error."""
        bus = EventBus()
        sub = bus.subscribe(callback=lambda e: None)

        with pytest.raises(RuntimeError):
            sub.get_nowait()

    def test_subscription_needs_queue_or_callback(self) -> None:
        """A handle with no delivery target is rejected up front."""
        bus = EventBus()

        with pytest.raises(ValueError, match="exactly one"):
            Subscription(bus, "p1", None, queue=None, callback=None)

    @pytest.mark.asyncio
    async def test_get_waits_for_event(self) -> None:
        """get() resolves once an event is published."""
        bus = EventBus()
        sub = bus.subscribe(project_id="p1")

        async def publish_later() -> None:
            await asyncio.sleep(0.01)
            bus.publish("p1", "job.completed", {"id": "a"})

        task = asyncio.create_task(publish_later())
        event = await asyncio.wait_for(sub.get(), timeout=5)
        await task

        assert event.name == "job.completed"
