"""In-memory event bus for job lifecycle and workflow progress.

Publishing never blocks. Each queue subscriber owns a bounded
``asyncio.Queue`` that drops its oldest event when full, so a slow or
abandoned consumer cannot stall job execution.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

logger = logging.getLogger(__name__)

EventCallback = Callable[["Event"], None]


@dataclass(frozen=True)
class Event:
    """A published notification."""

    project_id: str
    name: str
    payload: dict[str, Any]
    timestamp: float = field(default_factory=time.time)


class NotificationChannel(Protocol):
    """Fire-and-forget publisher used by the core."""

    def publish(self, project_id: str, event_name: str, payload: dict[str, Any]) -> None: ...


class Subscription:
    """Handle returned by ``EventBus.subscribe``.

    Queue subscriptions are read with ``get``/``get_nowait``/``drain``.
    Callback subscriptions have no queue.
    """

    def __init__(
        self,
        bus: EventBus,
        project_id: str | None,
        event_names: frozenset[str] | None,
        queue: asyncio.Queue[Event] | None,
        callback: EventCallback | None,
    ) -> None:
        if (queue is None) == (callback is None):
            raise ValueError("A subscription needs exactly one of queue or callback")
        self._bus = bus
        self.project_id = project_id
        self.event_names = event_names
        self.queue = queue
        self.callback = callback
        self.dropped = 0
        self.active = True

    def matches(self, event: Event) -> bool:
        if self.project_id is not None and event.project_id != self.project_id:
            return False
        return self.event_names is None or event.name in self.event_names

    def deliver(self, event: Event) -> None:
        if self.callback is not None:
            try:
                self.callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {event.name}")
            return

        if self.queue is None:
            raise RuntimeError("Subscription has neither a queue nor a callback")
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> Event:
        if self.queue is None:
            raise RuntimeError("Callback subscriptions have no queue")
        return await self.queue.get()

    def get_nowait(self) -> Event:
        if self.queue is None:
            raise RuntimeError("Callback subscriptions have no queue")
        return self.queue.get_nowait()

    def drain(self) -> list[Event]:
        """Return every queued event without waiting."""
        events: list[Event] = []
        if self.queue is None:
            return events
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def unsubscribe(self) -> None:
        self._bus.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.unsubscribe()


class EventBus:
    """Explicit publish/subscribe hub keyed by project."""

    def __init__(self, max_queue_size: int = 64) -> None:
        self.max_queue_size = max_queue_size
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        project_id: str | None = None,
        event_names: Iterable[str] | None = None,
        callback: EventCallback | None = None,
        maxsize: int | None = None,
    ) -> Subscription:
        """Subscribe to events.

        Args:
            project_id: Only receive events for this project (None for all).
            event_names: Only receive these event names (None for all).
            callback: Invoke inline instead of queueing. Exceptions are logged.
            maxsize: Queue bound, defaults to the bus setting.

        Returns:
            Subscription handle; call ``unsubscribe()`` when done.
        """
        queue: asyncio.Queue[Event] | None = None
        if callback is None:
            queue = asyncio.Queue(maxsize=maxsize or self.max_queue_size)
        sub = Subscription(
            bus=self,
            project_id=project_id,
            event_names=frozenset(event_names) if event_names is not None else None,
            queue=queue,
            callback=callback,
        )
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def publish(self, project_id: str, event_name: str, payload: dict[str, Any]) -> None:
        event = Event(project_id=project_id, name=event_name, payload=payload)
        for sub in list(self._subscriptions):
            if sub.active and sub.matches(event):
                sub.deliver(event)

    def subscriber_count(self, project_id: str | None = None) -> int:
        if project_id is None:
            return len(self._subscriptions)
        return sum(
            1 for s in self._subscriptions if s.project_id in (None, project_id)
        )
