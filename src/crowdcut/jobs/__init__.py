"""Job scheduling and event delivery."""

from crowdcut.jobs.events import Event, EventBus, NotificationChannel, Subscription
from crowdcut.jobs.queue import CANCELLED_BY_USER, JobHandler, JobQueue

__all__ = [
    "CANCELLED_BY_USER",
    "Event",
    "EventBus",
    "JobHandler",
    "JobQueue",
    "NotificationChannel",
    "Subscription",
]
