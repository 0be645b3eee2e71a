"""Storage protocols and in-memory implementations."""

from crowdcut.store.memory import (
    InMemoryProjectStore,
    InMemoryRecordingStore,
    ProjectStore,
    RecordingStore,
)

__all__ = [
    "InMemoryProjectStore",
    "InMemoryRecordingStore",
    "ProjectStore",
    "RecordingStore",
]
