"""Project and recording stores.

The core only needs lookup and last-write-wins partial updates. The
in-memory implementations back the CLI and the tests; a database-backed
store only has to satisfy the same protocols.
"""

from __future__ import annotations

import threading
from typing import Any, Iterable, Protocol

from crowdcut.errors import ProjectNotFoundError, RecordingNotFoundError
from crowdcut.models.schema import Project, Recording


class ProjectStore(Protocol):
    def find_by_id(self, project_id: str) -> Project | None: ...

    def update(self, project_id: str, **fields: Any) -> Project: ...


class RecordingStore(Protocol):
    def find_by_id(self, recording_id: str) -> Recording | None: ...

    def find_by_project_id(self, project_id: str) -> list[Recording]: ...

    def update(self, recording_id: str, **fields: Any) -> Recording: ...


class InMemoryProjectStore:
    """Thread-safe dict-backed ProjectStore."""

    def __init__(self, projects: Iterable[Project] = ()) -> None:
        self._lock = threading.Lock()
        self._projects: dict[str, Project] = {p.id: p for p in projects}

    def add(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.id] = project
        return project

    def find_by_id(self, project_id: str) -> Project | None:
        with self._lock:
            return self._projects.get(project_id)

    def update(self, project_id: str, **fields: Any) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise ProjectNotFoundError(f"Project not found: {project_id}")
            updated = project.model_copy(update=fields)
            self._projects[project_id] = updated
            return updated


class InMemoryRecordingStore:
    """Thread-safe dict-backed RecordingStore.

    ``find_by_project_id`` returns recordings ordered by upload time, which
    makes the first one the synchronization reference.
    """

    def __init__(self, recordings: Iterable[Recording] = ()) -> None:
        self._lock = threading.Lock()
        self._recordings: dict[str, Recording] = {r.id: r for r in recordings}

    def add(self, recording: Recording) -> Recording:
        with self._lock:
            self._recordings[recording.id] = recording
        return recording

    def find_by_id(self, recording_id: str) -> Recording | None:
        with self._lock:
            return self._recordings.get(recording_id)

    def find_by_project_id(self, project_id: str) -> list[Recording]:
        with self._lock:
            matches = [r for r in self._recordings.values() if r.project_id == project_id]
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(matches, key=lambda r: r.uploaded_at)

    def update(self, recording_id: str, **fields: Any) -> Recording:
        with self._lock:
            recording = self._recordings.get(recording_id)
            if recording is None:
                raise RecordingNotFoundError(f"Recording not found: {recording_id}")
            updated = recording.model_copy(update=fields)
            self._recordings[recording_id] = updated
            return updated
