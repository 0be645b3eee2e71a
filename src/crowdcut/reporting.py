"""Bounded in-memory error reporting.

Every report is logged at its level and published to the project's
subscribers as an ``error`` event.
"""

from __future__ import annotations

import logging
import threading
from collections import deque

from crowdcut.jobs.events import NotificationChannel
from crowdcut.models.schema import ErrorContext, ErrorLevel, ErrorReport

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    ErrorLevel.INFO: logging.INFO,
    ErrorLevel.WARNING: logging.WARNING,
    ErrorLevel.ERROR: logging.ERROR,
    ErrorLevel.CRITICAL: logging.CRITICAL,
}


class ErrorReporter:
    """Keeps the most recent error reports, oldest dropped first."""

    def __init__(self, notifier: NotificationChannel | None = None, max_reports: int = 1000) -> None:
        self.notifier = notifier
        self._lock = threading.Lock()
        self._reports: deque[ErrorReport] = deque(maxlen=max_reports)

    def report(
        self,
        message: str,
        operation: str,
        level: ErrorLevel = ErrorLevel.ERROR,
        project_id: str | None = None,
        recording_id: str | None = None,
        job_id: str | None = None,
    ) -> ErrorReport:
        entry = ErrorReport(
            level=level,
            message=message,
            context=ErrorContext(
                operation=operation,
                project_id=project_id,
                recording_id=recording_id,
                job_id=job_id,
            ),
        )
        with self._lock:
            self._reports.append(entry)

        logger.log(_LOG_LEVELS[level], f"[{operation}] {message}")
        if self.notifier is not None and project_id is not None:
            self.notifier.publish(project_id, "error", entry.to_wire())
        return entry

    def get_reports(
        self, project_id: str | None = None, unresolved_only: bool = False
    ) -> list[ErrorReport]:
        with self._lock:
            reports = list(self._reports)
        return [
            r for r in reports
            if (project_id is None or r.context.project_id == project_id)
            and not (unresolved_only and r.resolved)
        ]

    def resolve_error(self, report_id: str) -> bool:
        """Mark a report resolved. Returns False if it is unknown."""
        with self._lock:
            for report in self._reports:
                if report.id == report_id:
                    report.resolved = True
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._reports.clear()
