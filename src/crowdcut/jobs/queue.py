"""Single-flight job scheduler.

One ``JobQueue`` instance is constructed at application start and handed to
every service that enqueues work. A periodic tick checks a busy flag and, if
idle, launches the oldest pending job. At most one job executes at a time,
system-wide.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable

from crowdcut.errors import InvalidJobStateError, JobNotFoundError
from crowdcut.jobs.events import NotificationChannel
from crowdcut.models.jobs import Job, JobOutcome, JobStatus, JobType, QueueStats
from crowdcut.models.schema import utc_now

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[JobOutcome]]

CANCELLED_BY_USER = "Job cancelled by user"


class JobQueue:
    """FIFO, single-flight executor for typed long-running jobs."""

    def __init__(
        self,
        notifier: NotificationChannel | None = None,
        tick_interval: float = 1.0,
    ) -> None:
        self.notifier = notifier
        self.tick_interval = tick_interval

        self._jobs: dict[str, Job] = {}
        self._pending: deque[str] = deque()
        self._handlers: dict[JobType, JobHandler] = {}
        self._done: dict[str, asyncio.Event] = {}

        self._busy = False
        self._current: asyncio.Task | None = None
        self._current_job: Job | None = None
        self._ticker: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._stopping = False

    # ------------------------------------------------------------------
    # Registration and enqueueing
    # ------------------------------------------------------------------

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        """Associate a job type with the coroutine that executes it."""
        if job_type in self._handlers:
            logger.warning(f"Replacing handler for job type: {job_type.value}")
        self._handlers[job_type] = handler

    def add_job(
        self,
        project_id: str,
        job_type: JobType,
        priority: int = 0,
        options: dict[str, Any] | None = None,
        retry_of: str | None = None,
    ) -> Job:
        """Create a pending job. No deduplication is performed."""
        job = Job(
            project_id=project_id,
            type=job_type,
            priority=priority,
            options=options,
            retry_of=retry_of,
        )
        self._jobs[job.id] = job
        self._pending.append(job.id)
        logger.info(f"Job {job.id} added: {job_type.value} for project {project_id}")
        self._publish(job, "added")
        self._wake.set()
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def require_job(self, job_id: str) -> Job:
        """Get a job or raise JobNotFoundError."""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def get_project_jobs(self, project_id: str) -> list[Job]:
        """All jobs for a project, oldest first."""
        return [job for job in self._jobs.values() if job.project_id == project_id]

    def get_queue_stats(self) -> QueueStats:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1
        return QueueStats(
            pending=counts[JobStatus.PENDING],
            processing=counts[JobStatus.PROCESSING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
        )

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_progress(self, job_id: str, percent: float) -> Job:
        """Record handler progress.

        A no-op unless the job is processing. Progress never decreases.
        """
        job = self.require_job(job_id)
        if job.status != JobStatus.PROCESSING:
            logger.debug(f"Ignoring progress for {job.status.value} job {job_id}")
            return job

        value = int(min(100, max(0, percent)))
        if value <= job.progress:
            return job
        job.progress = value
        self._publish(job, "progress")
        return job

    def cancel_job(self, job_id: str) -> Job:
        """Cancel a pending or processing job.

        The job becomes failed with a cancellation message. A running handler
        is not interrupted; whatever it returns is discarded.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobStateError: If the job already finished.
        """
        job = self.require_job(job_id)
        if job.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
            raise InvalidJobStateError(
                f"Cannot cancel job {job_id} in status {job.status.value}"
            )

        self._discard_pending(job_id)
        job.status = JobStatus.FAILED
        job.error = CANCELLED_BY_USER
        job.completed_at = utc_now()
        logger.info(f"Job {job_id} cancelled")
        self._publish(job, "cancelled")
        self._signal(job_id)
        return job

    def mark_cancelled(self, job_id: str, reason: str = "Cancelled with workflow") -> Job:
        """Move a non-terminal job to the cancelled state."""
        job = self.require_job(job_id)
        if job.status.is_terminal:
            return job

        self._discard_pending(job_id)
        job.status = JobStatus.CANCELLED
        job.error = reason
        job.completed_at = utc_now()
        logger.info(f"Job {job_id} marked cancelled: {reason}")
        self._publish(job, "cancelled")
        self._signal(job_id)
        return job

    def retry_job(self, job_id: str) -> Job:
        """Spawn a new pending job that repeats a failed one.

        The failed job is left untouched so its error stays queryable.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobStateError: If the job is not failed.
        """
        job = self.require_job(job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidJobStateError(
                f"Only failed jobs can be retried; job {job_id} is {job.status.value}"
            )

        retry = self.add_job(
            job.project_id,
            job.type,
            priority=job.priority,
            options=job.options,
            retry_of=job.id,
        )
        logger.info(f"Job {job_id} retried as {retry.id}")
        self._publish(retry, "retried")
        return retry

    def prune_jobs(self, older_than: datetime, dry_run: bool = False) -> list[str]:
        """Forget finished jobs that completed before ``older_than``.

        Returns:
            Ids of the pruned jobs (or of the jobs that would be pruned).
        """
        stale = [
            job.id
            for job in self._jobs.values()
            if job.status.is_terminal
            and job.completed_at is not None
            and job.completed_at < older_than
        ]
        if not dry_run:
            for job_id in stale:
                del self._jobs[job_id]
                self._done.pop(job_id, None)
        if stale:
            logger.info(f"Pruned {len(stale)} finished job(s)" + (" (dry run)" if dry_run else ""))
        return stale

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the scheduler tick."""
        if self.is_running:
            return
        self._stopping = False
        self._ticker = asyncio.create_task(self._tick_loop())
        logger.info(f"JobQueue started (tick={self.tick_interval}s)")

    async def stop(self) -> None:
        """Stop the scheduler tick and interrupt the running job, if any."""
        self._stopping = True
        self._wake.set()
        tasks = [t for t in (self._ticker, self._current) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        job = self._current_job
        if job is not None and job.status == JobStatus.PROCESSING:
            # Cancelled before its task got to run.
            self._fail(job, "Job interrupted by queue shutdown")
            self._signal(job.id)
        self._busy = False
        self._ticker = None
        self._current = None
        self._current_job = None
        logger.info("JobQueue stopped")

    async def run_next(self) -> Job | None:
        """Run the oldest pending job inline, if the queue is idle."""
        if self._busy:
            return None
        job = self._pop_next()
        if job is None:
            return None
        self._begin(job)
        await self._execute(job)
        return job

    async def wait_for(self, job_id: str, timeout: float | None = None) -> Job:
        """Wait until a job reaches a terminal state.

        Raises:
            JobNotFoundError: If the job does not exist.
            asyncio.TimeoutError: If the timeout elapses first.
        """
        job = self.require_job(job_id)
        if job.status.is_terminal:
            return job
        done = self._done.setdefault(job_id, asyncio.Event())
        await asyncio.wait_for(done.wait(), timeout)
        return job

    async def _tick_loop(self) -> None:
        while not self._stopping:
            self._tick()
            waiter = asyncio.ensure_future(self._wake.wait())
            try:
                await asyncio.wait({waiter}, timeout=self.tick_interval)
            finally:
                waiter.cancel()
            self._wake.clear()

    def _tick(self) -> None:
        if self._busy or self._stopping:
            return
        job = self._pop_next()
        if job is None:
            return
        self._begin(job)
        self._current = asyncio.create_task(self._execute(job))

    def _pop_next(self) -> Job | None:
        while self._pending:
            job = self._jobs[self._pending.popleft()]
            if job.status == JobStatus.PENDING:
                return job
        return None

    def _begin(self, job: Job) -> None:
        # Claimed jobs leave PENDING before the task is scheduled.
        self._busy = True
        self._current_job = job
        job.status = JobStatus.PROCESSING
        job.started_at = utc_now()
        job.progress = 0
        logger.info(f"Job {job.id} started: {job.type.value}")
        self._publish(job, "started")

    async def _execute(self, job: Job) -> None:
        start_time = time.perf_counter()
        try:
            if job.status != JobStatus.PROCESSING:
                logger.info(f"Skipping job {job.id} ({job.status.value}) before it ran")
                return

            handler = self._handlers.get(job.type)
            if handler is None:
                raise LookupError(f"No handler registered for job type: {job.type.value}")

            result = await handler(job)

            if job.status != JobStatus.PROCESSING:
                logger.info(f"Discarding result of job {job.id} ({job.status.value})")
                return

            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.result = result
            job.completed_at = utc_now()
            elapsed = time.perf_counter() - start_time
            logger.info(f"Job {job.id} completed in {elapsed:.2f}s")
            self._publish(job, "completed")

        except asyncio.CancelledError:
            if job.status == JobStatus.PROCESSING:
                self._fail(job, "Job interrupted by queue shutdown")
            raise
        except Exception as e:
            if job.status == JobStatus.PROCESSING:
                self._fail(job, str(e) or e.__class__.__name__)
            else:
                logger.info(f"Job {job.id} raised after {job.status.value}: {e}")
        finally:
            self._busy = False
            self._current = None
            self._current_job = None
            self._signal(job.id)
            self._wake.set()

    def _fail(self, job: Job, message: str) -> None:
        job.status = JobStatus.FAILED
        job.error = message
        job.completed_at = utc_now()
        logger.error(f"Job {job.id} failed: {message}")
        self._publish(job, "failed")

    def _discard_pending(self, job_id: str) -> None:
        try:
            self._pending.remove(job_id)
        except ValueError:
            pass

    def _signal(self, job_id: str) -> None:
        done = self._done.pop(job_id, None)
        if done is not None:
            done.set()

    def _publish(self, job: Job, event: str) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(job.project_id, f"job.{event}", job.to_wire())
