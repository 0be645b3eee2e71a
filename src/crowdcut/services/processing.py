"""Controller-facing operations and the job handlers behind them.

Each ``start_*`` call validates its preconditions synchronously, then
enqueues a job. The registered handlers run the matching service inside the
single-flight queue and return a typed outcome.
"""

from __future__ import annotations

import logging
from typing import Any

from crowdcut.config import QualityOptions, StitchingOptions
from crowdcut.errors import JobConflictError, ProjectNotFoundError, ValidationError
from crowdcut.jobs.queue import JobQueue
from crowdcut.models.jobs import (
    Job,
    JobStatus,
    JobType,
    QualityOutcome,
    QueueStats,
    StitchingOutcome,
    SyncOutcome,
)
from crowdcut.models.schema import Project, StitchingReadiness, SyncValidation
from crowdcut.services.quality import VideoQualityService
from crowdcut.services.stitching import VideoStitchingService
from crowdcut.services.sync import SynchronizationService, validate_sync_results
from crowdcut.store.memory import ProjectStore, RecordingStore

logger = logging.getLogger(__name__)


def _options_dict(options: Any) -> dict[str, Any] | None:
    if options is None:
        return None
    if isinstance(options, dict):
        return dict(options)
    return options.model_dump(mode="json")


class ProcessingService:
    """Enqueues sync, quality and stitching jobs and executes them."""

    def __init__(
        self,
        queue: JobQueue,
        projects: ProjectStore,
        recordings: RecordingStore,
        sync: SynchronizationService,
        quality: VideoQualityService,
        stitching: VideoStitchingService,
    ) -> None:
        self.queue = queue
        self.projects = projects
        self.recordings = recordings
        self.sync = sync
        self.quality = quality
        self.stitching = stitching
        self._sync_validation: dict[str, SyncValidation] = {}

        queue.register_handler(JobType.SYNC, self._handle_sync)
        queue.register_handler(JobType.QUALITY_ANALYSIS, self._handle_quality)
        queue.register_handler(JobType.STITCHING, self._handle_stitching)

    # ------------------------------------------------------------------
    # Controller operations
    # ------------------------------------------------------------------

    def start_sync(self, project_id: str) -> Job:
        """Enqueue synchronization.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ValidationError: If fewer than two recordings exist.
            JobConflictError: If a sync job is already pending or running.
        """
        self._require_project(project_id)
        if len(self.recordings.find_by_project_id(project_id)) < 2:
            raise ValidationError("At least 2 videos are required for synchronization")
        self._ensure_idle(project_id, JobType.SYNC)
        return self.queue.add_job(project_id, JobType.SYNC)

    def start_quality_analysis(
        self, project_id: str, options: QualityOptions | dict[str, Any] | None = None
    ) -> Job:
        """Enqueue quality analysis of every recording.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ValidationError: If the project has no recordings.
            JobConflictError: If a quality job is already pending or running.
        """
        self._require_project(project_id)
        if not self.recordings.find_by_project_id(project_id):
            raise ValidationError("At least 1 video is required for quality analysis")
        self._ensure_idle(project_id, JobType.QUALITY_ANALYSIS)
        return self.queue.add_job(
            project_id, JobType.QUALITY_ANALYSIS, options=_options_dict(options)
        )

    def start_stitching(
        self, project_id: str, options: StitchingOptions | dict[str, Any] | None = None
    ) -> Job:
        """Enqueue stitching once the project is ready.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ValidationError: If readiness requirements are missing.
            JobConflictError: If a stitching job is already pending or running.
        """
        readiness = self.check_stitching_readiness(project_id)
        if not readiness.ready:
            raise ValidationError(
                "Project is not ready for stitching: " + "; ".join(readiness.missing)
            )
        self._ensure_idle(project_id, JobType.STITCHING)
        return self.queue.add_job(project_id, JobType.STITCHING, options=_options_dict(options))

    def cancel_job(self, job_id: str) -> Job:
        return self.queue.cancel_job(job_id)

    def retry_job(self, job_id: str) -> Job:
        """Retry a failed job as a new job. See ``JobQueue.retry_job``."""
        failed = self.queue.require_job(job_id)
        if failed.status == JobStatus.FAILED:
            self._ensure_idle(failed.project_id, failed.type)
        return self.queue.retry_job(job_id)

    def get_job(self, job_id: str) -> Job:
        return self.queue.require_job(job_id)

    def get_project_jobs(self, project_id: str) -> list[Job]:
        return self.queue.get_project_jobs(project_id)

    def get_queue_stats(self) -> QueueStats:
        return self.queue.get_queue_stats()

    def check_stitching_readiness(self, project_id: str) -> StitchingReadiness:
        self._require_project(project_id)
        return self.stitching.check_stitching_readiness(
            project_id, self._sync_validation.get(project_id)
        )

    # ------------------------------------------------------------------
    # Job handlers
    # ------------------------------------------------------------------

    async def _handle_sync(self, job: Job) -> SyncOutcome:
        self.queue.update_progress(job.id, 10)
        result = await self.sync.synchronize(
            job.project_id,
            progress=lambda p: self.queue.update_progress(job.id, 10 + p * 0.7),
        )
        self.queue.update_progress(job.id, 90)

        validation = validate_sync_results(result)
        self._sync_validation[job.project_id] = validation

        summary = (
            f"Synchronized {len(result.aligned_videos)} videos using {result.method} "
            f"(confidence {result.confidence:.0f}%)"
        )
        if validation.issues:
            summary += ". Issues: " + "; ".join(validation.issues)
        return SyncOutcome(summary=summary, sync_result=result, validation=validation)

    async def _handle_quality(self, job: Job) -> QualityOutcome:
        options = self.quality.options
        if job.options:
            options = QualityOptions.model_validate({**options.model_dump(), **job.options})

        self.queue.update_progress(job.id, 5)
        report = await self.quality.assess_project(
            job.project_id,
            options,
            progress=lambda p: self.queue.update_progress(job.id, 5 + p * 0.9),
        )
        ranking = report.ranking
        best = ranking[0]
        logger.info(
            "Quality ranking: "
            + ", ".join(f"{m.recording_id}={m.scores.overall}" for m in ranking)
        )

        summary = (
            f"Analyzed {len(report.metrics)} videos; best {best.recording_id} "
            f"scored {best.scores.overall}"
        )
        if report.failed:
            summary += f" ({len(report.failed)} fell back to a neutral score)"
        return QualityOutcome(
            summary=summary,
            metrics=report.metrics,
            failed_recordings=list(report.failed),
            ranking=[m.recording_id for m in ranking],
        )

    async def _handle_stitching(self, job: Job) -> StitchingOutcome:
        options = self.stitching.options
        if job.options:
            options = StitchingOptions.model_validate({**options.model_dump(), **job.options})

        result = await self.stitching.stitch(
            job.project_id,
            options,
            progress=lambda p: self.queue.update_progress(job.id, p * 0.95),
        )
        metrics = result.quality_metrics
        summary = (
            f"Stitched {len(result.timeline.segments)} segments into "
            f"{result.duration:.1f}s (avg quality {metrics.average_quality}, "
            f"{metrics.transition_count} transitions)"
        )
        return StitchingOutcome(summary=summary, stitching_result=result)

    # ------------------------------------------------------------------

    def _require_project(self, project_id: str) -> Project:
        project = self.projects.find_by_id(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        return project

    def _ensure_idle(self, project_id: str, job_type: JobType) -> None:
        for job in self.queue.get_project_jobs(project_id):
            if job.type == job_type and job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                raise JobConflictError(
                    f"A {job_type.value} job is already {job.status.value} "
                    f"for project {project_id}"
                )
