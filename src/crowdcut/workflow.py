"""End-to-end workflow: Upload -> Processing -> Sync -> Quality -> Stitching.

Stages run sequentially. Sync, quality and stitching each run as a queue
job; standardization fans out across recordings inside the processing
stage. Any stage failure moves the project to ``error`` and stops the run
without undoing earlier stages.
"""

from __future__ import annotations

import asyncio
import logging
import time

from crowdcut.config import WorkflowOptions
from crowdcut.errors import (
    ProjectNotFoundError,
    StageError,
    ValidationError,
    WorkflowAlreadyRunningError,
    WorkflowCancelledError,
)
from crowdcut.jobs.events import NotificationChannel
from crowdcut.models.jobs import Job, JobOutcome, JobStatus, JobType
from crowdcut.models.schema import (
    ErrorLevel,
    Project,
    ProjectStatus,
    StageFlags,
    WorkflowProgress,
    WorkflowResult,
    WorkflowStage,
    WorkflowStatus,
)
from crowdcut.reporting import ErrorReporter
from crowdcut.services.processing import ProcessingService
from crowdcut.services.standardize import StandardizationService
from crowdcut.store.memory import ProjectStore, RecordingStore
from crowdcut.utils.logging import format_duration

logger = logging.getLogger(__name__)

CANCEL_MESSAGE = "Workflow cancelled by user"

# Progress range each stage reports into
STAGE_BANDS: dict[WorkflowStage, tuple[int, int]] = {
    WorkflowStage.PROCESSING: (10, 30),
    WorkflowStage.SYNC: (30, 50),
    WorkflowStage.QUALITY: (50, 70),
    WorkflowStage.STITCHING: (70, 90),
}

_JOB_STAGES = {
    JobType.SYNC: WorkflowStage.SYNC,
    JobType.QUALITY_ANALYSIS: WorkflowStage.QUALITY,
    JobType.STITCHING: WorkflowStage.STITCHING,
}


class WorkflowOrchestrator:
    """Drives one project at a time through the full pipeline."""

    def __init__(
        self,
        projects: ProjectStore,
        recordings: RecordingStore,
        processing: ProcessingService,
        standardizer: StandardizationService | None = None,
        notifier: NotificationChannel | None = None,
        reporter: ErrorReporter | None = None,
        options: WorkflowOptions | None = None,
        poll_interval: float = 0.5,
        job_timeout: float | None = None,
    ) -> None:
        self.projects = projects
        self.recordings = recordings
        self.processing = processing
        self.standardizer = standardizer
        self.notifier = notifier
        self.reporter = reporter or ErrorReporter(notifier)
        self.options = options or WorkflowOptions()
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout

        self._runs: dict[str, asyncio.Event] = {}
        self._cancelled: set[str] = set()
        self._last_progress: dict[str, WorkflowProgress] = {}

    @property
    def queue(self):
        return self.processing.queue

    def is_running(self, project_id: str) -> bool:
        return project_id in self._runs

    async def execute_complete_workflow(self, project_id: str) -> WorkflowResult:
        """Run every stage for a project.

        Stage failures are captured in the returned result rather than
        raised; the project is left in ``error`` with the stage flags showing
        how far it got.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ValidationError: If the project has no recordings.
            WorkflowAlreadyRunningError: If a run is already in progress.
        """
        self._require_project(project_id)
        recordings = self.recordings.find_by_project_id(project_id)
        if not recordings:
            raise ValidationError("No videos uploaded for this project")
        if project_id in self._runs:
            raise WorkflowAlreadyRunningError(f"Workflow already running for project {project_id}")

        self._runs[project_id] = asyncio.Event()
        self._cancelled.discard(project_id)
        flags = StageFlags(upload=True)
        result = WorkflowResult(success=False, project_id=project_id, stages_completed=flags)
        stage = WorkflowStage.UPLOAD
        start_time = time.perf_counter()

        try:
            self._emit(project_id, stage, 10, f"{len(recordings)} video(s) uploaded")

            stage = WorkflowStage.PROCESSING
            self._set_status(project_id, ProjectStatus.PROCESSING)
            self._emit(project_id, stage, 10, "Processing videos")
            await self._process(project_id)
            flags.processing = True
            self._emit(project_id, stage, 30, "Videos processed")
            self._check_cancelled(project_id)

            stage = WorkflowStage.SYNC
            if len(recordings) > 1:
                self._set_status(project_id, ProjectStatus.SYNCING)
                self._emit(project_id, stage, 30, "Synchronizing videos")
                job = self.processing.start_sync(project_id)
                outcome = await self._run_job(project_id, job, stage)
                result.sync_result = outcome.sync_result
                message = outcome.summary
            else:
                message = "Single video, synchronization skipped"
            flags.sync = True
            self._emit(project_id, stage, 50, message)
            self._check_cancelled(project_id)

            stage = WorkflowStage.QUALITY
            self._set_status(project_id, ProjectStatus.ANALYZING)
            self._emit(project_id, stage, 50, "Analyzing video quality")
            job = self.processing.start_quality_analysis(project_id)
            outcome = await self._run_job(project_id, job, stage)
            result.quality_metrics = outcome.metrics
            flags.quality = True
            self._emit(project_id, stage, 70, outcome.summary)
            self._check_cancelled(project_id)

            stage = WorkflowStage.STITCHING
            self._set_status(project_id, ProjectStatus.STITCHING)
            self._emit(project_id, stage, 70, "Stitching final video")
            job = self.processing.start_stitching(project_id)
            outcome = await self._run_job(project_id, job, stage)
            result.stitching_result = outcome.stitching_result
            result.final_video_path = outcome.stitching_result.output_path
            flags.stitching = True
            self._emit(project_id, stage, 90, outcome.summary)

            self.projects.update(
                project_id,
                status=ProjectStatus.COMPLETED,
                final_video_path=result.final_video_path,
            )
            self._emit(project_id, WorkflowStage.COMPLETE, 100, "Workflow completed successfully")
            result.success = True

            elapsed = time.perf_counter() - start_time
            logger.info(f"Workflow for project {project_id} completed in {format_duration(elapsed)}")

        except WorkflowCancelledError as e:
            result.error = str(e)
            logger.info(f"Workflow for project {project_id} cancelled during {stage.value}")

        except Exception as e:
            if project_id in self._cancelled:
                result.error = CANCEL_MESSAGE
            else:
                failed_stage = e.stage if isinstance(e, StageError) else stage.value
                message = str(e) or e.__class__.__name__
                result.error = message
                self._set_status(project_id, ProjectStatus.ERROR)
                self._emit(
                    project_id,
                    WorkflowStage.ERROR,
                    0,
                    f"Workflow failed during {failed_stage}",
                    error=message,
                )
                self.reporter.report(
                    message,
                    operation=f"workflow.{failed_stage}",
                    level=ErrorLevel.ERROR,
                    project_id=project_id,
                )

        finally:
            self._runs.pop(project_id).set()

        return result

    async def retry_workflow(self, project_id: str) -> WorkflowResult:
        """Cancel outstanding work and run the whole workflow again.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        self._require_project(project_id)
        running = self._runs.get(project_id)
        if running is not None:
            self._cancelled.add(project_id)
        self._cancel_jobs(project_id, "Cancelled for workflow retry")
        if running is not None:
            await running.wait()

        self._cancelled.discard(project_id)
        self._set_status(project_id, ProjectStatus.UPLOADING)
        logger.info(f"Retrying workflow for project {project_id}")
        return await self.execute_complete_workflow(project_id)

    def cancel_workflow(self, project_id: str) -> list[Job]:
        """Cancel a project's workflow and its in-flight jobs.

        Cooperative: a running external render is not killed and its output
        is discarded when it returns.

        Returns:
            The jobs that were cancelled.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        self._require_project(project_id)
        if project_id in self._runs:
            self._cancelled.add(project_id)
        cancelled = self._cancel_jobs(project_id, CANCEL_MESSAGE)
        self._set_status(project_id, ProjectStatus.CANCELLED)
        self._emit(project_id, WorkflowStage.ERROR, 0, CANCEL_MESSAGE, error=CANCEL_MESSAGE)
        return cancelled

    def get_workflow_status(self, project_id: str) -> WorkflowStatus:
        """Point-in-time status derived from jobs and the project record."""
        project = self._require_project(project_id)
        jobs = self.queue.get_project_jobs(project_id)

        running = next((j for j in jobs if j.status == JobStatus.PROCESSING), None)
        if running is not None:
            return WorkflowStatus(
                stage=_JOB_STAGES[running.type].value,
                progress=running.progress,
                message=f"{running.type.value} in progress",
            )

        if project_id in self._runs and project_id in self._last_progress:
            last = self._last_progress[project_id]
            return WorkflowStatus(stage=last.stage.value, progress=last.progress, message=last.message)

        if project.status == ProjectStatus.COMPLETED:
            return WorkflowStatus(stage=WorkflowStage.COMPLETE.value, progress=100, message="Workflow completed")
        if project.status == ProjectStatus.CANCELLED:
            return WorkflowStatus(
                stage=WorkflowStage.ERROR.value, progress=0, message=CANCEL_MESSAGE, error=CANCEL_MESSAGE
            )
        if project.status == ProjectStatus.ERROR:
            failed = next((j for j in reversed(jobs) if j.status == JobStatus.FAILED), None)
            last = self._last_progress.get(project_id)
            error = failed.error if failed else (last.error if last else None)
            return WorkflowStatus(
                stage=WorkflowStage.ERROR.value, progress=0, message="Processing failed", error=error
            )
        if project.status == ProjectStatus.UPLOADING:
            return WorkflowStatus(stage=WorkflowStage.UPLOAD.value, progress=0, message="Waiting to start")
        return WorkflowStatus(stage=project.status.value, progress=0, message="Processing")

    # ------------------------------------------------------------------

    async def _process(self, project_id: str) -> None:
        if not self.options.standardize or self.standardizer is None:
            return
        low, high = STAGE_BANDS[WorkflowStage.PROCESSING]
        report = await self.standardizer.standardize_project(
            project_id,
            progress=lambda p: self._emit(
                project_id,
                WorkflowStage.PROCESSING,
                round(low + (high - low) * p / 100),
                "Standardizing videos",
            ),
        )
        if not report.ok:
            details = "; ".join(f"{rid}: {err}" for rid, err in report.failed.items())
            raise StageError(
                WorkflowStage.PROCESSING.value,
                f"Failed to process {len(report.failed)} video(s): {details}",
            )

    async def _run_job(self, project_id: str, job: Job, stage: WorkflowStage) -> JobOutcome:
        """Wait for a stage job, relaying its progress into the stage band."""
        low, high = STAGE_BANDS[stage]
        last = -1
        deadline = None if self.job_timeout is None else time.monotonic() + self.job_timeout

        while True:
            try:
                await self.queue.wait_for(job.id, timeout=self.poll_interval)
                break
            except asyncio.TimeoutError:
                if deadline is not None and time.monotonic() > deadline:
                    raise StageError(stage.value, f"{stage.value} timed out")
                if job.status == JobStatus.PROCESSING and job.progress != last:
                    last = job.progress
                    self._emit(
                        project_id,
                        stage,
                        round(low + (high - low) * job.progress / 100),
                        f"{stage.value.capitalize()} {job.progress}%",
                    )

        if job.status == JobStatus.COMPLETED and job.result is not None:
            return job.result
        if job.status == JobStatus.CANCELLED or project_id in self._cancelled:
            raise WorkflowCancelledError(CANCEL_MESSAGE)
        raise StageError(stage.value, f"{stage.value.capitalize()} failed: {job.error}")

    def _cancel_jobs(self, project_id: str, reason: str) -> list[Job]:
        cancelled = []
        for job in self.queue.get_project_jobs(project_id):
            if job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                cancelled.append(self.queue.mark_cancelled(job.id, reason))
        return cancelled

    def _check_cancelled(self, project_id: str) -> None:
        if project_id in self._cancelled:
            raise WorkflowCancelledError(CANCEL_MESSAGE)

    def _require_project(self, project_id: str) -> Project:
        project = self.projects.find_by_id(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        return project

    def _set_status(self, project_id: str, status: ProjectStatus) -> None:
        self.projects.update(project_id, status=status)

    def _emit(
        self,
        project_id: str,
        stage: WorkflowStage,
        progress: int,
        message: str,
        error: str | None = None,
    ) -> None:
        event = WorkflowProgress(stage=stage, progress=progress, message=message, error=error)
        self._last_progress[project_id] = event
        logger.info(f"[{project_id}] {stage.value} {progress}%: {message}")
        if self.notifier is not None:
            self.notifier.publish(project_id, "workflow.progress", event.to_wire())
