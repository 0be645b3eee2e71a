"""End-to-end tests for the workflow orchestrator over a fake media engine."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from crowdcut.analysis.angles import FixedAngleClassifier
from crowdcut.analysis.frames import ConstantFrameAnalyzer
from crowdcut.config import PipelineConfig, QueueOptions, SyncOptions
from crowdcut.errors import (
    ProjectNotFoundError,
    ValidationError,
    WorkflowAlreadyRunningError,
)
from crowdcut.jobs.events import Event
from crowdcut.models.jobs import JobStatus
from crowdcut.models.schema import ProjectStatus, Recording, WorkflowResult
from crowdcut.pipeline import Pipeline
from crowdcut.workflow import CANCEL_MESSAGE

from conftest import FakeClip, FakeEngine

SCENARIO_TIMEOUT = 30.0


@pytest.fixture
def pipeline(engine: FakeEngine, temp_dir: Path) -> Pipeline:
    config = PipelineConfig(
        work_dir=str(temp_dir / "work"),
        queue=QueueOptions(tick_interval=0.01),
        sync=SyncOptions(sample_rate=1000, sample_stride=1),
    )
    pipe = Pipeline(
        config,
        engine=engine,
        frame_analyzer=ConstantFrameAnalyzer(),
        angle_classifier=FixedAngleClassifier({}),
    )
    pipe.workflow.poll_interval = 0.01
    return pipe


def _upload(
    pipeline: Pipeline,
    engine: FakeEngine,
    temp_dir: Path,
    project_id: str,
    name: str,
    start: float = 0.0,
    duration: float = 20.0,
) -> Recording:
    path = temp_dir / "uploads" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"fake video")
    engine.clips[name] = FakeClip(start=start, duration=duration)
    return pipeline.add_recording(project_id, path)


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


async def _run_and_stop(pipeline: Pipeline, project_id: str) -> WorkflowResult:
    """Run one workflow and shut the pipeline down, failing rather than hanging."""

    async def scenario() -> WorkflowResult:
        async with pipeline:
            return await pipeline.run(project_id)

    return await asyncio.wait_for(scenario(), SCENARIO_TIMEOUT)


class TestAddRecording:
    """Tests for Pipeline.add_recording validation."""

    def test_probe_fills_recording(self, pipeline, engine, temp_dir: Path) -> None:
        project = pipeline.create_project("gig")

        recording = _upload(pipeline, engine, temp_dir, project.id, "a.mp4", duration=12.5)

        assert recording.duration == 12.5
        assert recording.has_audio
        assert pipeline.recordings.find_by_project_id(project.id) == [recording]

    def test_rejects_missing_file(self, pipeline, temp_dir: Path) -> None:
        project = pipeline.create_project()

        with pytest.raises(ValidationError, match="File not found"):
            pipeline.add_recording(project.id, temp_dir / "nope.mp4")

    def test_rejects_unsupported_format(self, pipeline, temp_dir: Path) -> None:
        project = pipeline.create_project()
        path = temp_dir / "notes.txt"
        path.write_text("not a video")

        with pytest.raises(ValidationError, match="Unsupported format"):
            pipeline.add_recording(project.id, path)

    def test_rejects_unknown_project(self, pipeline, engine, temp_dir: Path) -> None:
        with pytest.raises(ProjectNotFoundError):
            _upload(pipeline, engine, temp_dir, "missing", "a.mp4")


class TestWorkflow:
    """Tests for WorkflowOrchestrator."""

    @pytest.mark.asyncio
    async def test_complete_workflow(self, pipeline, engine, temp_dir: Path) -> None:
        """Two overlapping clips produce a stitched video and ordered progress."""
        project = pipeline.create_project("concert")
        a = _upload(pipeline, engine, temp_dir, project.id, "a.mp4", start=0.0, duration=20.0)
        b = _upload(pipeline, engine, temp_dir, project.id, "b.mp4", start=2.0, duration=18.0)
        events: list[Event] = []
        pipeline.events.subscribe(
            project_id=project.id, event_names=["workflow.progress"], callback=events.append
        )

        result = await _run_and_stop(pipeline, project.id)

        assert result.success, result.error
        flags = result.stages_completed
        assert (flags.upload, flags.processing, flags.sync, flags.quality, flags.stitching) == (
            True,
            True,
            True,
            True,
            True,
        )
        assert Path(result.final_video_path).exists()
        assert result.sync_result.method == "audio"
        assert {m.recording_id for m in result.quality_metrics} == {a.id, b.id}
        assert pipeline.recordings.find_by_id(b.id).sync_offset == pytest.approx(2.0)

        stored = pipeline.projects.find_by_id(project.id)
        assert stored.status == ProjectStatus.COMPLETED
        assert stored.final_video_path == result.final_video_path

        progress = [e.payload["progress"] for e in events]
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert events[-1].payload["stage"] == "complete"

        status = pipeline.workflow.get_workflow_status(project.id)
        assert (status.stage, status.progress) == ("complete", 100)

    @pytest.mark.asyncio
    async def test_single_video_skips_sync(self, pipeline, engine, temp_dir: Path) -> None:
        project = pipeline.create_project()
        _upload(pipeline, engine, temp_dir, project.id, "solo.mp4", duration=15.0)
        messages: list[str] = []
        pipeline.events.subscribe(
            event_names=["workflow.progress"], callback=lambda e: messages.append(e.payload["message"])
        )

        result = await _run_and_stop(pipeline, project.id)

        assert result.success, result.error
        assert result.sync_result is None
        assert result.stages_completed.sync
        assert "Single video, synchronization skipped" in messages
        assert result.stitching_result.duration == 15.0
        assert len(result.stitching_result.timeline.segments) == 1

    @pytest.mark.asyncio
    async def test_processing_can_be_disabled(self, pipeline, engine, temp_dir: Path) -> None:
        """Without standardization later stages read the uploads directly."""
        pipeline.workflow.options = pipeline.workflow.options.model_copy(update={"standardize": False})
        project = pipeline.create_project()
        recording = _upload(pipeline, engine, temp_dir, project.id, "solo.mp4")

        result = await _run_and_stop(pipeline, project.id)

        assert result.success, result.error
        assert result.stages_completed.processing
        assert pipeline.recordings.find_by_id(recording.id).processed_path is None

    @pytest.mark.asyncio
    async def test_stage_failure_then_retry(self, pipeline, engine, temp_dir: Path) -> None:
        """A failed render leaves the project in error; retry recovers it."""
        project = pipeline.create_project()
        _upload(pipeline, engine, temp_dir, project.id, "a.mp4")
        _upload(pipeline, engine, temp_dir, project.id, "b.mp4", start=1.0, duration=19.0)
        engine.fail_render = "stitched"

        async def scenario() -> tuple[WorkflowResult, WorkflowResult]:
            async with pipeline:
                failed = await pipeline.run(project.id)
                status = pipeline.workflow.get_workflow_status(project.id)
                assert status.stage == "error"
                assert "Failed to render" in status.error
                stored = pipeline.projects.find_by_id(project.id)
                assert stored.status == ProjectStatus.ERROR
                assert stored.final_video_path is None

                engine.fail_render = None
                return failed, await pipeline.workflow.retry_workflow(project.id)

        failed, retried = await asyncio.wait_for(scenario(), SCENARIO_TIMEOUT)

        assert not failed.success
        assert "Failed to render stitched video" in failed.error
        flags = failed.stages_completed
        assert flags.quality and not flags.stitching
        assert failed.final_video_path is None

        reports = pipeline.reporter.get_reports(project_id=project.id)
        assert len(reports) == 1
        assert reports[0].context.operation == "workflow.stitching"

        assert retried.success, retried.error
        assert pipeline.projects.find_by_id(project.id).status == ProjectStatus.COMPLETED
        assert not pipeline.queue.is_running

    @pytest.mark.asyncio
    async def test_cancel_workflow(self, pipeline, engine, temp_dir: Path) -> None:
        """Cancelling mid-stage stops the run and leaves the project cancelled."""
        project = pipeline.create_project()
        _upload(pipeline, engine, temp_dir, project.id, "a.mp4")
        _upload(pipeline, engine, temp_dir, project.id, "b.mp4", start=1.0, duration=19.0)

        # The queue is never started, so the sync job stays pending.
        run = asyncio.create_task(pipeline.workflow.execute_complete_workflow(project.id))
        await _wait_until(lambda: pipeline.queue.get_project_jobs(project.id))

        cancelled = pipeline.workflow.cancel_workflow(project.id)
        result = await asyncio.wait_for(run, timeout=5)

        assert [job.status for job in cancelled] == [JobStatus.CANCELLED]
        assert not result.success
        assert result.error == CANCEL_MESSAGE
        assert not result.stages_completed.sync
        assert pipeline.projects.find_by_id(project.id).status == ProjectStatus.CANCELLED
        assert not pipeline.workflow.is_running(project.id)

        status = pipeline.workflow.get_workflow_status(project.id)
        assert status.stage == "error"
        assert status.error == CANCEL_MESSAGE

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self, pipeline, engine, temp_dir: Path) -> None:
        project = pipeline.create_project()
        _upload(pipeline, engine, temp_dir, project.id, "a.mp4")

        async def scenario() -> WorkflowResult:
            async with pipeline:
                first = asyncio.create_task(pipeline.workflow.execute_complete_workflow(project.id))
                await asyncio.sleep(0)

                with pytest.raises(WorkflowAlreadyRunningError):
                    await pipeline.workflow.execute_complete_workflow(project.id)

                return await first

        result = await asyncio.wait_for(scenario(), SCENARIO_TIMEOUT)

        assert result.success, result.error

    @pytest.mark.asyncio
    async def test_preconditions(self, pipeline) -> None:
        """Missing projects and empty projects fail before any state change."""
        with pytest.raises(ProjectNotFoundError):
            await pipeline.workflow.execute_complete_workflow("missing")

        project = pipeline.create_project()
        with pytest.raises(ValidationError, match="No videos uploaded"):
            await pipeline.workflow.execute_complete_workflow(project.id)
        assert pipeline.projects.find_by_id(project.id).status == ProjectStatus.UPLOADING

    def test_status_before_start(self, pipeline) -> None:
        project = pipeline.create_project()

        status = pipeline.workflow.get_workflow_status(project.id)

        assert (status.stage, status.progress, status.message) == ("upload", 0, "Waiting to start")
