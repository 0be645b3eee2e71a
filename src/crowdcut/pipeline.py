"""Pipeline container wiring stores, queue, services and the orchestrator."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from crowdcut.analysis.angles import AngleClassifier
from crowdcut.analysis.features import AudioQualityAnalyzer, FeatureExtractor
from crowdcut.analysis.frames import FrameAnalyzer
from crowdcut.config import PipelineConfig
from crowdcut.errors import ProjectNotFoundError, ValidationError
from crowdcut.jobs.events import EventBus
from crowdcut.jobs.queue import JobQueue
from crowdcut.media.engine import FFmpegEngine, MediaEngine
from crowdcut.models.schema import Project, Recording, WorkflowResult
from crowdcut.reporting import ErrorReporter
from crowdcut.services.cleanup import CleanupService
from crowdcut.services.processing import ProcessingService
from crowdcut.services.quality import VideoQualityService
from crowdcut.services.standardize import StandardizationService
from crowdcut.services.stitching import VideoStitchingService
from crowdcut.services.sync import SynchronizationService
from crowdcut.store.memory import InMemoryProjectStore, InMemoryRecordingStore
from crowdcut.utils.logging import get_logger
from crowdcut.workflow import WorkflowOrchestrator

logger = get_logger(__name__)

SUPPORTED_VIDEO_FORMATS = {".mp4", ".mov", ".avi", ".mkv", ".webm"}


class Pipeline:
    """CrowdCut processing pipeline.

    Merges several recordings of the same event into one edited video.

    Example:
        >>> async with crowdcut.Pipeline() as pipeline:
        ...     project = pipeline.create_project("concert")
        ...     pipeline.add_recording(project.id, "phone_a.mp4")
        ...     pipeline.add_recording(project.id, "phone_b.mp4")
        ...     result = await pipeline.run(project.id)
    """

    def __init__(
        self,
        config: PipelineConfig | dict[str, Any] | None = None,
        engine: MediaEngine | None = None,
        frame_analyzer: FrameAnalyzer | None = None,
        angle_classifier: AngleClassifier | None = None,
        feature_extractor: FeatureExtractor | None = None,
        audio_analyzer: AudioQualityAnalyzer | None = None,
    ) -> None:
        """Initialize a pipeline.

        Args:
            config: PipelineConfig instance or dict of its fields.
            engine: Media engine. Defaults to ffmpeg/ffprobe from the config.
            frame_analyzer: Overrides the pixel-statistics quality analyzer.
            angle_classifier: Overrides the edge-density angle classifier.
            feature_extractor: Overrides the histogram features used for visual sync.
            audio_analyzer: Scores audio quality. Without one a baseline is used.
        """
        if config is None:
            self.config = PipelineConfig()
        elif isinstance(config, dict):
            self.config = PipelineConfig(**config)
        else:
            self.config = config

        self.work_dir = self.config.get_work_dir()
        self.engine = engine or FFmpegEngine(
            ffmpeg=self.config.get_ffmpeg(),
            ffprobe=self.config.get_ffprobe(),
            render_timeout=self.config.media_timeout,
        )
        parallel = self.config.workflow.max_parallel_media_tasks

        self.events = EventBus()
        self.projects = InMemoryProjectStore()
        self.recordings = InMemoryRecordingStore()
        self.queue = JobQueue(notifier=self.events, tick_interval=self.config.queue.tick_interval)
        self.reporter = ErrorReporter(self.events)

        self.sync = SynchronizationService(
            self.recordings,
            self.engine,
            self.work_dir,
            self.config.sync,
            feature_extractor=feature_extractor,
        )
        self.quality = VideoQualityService(
            self.recordings,
            self.engine,
            self.work_dir,
            self.config.quality,
            analyzer=frame_analyzer,
            audio_analyzer=audio_analyzer,
            max_parallel=parallel,
            audio_sample_rate=self.config.sync.sample_rate,
        )
        self.stitching = VideoStitchingService(
            self.recordings,
            self.engine,
            self.work_dir,
            self.config.stitching,
            angle_classifier=angle_classifier,
            projects=self.projects,
            max_parallel=parallel,
        )
        self.standardizer = StandardizationService(
            self.recordings, self.engine, self.work_dir, self.config.workflow
        )
        self.processing = ProcessingService(
            self.queue,
            self.projects,
            self.recordings,
            self.sync,
            self.quality,
            self.stitching,
        )
        self.workflow = WorkflowOrchestrator(
            self.projects,
            self.recordings,
            self.processing,
            standardizer=self.standardizer,
            notifier=self.events,
            reporter=self.reporter,
            options=self.config.workflow,
        )
        self.cleanup = CleanupService(self.queue, self.work_dir, self.config.cleanup)
        logger.info(f"CrowdCut pipeline initialized (work_dir={self.work_dir})")

    async def start(self) -> None:
        """Sweep stale scratch files and start the job queue."""
        self.cleanup.clean_temp_files(self.config.cleanup.temp_file_max_age_hours)
        await self.queue.start()

    async def stop(self) -> None:
        await self.queue.stop()

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    def create_project(self, name: str = "") -> Project:
        return self.projects.add(Project(name=name))

    def add_recording(self, project_id: str, path: str | Path) -> Recording:
        """Probe a clip and attach it to a project.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ValidationError: If the file is missing, unsupported or has no video.
            MediaEngineError: If probing fails.
        """
        if self.projects.find_by_id(project_id) is None:
            raise ProjectNotFoundError(f"Project not found: {project_id}")

        source = Path(path)
        if not source.exists():
            raise ValidationError(f"File not found: {source}")
        suffix = source.suffix.lower()
        if suffix not in SUPPORTED_VIDEO_FORMATS:
            raise ValidationError(
                f"Unsupported format: {suffix}. "
                f"Supported formats: {', '.join(sorted(SUPPORTED_VIDEO_FORMATS))}"
            )

        probe = self.engine.probe(source)
        if not probe.has_video:
            raise ValidationError(f"No video stream found in {source.name}")

        recording = self.recordings.add(
            Recording(
                project_id=project_id,
                file_path=str(source),
                duration=probe.duration,
                has_audio=probe.has_audio,
            )
        )
        logger.info(
            f"Added recording {recording.id} ({source.name}, {probe.duration:.1f}s) "
            f"to project {project_id}"
        )
        return recording

    async def run(self, project_id: str) -> WorkflowResult:
        """Run the full workflow, starting the queue if it is not running."""
        if not self.queue.is_running:
            await self.start()
        return await self.workflow.execute_complete_workflow(project_id)
