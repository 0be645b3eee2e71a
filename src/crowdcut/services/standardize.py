"""Standardization: transcode uploads to a common resolution and frame rate."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from crowdcut.config import WorkflowOptions
from crowdcut.errors import ValidationError
from crowdcut.media.engine import FilterGraph, MediaEngine, OutputSpec
from crowdcut.models.schema import Recording
from crowdcut.store.memory import RecordingStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


@dataclass
class StandardizationReport:
    """Outcome of standardizing every recording of a project."""

    processed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def standardize_graph(spec: OutputSpec, has_audio: bool, duration: float) -> FilterGraph:
    w, h = spec.width, spec.height
    layout = "stereo" if spec.audio_channels == 2 else "mono"
    video = (
        f"[0:v]scale={w}:{h}:force_original_aspect_ratio=decrease,"
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={spec.frame_rate}[outv]"
    )
    if has_audio:
        audio = (
            f"[0:a]aformat=sample_rates={spec.audio_sample_rate}:"
            f"channel_layouts={layout}[outa]"
        )
    else:
        audio = (
            f"anullsrc=channel_layout={layout}:sample_rate={spec.audio_sample_rate},"
            f"atrim=duration={duration:.3f}[outa]"
        )
    return FilterGraph(filter_complex=f"{video};{audio}")


class StandardizationService:
    """Writes a standardized copy of each recording and records its path."""

    def __init__(
        self,
        recordings: RecordingStore,
        engine: MediaEngine,
        work_dir: Path,
        options: WorkflowOptions | None = None,
    ) -> None:
        self.recordings = recordings
        self.engine = engine
        self.work_dir = Path(work_dir)
        self.options = options or WorkflowOptions()

    async def standardize(self, recording: Recording) -> Recording:
        """Transcode one recording.

        Raises:
            MediaEngineError: If the transcode fails.
        """
        spec = OutputSpec.from_workflow(self.options)
        output_path = self.work_dir / "processed" / f"standardized_{recording.id}.mp4"
        graph = standardize_graph(spec, recording.has_audio, recording.duration)

        start_time = time.perf_counter()
        await asyncio.to_thread(
            self.engine.render, [Path(recording.file_path)], graph, spec, output_path
        )
        elapsed = time.perf_counter() - start_time
        logger.info(f"Standardized recording {recording.id} in {elapsed:.2f}s")
        return self.recordings.update(recording.id, processed_path=str(output_path))

    async def standardize_project(
        self, project_id: str, progress: ProgressCallback | None = None
    ) -> StandardizationReport:
        """Standardize every recording concurrently, collecting failures.

        Raises:
            ValidationError: If the project has no recordings.
        """
        recordings = self.recordings.find_by_project_id(project_id)
        if not recordings:
            raise ValidationError("No videos to process")

        semaphore = asyncio.Semaphore(self.options.max_parallel_media_tasks)
        done = 0

        async def run(recording: Recording) -> Recording:
            nonlocal done
            async with semaphore:
                try:
                    return await self.standardize(recording)
                finally:
                    done += 1
                    if progress is not None:
                        progress(100.0 * done / len(recordings))

        results = await asyncio.gather(*(run(r) for r in recordings), return_exceptions=True)

        report = StandardizationReport()
        for recording, result in zip(recordings, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Standardization failed for recording {recording.id}: {result}")
                report.failed[recording.id] = str(result)
            else:
                report.processed.append(recording.id)
        return report
