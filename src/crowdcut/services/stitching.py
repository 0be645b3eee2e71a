"""Timeline construction and rendering of the final cut.

The output timeline covers ``[0, max(sync_offset + duration))`` and is cut
into fixed windows. Each window is sourced from one recording, preferring a
camera angle different from the previous window's, then higher quality.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from crowdcut.analysis.angles import AngleClassifier, EdgeDensityAngleClassifier, majority_angle
from crowdcut.analysis.frames import sample_frames
from crowdcut.config import StitchingOptions
from crowdcut.errors import FatalRenderError, MediaEngineError, ValidationError
from crowdcut.media.engine import FilterGraph, MediaEngine, OutputSpec
from crowdcut.models.schema import (
    CameraAngle,
    Recording,
    Segment,
    StitchingMetrics,
    StitchingReadiness,
    StitchingResult,
    SyncValidation,
    Timeline,
    TransitionType,
)
from crowdcut.store.memory import ProjectStore, RecordingStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

EPSILON = 1e-6


@dataclass
class Window:
    """A slot of the output timeline and the recordings able to fill it."""

    start: float
    end: float
    candidates: list[Recording] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return self.end - self.start


def _window_bounds(total: float, size: float) -> list[tuple[float, float]]:
    bounds: list[tuple[float, float]] = []
    start = 0.0
    while start < total - EPSILON:
        end = min(start + size, total)
        bounds.append((start, end))
        start = end
    # Fold a sliver shorter than half a window into its predecessor
    if len(bounds) > 1 and bounds[-1][1] - bounds[-1][0] < size / 2:
        last_start, last_end = bounds.pop()
        prev_start, _ = bounds.pop()
        bounds.append((prev_start, last_end))
    return bounds


def _candidates_for(start: float, end: float, recordings: Sequence[Recording]) -> list[Recording]:
    covering = [
        r for r in recordings
        if r.timeline_start <= start + EPSILON and r.timeline_end >= end - EPSILON
    ]
    if covering:
        return covering

    overlapping = [r for r in recordings if r.timeline_start < end and r.timeline_end > start]
    if overlapping:
        return overlapping

    # Gap in coverage: borrow the closest recording
    def distance(r: Recording) -> float:
        return min(abs(r.timeline_start - end), abs(r.timeline_end - start))

    return [min(recordings, key=distance)]


def build_windows(recordings: Sequence[Recording], window_size: float) -> list[Window]:
    """Partition the synchronized timeline into fixed-size windows."""
    if not recordings:
        return []
    total = max(r.timeline_end for r in recordings)
    return [
        Window(start=start, end=end, candidates=_candidates_for(start, end, recordings))
        for start, end in _window_bounds(total, window_size)
    ]


def _quality(recording: Recording) -> float:
    return recording.quality_score if recording.quality_score is not None else 0.0


def select_segments(
    windows: Sequence[Window],
    angles: dict[str, CameraAngle],
    prefer_angle_change: bool = True,
) -> list[Segment]:
    """Pick one recording per window.

    With ``prefer_angle_change`` a candidate with a known angle that differs
    from the previous segment wins, highest quality first. Unclassified
    recordings never count as a change. Otherwise the highest quality wins. Ties go
    to the earlier-uploaded recording.
    """
    segments: list[Segment] = []
    previous_angle: CameraAngle | None = None

    for window in windows:
        pool = window.candidates
        if prefer_angle_change and previous_angle is not None:
            skip = (previous_angle, CameraAngle.UNKNOWN)
            differing = [r for r in pool if angles.get(r.id, CameraAngle.UNKNOWN) not in skip]
            pool = differing or pool

        choice = max(pool, key=_quality)
        angle = angles.get(choice.id, CameraAngle.UNKNOWN)
        segments.append(
            Segment(
                recording_id=choice.id,
                start_time=window.start,
                end_time=window.end,
                quality_score=_quality(choice),
                camera_angle=angle,
            )
        )
        previous_angle = angle

    return segments


def assign_transitions(segments: Sequence[Segment], smart: bool = True) -> list[Segment]:
    """Set how each segment is entered from its predecessor.

    Crossfade between recordings, fade within a recording when the angle
    changes, cut otherwise. The first segment is always a cut.
    """
    result: list[Segment] = []
    for i, segment in enumerate(segments):
        transition = TransitionType.CUT
        if smart and i > 0:
            previous = segments[i - 1]
            if previous.recording_id != segment.recording_id:
                transition = TransitionType.CROSSFADE
            elif previous.camera_angle != segment.camera_angle:
                transition = TransitionType.FADE
        result.append(segment.model_copy(update={"transition_type": transition}))
    return result


def calculate_stitching_metrics(timeline: Timeline) -> StitchingMetrics:
    segments = timeline.segments
    if not segments:
        return StitchingMetrics()
    average = sum(s.quality_score for s in segments) / len(segments)
    transitions = sum(1 for s in segments if s.transition_type != TransitionType.CUT)
    switches = sum(
        1 for prev, nxt in zip(segments, segments[1:]) if prev.camera_angle != nxt.camera_angle
    )
    return StitchingMetrics(
        average_quality=round(average),
        transition_count=transitions,
        camera_angle_switches=switches,
    )


def build_single_timeline(recording: Recording) -> Timeline:
    segment = Segment(
        recording_id=recording.id,
        start_time=0.0,
        end_time=recording.duration,
        quality_score=_quality(recording),
        transition_type=TransitionType.CUT,
        camera_angle=CameraAngle.UNKNOWN,
    )
    return Timeline(segments=[segment], total_duration=recording.duration)


def check_stitching_readiness(
    recordings: Sequence[Recording],
    sync_validation: SyncValidation | None = None,
) -> StitchingReadiness:
    """Whether stitching can be attempted, and what is missing if not.

    Sync validation problems are reported as warnings; they never block.
    """
    has_recordings = len(recordings) > 0
    has_sync_data = any(r.sync_offset is not None for r in recordings)
    has_quality_data = any(r.quality_score is not None for r in recordings)

    missing: list[str] = []
    if not has_recordings:
        missing.append("No videos uploaded")
    if has_recordings and len(recordings) > 1 and not has_sync_data:
        missing.append("Videos must be synchronized before stitching")
    if not has_quality_data:
        missing.append("Quality analysis must be completed before stitching")

    warnings: list[str] = []
    if sync_validation is not None:
        warnings.extend(sync_validation.issues)

    return StitchingReadiness(
        ready=not missing,
        has_recordings=has_recordings,
        has_sync_data=has_sync_data,
        has_quality_data=has_quality_data,
        missing=missing,
        warnings=warnings,
    )


def _fmt(value: float) -> str:
    return f"{value:.3f}"


def build_filter_graph(
    timeline: Timeline,
    recordings: dict[str, Recording],
    spec: OutputSpec,
    transition_duration: float,
) -> tuple[list[Path], FilterGraph]:
    """Translate a timeline into ffmpeg inputs and a trim/concat graph.

    Each segment is trimmed from its source at ``segment.start - offset``,
    scaled and padded to the output size, then concatenated. A fade enters
    over the full transition duration. A crossfade dips through black,
    half the duration out of the previous segment and half into the next,
    so every segment keeps its exact length.
    """
    inputs: list[Path] = []
    index: dict[str, int] = {}
    for segment in timeline.segments:
        if segment.recording_id not in index:
            index[segment.recording_id] = len(inputs)
            inputs.append(Path(recordings[segment.recording_id].media_path))

    w, h = spec.width, spec.height
    layout = "stereo" if spec.audio_channels == 2 else "mono"
    chains: list[str] = []
    labels: list[str] = []
    segments = timeline.segments

    for i, segment in enumerate(segments):
        recording = recordings[segment.recording_id]
        src = index[segment.recording_id]
        length = segment.duration
        source_start = min(
            max(0.0, segment.start_time - recording.timeline_start),
            max(0.0, recording.duration - length),
        )
        source_end = source_start + length

        video = [
            f"trim=start={_fmt(source_start)}:end={_fmt(source_end)}",
            "setpts=PTS-STARTPTS",
            f"scale={w}:{h}:force_original_aspect_ratio=decrease",
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
            "setsar=1",
            f"fps={spec.frame_rate}",
        ]
        audio = [
            f"atrim=start={_fmt(source_start)}:end={_fmt(source_end)}",
            "asetpts=PTS-STARTPTS",
        ]

        fade = min(transition_duration, length / 2)
        if fade > 0:
            if segment.transition_type == TransitionType.FADE:
                video.append(f"fade=t=in:st=0:d={_fmt(fade)}")
                audio.append(f"afade=t=in:st=0:d={_fmt(fade)}")
            elif segment.transition_type == TransitionType.CROSSFADE:
                video.append(f"fade=t=in:st=0:d={_fmt(fade / 2)}")
                audio.append(f"afade=t=in:st=0:d={_fmt(fade / 2)}")

            following = segments[i + 1] if i + 1 < len(segments) else None
            if following is not None and following.transition_type == TransitionType.CROSSFADE:
                out_start = length - fade / 2
                video.append(f"fade=t=out:st={_fmt(out_start)}:d={_fmt(fade / 2)}")
                audio.append(f"afade=t=out:st={_fmt(out_start)}:d={_fmt(fade / 2)}")

        audio.append(
            f"aformat=sample_rates={spec.audio_sample_rate}:channel_layouts={layout}"
        )

        chains.append(f"[{src}:v]{','.join(video)}[v{i}]")
        if recording.has_audio:
            chains.append(f"[{src}:a]{','.join(audio)}[a{i}]")
        else:
            chains.append(
                f"anullsrc=channel_layout={layout}:sample_rate={spec.audio_sample_rate},"
                f"atrim=duration={_fmt(length)}[a{i}]"
            )
        labels.append(f"[v{i}][a{i}]")

    chains.append(f"{''.join(labels)}concat=n={len(segments)}:v=1:a=1[outv][outa]")
    return inputs, FilterGraph(filter_complex=";".join(chains))


class VideoStitchingService:
    """Builds the output timeline and renders it."""

    def __init__(
        self,
        recordings: RecordingStore,
        engine: MediaEngine,
        work_dir: Path,
        options: StitchingOptions | None = None,
        angle_classifier: AngleClassifier | None = None,
        projects: ProjectStore | None = None,
        max_parallel: int = 4,
    ) -> None:
        self.recordings = recordings
        self.engine = engine
        self.work_dir = Path(work_dir)
        self.options = options or StitchingOptions()
        self.angle_classifier = angle_classifier or EdgeDensityAngleClassifier()
        self.projects = projects
        self.max_parallel = max_parallel

    def check_stitching_readiness(
        self, project_id: str, sync_validation: SyncValidation | None = None
    ) -> StitchingReadiness:
        return check_stitching_readiness(
            self.recordings.find_by_project_id(project_id), sync_validation
        )

    async def build_timeline(
        self, recordings: Sequence[Recording], options: StitchingOptions | None = None
    ) -> Timeline:
        """Choose segments and transitions for the given recordings."""
        opts = options or self.options
        if not recordings:
            raise ValidationError("At least 1 video is required for stitching")
        if len(recordings) == 1:
            return build_single_timeline(recordings[0])

        if opts.enable_camera_angle_switching:
            angles = await self.classify_angles(recordings, opts)
        else:
            angles = {r.id: CameraAngle.UNKNOWN for r in recordings}

        windows = build_windows(recordings, opts.min_segment_duration)
        segments = select_segments(windows, angles, opts.enable_camera_angle_switching)
        segments = assign_transitions(segments, opts.enable_smart_transitions)
        total = windows[-1].end if windows else 0.0
        return Timeline(segments=segments, total_duration=total)

    async def classify_angles(
        self, recordings: Sequence[Recording], options: StitchingOptions | None = None
    ) -> dict[str, CameraAngle]:
        """Majority-vote camera angle per recording.

        A recording whose frames cannot be sampled is classified unknown.
        """
        opts = options or self.options
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def classify(recording: Recording) -> CameraAngle:
            interval = opts.angle_sample_interval
            count = max(1, int(recording.duration // interval))
            timestamps = [i * interval for i in range(count)]
            async with semaphore:
                try:
                    frames = await asyncio.to_thread(
                        sample_frames,
                        self.engine,
                        Path(recording.media_path),
                        timestamps,
                        self.work_dir,
                        "angles",
                        recording.id,
                        320,
                    )
                except MediaEngineError as e:
                    logger.warning(f"Angle classification skipped for {recording.id}: {e}")
                    return CameraAngle.UNKNOWN
            votes = [self.angle_classifier.classify(frame) for frame in frames]
            return majority_angle(votes)

        results = await asyncio.gather(*(classify(r) for r in recordings))
        angles = {r.id: angle for r, angle in zip(recordings, results)}
        logger.info(
            "Camera angles: " + ", ".join(f"{rid}={a.value}" for rid, a in angles.items())
        )
        return angles

    async def stitch(
        self,
        project_id: str,
        options: StitchingOptions | None = None,
        progress: ProgressCallback | None = None,
    ) -> StitchingResult:
        """Build and render the project's stitched video.

        Args:
            project_id: Project to stitch.
            options: Overrides the service options for this call.
            progress: Optional callback receiving 0-100 progress.

        Returns:
            StitchingResult describing the rendered file.

        Raises:
            ValidationError: If the project has no recordings.
            FatalRenderError: If rendering fails. Partial output is removed.
        """
        opts = options or self.options
        report = progress or (lambda _: None)
        start_time = time.perf_counter()

        recordings = self.recordings.find_by_project_id(project_id)
        if not recordings:
            raise ValidationError("At least 1 video is required for stitching")

        timeline = await self.build_timeline(recordings, opts)
        if not timeline.segments:
            raise ValidationError("Recordings have no footage to stitch")
        report(40)
        logger.info(
            f"Timeline for project {project_id}: {len(timeline.segments)} segment(s), "
            f"{timeline.total_duration:.1f}s"
        )

        spec = OutputSpec.from_stitching(opts)
        by_id = {r.id: r for r in recordings}
        inputs, graph = build_filter_graph(timeline, by_id, spec, opts.transition_duration)
        output_path = (
            self.work_dir
            / "output"
            / f"stitched_{project_id}_{int(time.time() * 1000)}.{spec.container}"
        )
        report(50)

        try:
            await asyncio.to_thread(self.engine.render, inputs, graph, spec, output_path)
        except MediaEngineError as e:
            output_path.unlink(missing_ok=True)
            raise FatalRenderError(f"Failed to render stitched video: {e}") from e

        if not output_path.exists():
            raise FatalRenderError(f"Render produced no output: {output_path}")

        result = StitchingResult(
            output_path=str(output_path),
            timeline=timeline,
            duration=timeline.total_duration,
            file_size=output_path.stat().st_size,
            quality_metrics=calculate_stitching_metrics(timeline),
        )
        if self.projects is not None:
            self.projects.update(project_id, final_video_path=str(output_path))
        report(100)

        elapsed = time.perf_counter() - start_time
        logger.info(f"Stitched project {project_id} in {elapsed:.2f}s -> {output_path.name}")
        return result
