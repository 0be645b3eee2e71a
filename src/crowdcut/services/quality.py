"""Per-recording quality assessment.

Analyzers measure; this module owns the scoring contract:

* stability = max(0, 100 - avg_motion * 10)
* lighting  = mean of brightness, consistency, contrast, exposure and
  colour-balance scores
* framing   = weighted blend of composition, thirds, centering, aspect and
  subject confidence
* clarity   = mean(sharpness, focus, edges) minus blur and noise penalties
* overall   = 0.25 stability + 0.25 lighting + 0.20 framing
  + 0.25 clarity + 0.05 audio
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence, TypeVar

from crowdcut.analysis.features import AudioQualityAnalyzer
from crowdcut.analysis.frames import (
    ClarityAnalysis,
    Frame,
    FrameAnalyzer,
    FramingAnalysis,
    LightingAnalysis,
    MotionAnalysis,
    PixelFrameAnalyzer,
    default_clarity_analysis,
    default_framing_analysis,
    default_lighting_analysis,
    default_motion_analysis,
    sample_frames,
)
from crowdcut.config import QualityOptions
from crowdcut.errors import (
    DegradedAnalysis,
    MediaEngineError,
    QualityAssessmentError,
    ValidationError,
)
from crowdcut.media.engine import MediaEngine
from crowdcut.models.schema import FrameQuality, QualityMetrics, QualityScores, Recording
from crowdcut.store.memory import RecordingStore

logger = logging.getLogger(__name__)

A = TypeVar("A")
T = TypeVar("T")
ProgressCallback = Callable[[float], None]

TARGET_BRIGHTNESS = 60.0
SHAKE_VARIANCE = 50.0
SHAKE_MOTION = 15.0

FRAMING_WEIGHTS = {
    "composition": 0.30,
    "rule_of_thirds": 0.25,
    "centering": 0.15,
    "aspect_ratio": 0.15,
    "subject": 0.15,
}

OVERALL_WEIGHTS = {
    "stability": 0.25,
    "lighting": 0.25,
    "framing": 0.20,
    "clarity": 0.25,
    "audio_quality": 0.05,
}

ANALYZERS = ("stability", "lighting", "framing", "clarity")


def _clamp(value: float) -> float:
    return float(min(100.0, max(0.0, value)))


def stability_score(motion: MotionAnalysis) -> tuple[float, bool]:
    """Score and shake flag for a motion analysis."""
    score = max(0.0, 100.0 - motion.average_motion * 10.0)
    shake = motion.motion_variance > SHAKE_VARIANCE or motion.average_motion > SHAKE_MOTION
    return score, shake


def frame_stability_score(magnitude: float) -> float:
    return max(0.0, 100.0 - magnitude * 5.0)


def brightness_score(brightness: float) -> float:
    return max(0.0, 100.0 - abs(brightness - TARGET_BRIGHTNESS) * 2.0)


def lighting_score(lighting: LightingAnalysis) -> float:
    consistency = max(0.0, 100.0 - lighting.brightness_variance)
    balance = max(0.0, 100.0 - sum(abs(c - 50.0) for c in lighting.color_balance) / 3.0)
    parts = [
        brightness_score(lighting.brightness),
        consistency,
        lighting.contrast,
        lighting.exposure,
        balance,
    ]
    return _clamp(sum(parts) / len(parts))


def framing_score(framing: FramingAnalysis) -> float:
    subject = framing.subject_confidence if framing.subject_detected else 50.0
    return _clamp(
        framing.composition * FRAMING_WEIGHTS["composition"]
        + framing.rule_of_thirds * FRAMING_WEIGHTS["rule_of_thirds"]
        + framing.centering * FRAMING_WEIGHTS["centering"]
        + framing.aspect_ratio * FRAMING_WEIGHTS["aspect_ratio"]
        + subject * FRAMING_WEIGHTS["subject"]
    )


def clarity_score(clarity: ClarityAnalysis) -> float:
    base = (clarity.sharpness + clarity.focus + clarity.edge_strength) / 3.0
    penalty = clarity.motion_blur * 2.0 + clarity.focus_blur * 2.0 + clarity.noise_level * 1.5
    return max(0.0, base - penalty)


def overall_score(
    stability: float, lighting: float, framing: float, clarity: float, audio_quality: float
) -> int:
    return round(
        _clamp(
            stability * OVERALL_WEIGHTS["stability"]
            + lighting * OVERALL_WEIGHTS["lighting"]
            + framing * OVERALL_WEIGHTS["framing"]
            + clarity * OVERALL_WEIGHTS["clarity"]
            + audio_quality * OVERALL_WEIGHTS["audio_quality"]
        )
    )


def rank_videos_by_quality(metrics: Sequence[QualityMetrics]) -> list[QualityMetrics]:
    """Sort descending by overall score; equal scores keep their input order."""
    return sorted(metrics, key=lambda m: m.scores.overall, reverse=True)


def neutral_metrics(recording_id: str, score: float = 50.0) -> QualityMetrics:
    """Metrics for a recording whose assessment failed outright."""
    value = round(score)
    return QualityMetrics(
        recording_id=recording_id,
        scores=QualityScores(
            overall=value,
            stability=value,
            lighting=value,
            framing=value,
            clarity=value,
            audio_quality=value,
        ),
        degraded=list(ANALYZERS),
    )


@dataclass
class ProjectQualityReport:
    """Quality metrics for every recording of a project."""

    metrics: list[QualityMetrics] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ranking(self) -> list[QualityMetrics]:
        return rank_videos_by_quality(self.metrics)


class VideoQualityService:
    """Scores recordings and persists ``quality_score``."""

    def __init__(
        self,
        recordings: RecordingStore,
        engine: MediaEngine,
        work_dir: Path,
        options: QualityOptions | None = None,
        analyzer: FrameAnalyzer | None = None,
        audio_analyzer: AudioQualityAnalyzer | None = None,
        max_parallel: int = 4,
        audio_sample_rate: int = 16000,
    ) -> None:
        self.recordings = recordings
        self.engine = engine
        self.work_dir = Path(work_dir)
        self.options = options or QualityOptions()
        self.analyzer = analyzer or PixelFrameAnalyzer()
        self.audio_analyzer = audio_analyzer
        self.max_parallel = max_parallel
        self.audio_sample_rate = audio_sample_rate

    @staticmethod
    def sample_timestamps(duration: float, options: QualityOptions) -> list[float]:
        """Evenly spaced sample times, capped by count and duration."""
        interval = options.analysis_interval
        count = max(1, min(options.sample_frame_count, int(duration // interval)))
        return [round(i * interval, 3) for i in range(count)]

    async def assess_quality(
        self, recording: Recording, options: QualityOptions | None = None
    ) -> QualityMetrics:
        """Assess one recording.

        Individual analyzer failures are absorbed: the failed dimension gets
        the neutral score and is listed in ``QualityMetrics.degraded``.

        Args:
            recording: Recording to assess.
            options: Overrides the service options for this call.

        Returns:
            QualityMetrics with rounded 0-100 scores.

        Raises:
            QualityAssessmentError: If no frame could be sampled.
        """
        opts = options or self.options
        start_time = time.perf_counter()
        frames = await self._sample_frames(recording, opts)
        count = len(frames)
        degraded: list[str] = []

        motion = await self._measure(
            "stability", opts.enable_stability, self.analyzer.analyze_motion,
            frames, default_motion_analysis, degraded,
        )
        lighting = await self._measure(
            "lighting", opts.enable_lighting, self.analyzer.analyze_lighting,
            frames, default_lighting_analysis, degraded,
        )
        framing = await self._measure(
            "framing", opts.enable_framing, self.analyzer.analyze_framing,
            frames, default_framing_analysis, degraded,
        )
        clarity = await self._measure(
            "clarity", opts.enable_clarity, self.analyzer.analyze_clarity,
            frames, default_clarity_analysis, degraded,
        )

        neutral = opts.neutral_score
        shake = False
        if motion is not None:
            stability, shake = stability_score(motion)
            frame_stability = [frame_stability_score(m) for m in _fit(motion.frame_motion, count)]
        else:
            stability, frame_stability = neutral, [neutral] * count

        if lighting is not None:
            light = lighting_score(lighting)
            frame_light = [brightness_score(b) for b in _fit(lighting.frame_brightness, count)]
        else:
            light, frame_light = neutral, [neutral] * count

        if framing is not None:
            frame_score = framing_score(framing)
            frame_framing = [_clamp(c) for c in _fit(framing.frame_composition, count)]
        else:
            frame_score, frame_framing = neutral, [neutral] * count

        if clarity is not None:
            clear = clarity_score(clarity)
            frame_clarity = [_clamp(s) for s in _fit(clarity.frame_sharpness, count)]
        else:
            clear, frame_clarity = neutral, [neutral] * count

        audio = await self._audio_score(recording, opts, degraded)

        scores = QualityScores(
            overall=overall_score(stability, light, frame_score, clear, audio),
            stability=round(_clamp(stability)),
            lighting=round(_clamp(light)),
            framing=round(_clamp(frame_score)),
            clarity=round(_clamp(clear)),
            audio_quality=round(_clamp(audio)),
        )
        per_frame = [
            FrameQuality(
                timestamp=frame.timestamp,
                stability_score=frame_stability[i],
                lighting_score=frame_light[i],
                framing_score=frame_framing[i],
                clarity_score=frame_clarity[i],
            )
            for i, frame in enumerate(frames)
        ]
        metrics = QualityMetrics(
            recording_id=recording.id,
            scores=scores,
            per_frame=per_frame,
            shake_detected=shake,
            degraded=degraded,
        )

        self.recordings.update(recording.id, quality_score=float(scores.overall))
        elapsed = time.perf_counter() - start_time
        logger.info(
            f"Recording {recording.id} scored {scores.overall} "
            f"from {count} frames in {elapsed:.2f}s"
        )
        return metrics

    async def assess_project(
        self,
        project_id: str,
        options: QualityOptions | None = None,
        progress: ProgressCallback | None = None,
    ) -> ProjectQualityReport:
        """Assess every recording of a project concurrently.

        A recording whose assessment fails outright gets the neutral score.

        Raises:
            ValidationError: If the project has no recordings.
        """
        recordings = self.recordings.find_by_project_id(project_id)
        if not recordings:
            raise ValidationError("At least 1 video is required for quality analysis")

        opts = options or self.options
        semaphore = asyncio.Semaphore(self.max_parallel)
        done = 0

        async def assess(recording: Recording) -> QualityMetrics:
            nonlocal done
            async with semaphore:
                try:
                    return await self.assess_quality(recording, opts)
                finally:
                    done += 1
                    if progress is not None:
                        progress(100.0 * done / len(recordings))

        results = await asyncio.gather(
            *(assess(r) for r in recordings), return_exceptions=True
        )

        report = ProjectQualityReport()
        for recording, result in zip(recordings, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Quality analysis failed for recording {recording.id}: {result}")
                report.failed[recording.id] = str(result)
                self.recordings.update(recording.id, quality_score=opts.neutral_score)
                report.metrics.append(neutral_metrics(recording.id, opts.neutral_score))
            else:
                report.metrics.append(result)
        return report

    async def _sample_frames(self, recording: Recording, opts: QualityOptions) -> list[Frame]:
        timestamps = self.sample_timestamps(recording.duration, opts)
        try:
            frames = await asyncio.to_thread(
                sample_frames,
                self.engine,
                Path(recording.media_path),
                timestamps,
                self.work_dir,
                "quality",
                recording.id,
                opts.frame_max_width,
            )
        except MediaEngineError as e:
            raise QualityAssessmentError(
                f"Failed to sample frames from recording {recording.id}: {e}"
            ) from e

        if not frames:
            raise QualityAssessmentError(f"No readable frames for recording {recording.id}")
        return frames

    async def _measure(
        self,
        name: str,
        enabled: bool,
        analyze: Callable[[Sequence[Frame]], T],
        frames: list[Frame],
        default: Callable[[int], T],
        degraded: list[str],
    ) -> T | None:
        """Run one analyzer; None means it failed and was substituted."""
        if not enabled:
            return default(len(frames))
        try:
            return await asyncio.to_thread(run_analyzer, name, analyze, frames)
        except DegradedAnalysis as e:
            logger.warning(f"{e}; using neutral score")
            degraded.append(e.analyzer)
            return None

    async def _audio_score(
        self, recording: Recording, opts: QualityOptions, degraded: list[str]
    ) -> float:
        if self.audio_analyzer is None or not recording.has_audio:
            return opts.audio_quality_baseline
        try:
            return await asyncio.to_thread(run_analyzer, "audio", self._score_audio, recording)
        except DegradedAnalysis as e:
            logger.warning(f"{e}; using neutral score")
            degraded.append(e.analyzer)
            return opts.neutral_score

    def _score_audio(self, recording: Recording) -> float:
        track = self.engine.extract_audio(Path(recording.media_path), self.audio_sample_rate)
        return self.audio_analyzer.score(track)


def run_analyzer(name: str, analyze: Callable[[A], T], subject: A) -> T:
    """Call one analyzer, turning any failure into DegradedAnalysis."""
    try:
        return analyze(subject)
    except Exception as e:
        raise DegradedAnalysis(name, e) from e


def _fit(values: Sequence[float], count: int) -> list[float]:
    """Pad or trim a per-frame list to ``count`` entries."""
    values = list(values)
    if len(values) >= count:
        return values[:count]
    fill = values[-1] if values else 0.0
    return values + [fill] * (count - len(values))
