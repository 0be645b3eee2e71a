"""Tests for quality scoring and the quality service."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import numpy as np
import pytest

from crowdcut.analysis.frames import (
    ConstantFrameAnalyzer,
    Frame,
    LightingAnalysis,
    MotionAnalysis,
    PixelFrameAnalyzer,
    default_clarity_analysis,
    default_framing_analysis,
    default_lighting_analysis,
)
from crowdcut.config import QualityOptions
from crowdcut.errors import DegradedAnalysis, QualityAssessmentError, ValidationError
from crowdcut.models.schema import QualityMetrics, QualityScores
from crowdcut.services.quality import (
    VideoQualityService,
    brightness_score,
    clarity_score,
    framing_score,
    lighting_score,
    neutral_metrics,
    overall_score,
    rank_videos_by_quality,
    run_analyzer,
    stability_score,
)


class BrokenLightingAnalyzer(ConstantFrameAnalyzer):
    """Analyzer whose lighting measurement always fails."""

    def analyze_lighting(self, frames: Sequence[Frame]) -> LightingAnalysis:
        raise RuntimeError("histogram overflow")


def _metrics(recording_id: str, overall: int) -> QualityMetrics:
    return QualityMetrics(
        recording_id=recording_id,
        scores=QualityScores(
            overall=overall, stability=0, lighting=0, framing=0, clarity=0, audio_quality=0
        ),
    )


class TestScoringFormulas:
    """Tests for the pure scoring functions."""

    def test_stability_score(self) -> None:
        """Stability loses 10 points per unit of average motion."""
        score, shake = stability_score(MotionAnalysis(average_motion=2.5, motion_variance=0.0))
        assert score == pytest.approx(75.0)
        assert not shake

    def test_stability_floor_and_shake(self) -> None:
        score, shake = stability_score(MotionAnalysis(average_motion=20.0, motion_variance=0.0))
        assert score == 0.0
        assert shake

        _, shake = stability_score(MotionAnalysis(average_motion=1.0, motion_variance=80.0))
        assert shake

    def test_brightness_score_peaks_at_target(self) -> None:
        assert brightness_score(60.0) == 100.0
        assert brightness_score(40.0) == 60.0
        assert brightness_score(0.0) == 0.0

    def test_default_measurements(self) -> None:
        """Neutral default measurements map to known scores."""
        assert lighting_score(default_lighting_analysis(1)) == pytest.approx(86.0)
        assert framing_score(default_framing_analysis(1)) == pytest.approx(66.5)
        assert clarity_score(default_clarity_analysis(1)) == pytest.approx(205 / 3 - 58.5)

    def test_framing_uses_subject_confidence_when_detected(self) -> None:
        framing = default_framing_analysis(1)
        framing.subject_detected = True
        framing.subject_confidence = 100.0
        assert framing_score(framing) == pytest.approx(66.5 + 50 * 0.15)

    def test_overall_weights(self) -> None:
        """Overall is the weighted sum, rounded."""
        assert overall_score(100, 100, 100, 100, 100) == 100
        assert overall_score(0, 0, 0, 0, 0) == 0
        assert overall_score(80, 60, 40, 20, 100) == round(20 + 15 + 8 + 5 + 5)

    def test_ranking_descending_and_stable(self) -> None:
        """Equal scores keep their input order."""
        ranked = rank_videos_by_quality(
            [_metrics("a", 50), _metrics("b", 80), _metrics("c", 50), _metrics("d", 90)]
        )
        assert [m.recording_id for m in ranked] == ["d", "b", "a", "c"]

    def test_neutral_metrics(self) -> None:
        metrics = neutral_metrics("r1")
        assert metrics.scores.overall == 50
        assert metrics.scores.audio_quality == 50
        assert set(metrics.degraded) == {"stability", "lighting", "framing", "clarity"}


class TestRunAnalyzer:
    """Tests for the analyzer failure wrapper."""

    def test_failure_raises_degraded_analysis(self) -> None:
        def broken(frames: Sequence[Frame]) -> LightingAnalysis:
            raise RuntimeError("histogram overflow")

        with pytest.raises(DegradedAnalysis, match="lighting analysis degraded") as exc_info:
            run_analyzer("lighting", broken, [])

        assert exc_info.value.analyzer == "lighting"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_result_passes_through(self) -> None:
        assert run_analyzer("motion", len, [1, 2, 3]) == 3


class TestPixelFrameAnalyzer:
    """Tests for the numpy frame analyzer."""

    @staticmethod
    def _frame(pixels: np.ndarray, ts: float = 0.0) -> Frame:
        return Frame(timestamp=ts, pixels=pixels.astype(np.uint8))

    def test_static_frames_have_no_motion(self) -> None:
        rng = np.random.default_rng(0)
        pixels = rng.integers(0, 256, size=(48, 64, 3))
        frames = [self._frame(pixels, t) for t in range(3)]

        motion = PixelFrameAnalyzer().analyze_motion(frames)

        assert motion.average_motion == 0.0
        assert motion.frame_motion == [0.0, 0.0, 0.0]

    def test_shift_is_detected(self) -> None:
        """A translated frame registers motion of the shift size."""
        rng = np.random.default_rng(1)
        base = rng.integers(0, 256, size=(48, 64, 3))
        shifted = np.roll(base, 3, axis=1)

        motion = PixelFrameAnalyzer().analyze_motion([self._frame(base), self._frame(shifted, 1)])

        assert motion.average_motion == pytest.approx(3.0)

    def test_single_frame_motion_is_zero(self) -> None:
        motion = PixelFrameAnalyzer().analyze_motion([self._frame(np.zeros((8, 8, 3)))])
        assert motion.average_motion == 0.0

    def test_lighting_of_dark_frame(self) -> None:
        """A black frame is dark and fully clipped."""
        lighting = PixelFrameAnalyzer().analyze_lighting([self._frame(np.zeros((16, 16, 3)))])

        assert lighting.brightness == 0.0
        assert lighting.exposure == 0.0
        assert lighting.color_balance == (50.0, 50.0, 50.0)

    def test_empty_input_rejected(self) -> None:
        analyzer = PixelFrameAnalyzer()
        with pytest.raises(ValueError):
            analyzer.analyze_lighting([])
        with pytest.raises(ValueError):
            analyzer.analyze_framing([])
        with pytest.raises(ValueError):
            analyzer.analyze_clarity([])

    def test_tiny_frames_supported(self) -> None:
        """Frames smaller than the analysis grids still produce measurements."""
        frame = self._frame(np.full((4, 4, 3), 128))
        analyzer = PixelFrameAnalyzer()

        assert analyzer.analyze_framing([frame]).subject_detected is False
        assert analyzer.analyze_clarity([frame]).sharpness == 0.0

    def test_sharp_frame_beats_flat_frame(self) -> None:
        checker = (np.indices((32, 32)).sum(axis=0) % 2 * 255)[..., None].repeat(3, axis=2)
        flat = np.full((32, 32, 3), 128)
        analyzer = PixelFrameAnalyzer()

        sharp = analyzer.analyze_clarity([self._frame(checker)]).sharpness
        dull = analyzer.analyze_clarity([self._frame(flat)]).sharpness

        assert sharp > dull


class TestVideoQualityService:
    """Tests for VideoQualityService."""

    def test_sample_timestamps(self) -> None:
        options = QualityOptions(sample_frame_count=30, analysis_interval=2.0)

        assert VideoQualityService.sample_timestamps(10.0, options) == [0.0, 2.0, 4.0, 6.0, 8.0]
        assert len(VideoQualityService.sample_timestamps(600.0, options)) == 30
        assert VideoQualityService.sample_timestamps(1.0, options) == [0.0]

    @pytest.mark.asyncio
    async def test_assess_quality_with_default_measurements(
        self, engine, recordings, add_clip, temp_dir: Path
    ) -> None:
        """Neutral measurements give a predictable overall score."""
        recording = add_clip("a.mp4", duration=10.0)
        service = VideoQualityService(
            recordings, engine, temp_dir, analyzer=ConstantFrameAnalyzer()
        )

        metrics = await service.assess_quality(recording)

        assert metrics.scores.stability == 75
        assert metrics.scores.lighting == 86
        assert metrics.scores.audio_quality == 75
        assert metrics.scores.overall == 60
        assert len(metrics.per_frame) == 5
        assert metrics.degraded == []
        assert not metrics.shake_detected
        assert recordings.find_by_id(recording.id).quality_score == 60.0

    @pytest.mark.asyncio
    async def test_sampled_frames_are_deleted(
        self, engine, recordings, add_clip, temp_dir: Path
    ) -> None:
        """No extracted frame outlives the assessment."""
        recording = add_clip("a.mp4", duration=10.0)
        service = VideoQualityService(
            recordings, engine, temp_dir, analyzer=ConstantFrameAnalyzer()
        )

        await service.assess_quality(recording)

        assert list((temp_dir / "tmp").rglob("*.png")) == []
        assert list((temp_dir / "tmp" / "quality").iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_analyzer_is_neutral(
        self, engine, recordings, add_clip, temp_dir: Path
    ) -> None:
        """A failing analyzer degrades its dimension to the neutral score."""
        recording = add_clip("a.mp4", duration=10.0)
        service = VideoQualityService(
            recordings, engine, temp_dir, analyzer=BrokenLightingAnalyzer()
        )

        metrics = await service.assess_quality(recording)

        assert metrics.degraded == ["lighting"]
        assert metrics.scores.lighting == 50
        assert metrics.scores.overall == 51
        assert all(f.lighting_score == 50.0 for f in metrics.per_frame)

    @pytest.mark.asyncio
    async def test_disabled_dimension_uses_defaults(
        self, engine, recordings, add_clip, temp_dir: Path
    ) -> None:
        """Disabled analyzers are never called."""
        recording = add_clip("a.mp4", duration=10.0)
        service = VideoQualityService(
            recordings,
            engine,
            temp_dir,
            QualityOptions(enable_lighting=False),
            analyzer=BrokenLightingAnalyzer(),
        )

        metrics = await service.assess_quality(recording)

        assert metrics.degraded == []
        assert metrics.scores.lighting == 86

    @pytest.mark.asyncio
    async def test_pixel_analyzer_end_to_end(
        self, engine, recordings, add_clip, temp_dir: Path
    ) -> None:
        """Real pixel analysis produces in-range scores."""
        recording = add_clip("a.mp4", duration=8.0)
        service = VideoQualityService(recordings, engine, temp_dir)

        metrics = await service.assess_quality(recording)

        scores = metrics.scores
        for value in (scores.overall, scores.stability, scores.lighting, scores.framing, scores.clarity):
            assert 0 <= value <= 100
        assert len(metrics.per_frame) == 4

    @pytest.mark.asyncio
    async def test_no_frames_raises(self, engine, recordings, add_clip, temp_dir: Path) -> None:
        recording = add_clip("a.mp4")
        engine.fail_frames = {"a.mp4"}
        service = VideoQualityService(recordings, engine, temp_dir)

        with pytest.raises(QualityAssessmentError, match="Failed to sample frames"):
            await service.assess_quality(recording)

    @pytest.mark.asyncio
    async def test_assess_project_falls_back_to_neutral(
        self, engine, recordings, project, add_clip, temp_dir: Path
    ) -> None:
        """One unreadable recording does not fail the project."""
        good = add_clip("a.mp4", duration=10.0)
        bad = add_clip("b.mp4", duration=10.0)
        engine.fail_frames = {"b.mp4"}
        service = VideoQualityService(
            recordings, engine, temp_dir, analyzer=ConstantFrameAnalyzer()
        )
        progress: list[float] = []

        report = await service.assess_project(project.id, progress=progress.append)

        assert [m.recording_id for m in report.metrics] == [good.id, bad.id]
        assert bad.id in report.failed
        assert report.metrics[1].scores.overall == 50
        assert recordings.find_by_id(bad.id).quality_score == 50.0
        assert [m.recording_id for m in report.ranking] == [good.id, bad.id]
        assert progress[-1] == 100.0

    @pytest.mark.asyncio
    async def test_assess_project_requires_recordings(
        self, engine, recordings, project, temp_dir: Path
    ) -> None:
        service = VideoQualityService(recordings, engine, temp_dir)

        with pytest.raises(ValidationError):
            await service.assess_project(project.id)
