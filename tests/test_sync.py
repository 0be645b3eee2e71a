"""Tests for the synchronization service."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from crowdcut.config import SyncOptions
from crowdcut.errors import SynchronizationError, ValidationError
from crowdcut.models.schema import AlignedRecording, SyncPoint, SyncResult
from crowdcut.services.sync import (
    SynchronizationService,
    compare_visual_features,
    cross_correlate,
    find_sync_candidates,
    overall_confidence,
    select_method,
    validate_sync_results,
)

FAST = SyncOptions(sample_rate=1000, sample_stride=1)


def _result(confidence: float, aligned: list[float], method: str = "audio") -> SyncResult:
    return SyncResult(
        method=method,
        confidence=confidence,
        reference_recording_id="r0",
        aligned_videos=[
            AlignedRecording(recording_id=f"r{i}", offset_seconds=0.0, confidence=c)
            for i, c in enumerate(aligned)
        ],
    )


class TestCrossCorrelate:
    """Tests for cross_correlate and candidate extraction."""

    def test_recovers_known_offset(self) -> None:
        """A comparison that starts 1.5s into the reference peaks at +1.5s."""
        rng = np.random.default_rng(0)
        reference = rng.standard_normal(12_000).astype(np.float32)
        comparison = reference[1500:]

        correlations = cross_correlate(reference, comparison, 1000, FAST)
        best_offset, best_value = max(correlations, key=lambda c: c[1])

        assert best_offset == pytest.approx(1.5)
        assert best_value == pytest.approx(1.0, abs=1e-3)

    def test_negative_offset(self) -> None:
        """A comparison that started earlier peaks at a negative offset."""
        rng = np.random.default_rng(1)
        event = rng.standard_normal(12_000).astype(np.float32)
        reference = event[2000:]
        comparison = event

        correlations = cross_correlate(reference, comparison, 1000, FAST)
        best_offset, _ = max(correlations, key=lambda c: c[1])

        assert best_offset == pytest.approx(-2.0)

    def test_offsets_bounded(self) -> None:
        """Tested offsets never exceed the configured maximum."""
        rng = np.random.default_rng(2)
        signal = rng.standard_normal(30_000).astype(np.float32)
        options = SyncOptions(sample_rate=1000, max_offset_seconds=3, sample_stride=8)

        correlations = cross_correlate(signal, signal, 1000, options)

        assert all(abs(offset) <= 3.0 for offset, _ in correlations)

    def test_silence_correlates_to_zero(self) -> None:
        """Silent input produces no usable correlation."""
        silence = np.zeros(5000, dtype=np.float32)
        correlations = cross_correlate(silence, silence, 1000, FAST)

        assert correlations
        assert all(value == 0.0 for _, value in correlations)
        assert find_sync_candidates(correlations, "r1", 0.1, 5) == []

    def test_candidates_are_local_maxima_above_threshold(self) -> None:
        """Only strict local maxima above threshold are kept, strongest first."""
        correlations = [
            (-0.04, 0.0),
            (-0.02, 0.5),
            (0.0, 0.2),
            (0.02, 0.9),
            (0.04, 0.1),
            (0.06, 0.05),
            (0.08, 0.08),
            (0.10, 0.0),
        ]

        points = find_sync_candidates(correlations, "r1", threshold=0.1, max_candidates=5)

        assert [p.offset_seconds for p in points] == [0.02, -0.02]
        assert points[0].confidence == pytest.approx(90.0)
        assert all(p.method == "audio" for p in points)

    def test_candidates_capped(self) -> None:
        """At most max_candidates points are returned."""
        correlations = []
        for i in range(20):
            correlations.append((i * 0.02, 0.0 if i % 2 else 0.5 + i * 0.01))
        points = find_sync_candidates(correlations, "r1", threshold=0.1, max_candidates=3)

        assert len(points) == 3
        assert points[0].confidence >= points[-1].confidence


class TestVisualFeatures:
    """Tests for compare_visual_features."""

    def test_matching_frames_give_offset(self) -> None:
        """Identical feature vectors at shifted times imply the shift."""
        rng = np.random.default_rng(3)
        vectors = [rng.random(16).astype(np.float32) for _ in range(8)]
        reference = [(float(t), vectors[t]) for t in range(8)]
        comparison = [(float(t), vectors[t + 2]) for t in range(6)]

        points = compare_visual_features(reference, comparison, "r1", SyncOptions())

        assert points[0].offset_seconds == pytest.approx(2.0)
        assert points[0].method == "visual"
        assert len(points) <= 3

    def test_dissimilar_frames_ignored(self) -> None:
        """Orthogonal vectors never match."""
        reference = [(0.0, np.array([1.0, 0.0], dtype=np.float32))]
        comparison = [(0.0, np.array([0.0, 1.0], dtype=np.float32))]

        assert compare_visual_features(reference, comparison, "r1", SyncOptions()) == []


class TestConfidenceAndValidation:
    """Tests for confidence aggregation and validate_sync_results."""

    def test_overall_confidence_bonus(self) -> None:
        """Multiple candidates earn up to 20 bonus points."""
        points = [
            SyncPoint(recording_id="r1", offset_seconds=0.0, confidence=50.0, method="audio"),
            SyncPoint(recording_id="r1", offset_seconds=1.0, confidence=30.0, method="audio"),
        ]
        assert overall_confidence(points) == pytest.approx(50.0)
        assert overall_confidence(points[:1]) == pytest.approx(50.0)
        assert overall_confidence([]) == 0.0

    def test_overall_confidence_capped(self) -> None:
        points = [
            SyncPoint(recording_id="r1", offset_seconds=float(i), confidence=95.0, method="audio")
            for i in range(5)
        ]
        assert overall_confidence(points) == 100.0

    def test_select_method(self) -> None:
        audio = [SyncPoint(recording_id="r1", offset_seconds=0.0, confidence=80.0, method="audio")]
        visual = [SyncPoint(recording_id="r1", offset_seconds=0.0, confidence=80.0, method="visual")]

        weak = [SyncPoint(recording_id="r1", offset_seconds=0.0, confidence=20.0, method="audio")]

        assert select_method(audio, []) == "audio"
        assert select_method(audio, visual) == "audio"
        assert select_method([], visual) == "visual"
        assert select_method(weak, visual) == "hybrid"

    def test_weak_audio_without_visual_is_hybrid(self) -> None:
        """Weak audio alone does not count as an audio alignment."""
        weak = [SyncPoint(recording_id="r1", offset_seconds=0.0, confidence=20.0, method="audio")]

        assert select_method(weak, []) == "hybrid"
        assert select_method([], []) == "hybrid"
        assert select_method(weak, [], audio_threshold=10.0) == "audio"

    def test_high_confidence_is_valid(self) -> None:
        validation = validate_sync_results(_result(85.0, [100.0, 80.0, 70.0]))

        assert validation.is_valid
        assert validation.issues == []

    def test_moderate_confidence_warns(self) -> None:
        validation = validate_sync_results(_result(45.0, [100.0, 45.0]))

        assert validation.is_valid
        assert "Moderate synchronization confidence" in validation.issues

    def test_low_confidence_invalid(self) -> None:
        validation = validate_sync_results(_result(20.0, [100.0, 20.0]))

        assert not validation.is_valid
        assert "Very low synchronization confidence" in validation.issues

    def test_unaligned_majority_invalid(self) -> None:
        """Invalid once half or more of the recordings are unreliable."""
        validation = validate_sync_results(_result(70.0, [100.0, 10.0, 5.0]))

        assert not validation.is_valid
        assert "2 videos could not be reliably synchronized" in validation.issues

    def test_visual_method_recommends_review(self) -> None:
        validation = validate_sync_results(_result(90.0, [100.0, 90.0], method="visual"))

        assert any("Visual synchronization" in r for r in validation.recommendations)


class TestSynchronizationService:
    """Tests for SynchronizationService.synchronize."""

    @pytest.mark.asyncio
    async def test_requires_two_recordings(self, engine, recordings, project, add_clip, temp_dir: Path) -> None:
        add_clip("a.mp4")
        service = SynchronizationService(recordings, engine, temp_dir, FAST)

        with pytest.raises(ValidationError, match="At least 2 videos"):
            await service.synchronize(project.id)

    @pytest.mark.asyncio
    async def test_audio_sync_finds_offset(self, engine, recordings, project, add_clip, temp_dir: Path) -> None:
        """A clip that started 2s late is placed at +2s with high confidence."""
        a = add_clip("a.mp4", start=0.0, duration=20.0)
        b = add_clip("b.mp4", start=2.0, duration=18.0)
        service = SynchronizationService(recordings, engine, temp_dir, FAST)
        progress: list[float] = []

        result = await service.synchronize(project.id, progress=progress.append)

        assert result.method == "audio"
        assert result.reference_recording_id == a.id
        assert result.confidence > 30
        aligned = {entry.recording_id: entry for entry in result.aligned_videos}
        assert aligned[a.id].offset_seconds == 0.0
        assert aligned[a.id].confidence == 100.0
        assert aligned[b.id].offset_seconds == pytest.approx(2.0)
        assert recordings.find_by_id(b.id).sync_offset == pytest.approx(2.0)
        assert recordings.find_by_id(a.id).sync_offset == 0.0
        assert progress[-1] == 100
        assert validate_sync_results(result).is_valid

    @pytest.mark.asyncio
    async def test_visual_fallback_for_silent_clips(self, engine, recordings, project, add_clip, temp_dir: Path) -> None:
        """Silent audio falls back to matching frames."""
        add_clip("a.mp4", start=0.0, duration=12.0, silent=True)
        b = add_clip("b.mp4", start=2.0, duration=10.0, silent=True)
        service = SynchronizationService(recordings, engine, temp_dir, FAST)

        result = await service.synchronize(project.id)

        assert result.method == "visual"
        aligned = {entry.recording_id: entry for entry in result.aligned_videos}
        assert aligned[b.id].offset_seconds == pytest.approx(2.0)
        assert all(p.method == "visual" for p in result.sync_points)
        assert list((temp_dir / "tmp").rglob("*.png")) == []

    @pytest.mark.asyncio
    async def test_no_sync_point_defaults_to_zero(self, engine, recordings, project, add_clip, temp_dir: Path) -> None:
        """Without any candidate a recording is aligned at 0 with no confidence."""
        add_clip("a.mp4", silent=True)
        b = add_clip("b.mp4", silent=True)
        engine.fail_frames = {"a.mp4", "b.mp4"}
        service = SynchronizationService(recordings, engine, temp_dir, FAST)

        result = await service.synchronize(project.id)

        aligned = {entry.recording_id: entry for entry in result.aligned_videos}
        assert aligned[b.id].offset_seconds == 0.0
        assert aligned[b.id].confidence == 0.0
        assert result.confidence == 0.0
        assert not validate_sync_results(result).is_valid

    @pytest.mark.asyncio
    async def test_audio_failure_aborts(self, engine, recordings, project, add_clip, temp_dir: Path) -> None:
        """A waveform that cannot be decoded fails the whole call."""
        add_clip("a.mp4")
        add_clip("b.mp4", start=1.0)
        engine.fail_audio = {"b.mp4"}
        service = SynchronizationService(recordings, engine, temp_dir, FAST)

        with pytest.raises(SynchronizationError, match="Failed to extract audio"):
            await service.synchronize(project.id)
