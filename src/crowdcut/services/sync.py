"""Time synchronization of a project's recordings.

The first recording (by upload time) is the reference. Every other
recording gets an offset: the position on the reference timeline where its
first sample plays. Offsets come from audio cross-correlation, with a
visual-feature fallback when audio confidence is low.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Sequence

import numpy as np
from numpy.typing import NDArray

from crowdcut.analysis.features import (
    FeatureExtractor,
    HistogramFeatureExtractor,
    cosine_similarity,
)
from crowdcut.analysis.frames import sample_frames
from crowdcut.config import SyncOptions
from crowdcut.errors import MediaEngineError, SynchronizationError, ValidationError
from crowdcut.media.engine import MediaEngine
from crowdcut.models.schema import (
    AlignedRecording,
    Recording,
    SyncMethod,
    SyncPoint,
    SyncResult,
    SyncValidation,
)
from crowdcut.store.memory import RecordingStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

VALID_CONFIDENCE = 30.0
GOOD_CONFIDENCE = 60.0
ALIGNED_CONFIDENCE = 20.0


def cross_correlate(
    reference: NDArray[np.floating],
    comparison: NDArray[np.floating],
    sample_rate: int,
    options: SyncOptions,
) -> list[tuple[float, float]]:
    """Normalized correlation of two waveforms at each tested offset.

    An offset of ``k`` seconds pairs ``reference[t + k]`` with
    ``comparison[t]``, so a positive offset means the comparison started
    recording ``k`` seconds after the reference. Offsets are integer
    multiples of the step and span ``+/- max_offset_seconds``.

    Args:
        reference: Reference waveform.
        comparison: Waveform to align.
        sample_rate: Shared sample rate of both waveforms.
        options: Window, step and sub-sampling settings.

    Returns:
        ``(offset_seconds, correlation)`` pairs in ascending offset order.
        Offsets whose overlap is too short are omitted.
    """
    step = max(1, round(options.offset_step_seconds * sample_rate))
    max_steps = int(options.max_offset_seconds * sample_rate) // step
    window = min(
        int(options.correlation_window_seconds * sample_rate),
        len(reference),
        len(comparison),
    )
    stride = options.sample_stride
    min_overlap = max(stride * 4, int(window * options.min_overlap_fraction))

    results: list[tuple[float, float]] = []
    for k in range(-max_steps, max_steps + 1):
        lag = k * step
        if lag >= 0:
            a = reference[lag : lag + window]
            b = comparison[:window]
        else:
            a = reference[:window]
            b = comparison[-lag : -lag + window]

        n = min(len(a), len(b))
        if n < min_overlap:
            continue

        a = a[:n:stride]
        b = b[:n:stride]
        norm = float(np.linalg.norm(a) * np.linalg.norm(b))
        correlation = float(np.dot(a, b)) / norm if norm > 0 else 0.0
        results.append((lag / sample_rate, correlation))

    return results


def find_sync_candidates(
    correlations: Sequence[tuple[float, float]],
    recording_id: str,
    threshold: float,
    max_candidates: int,
) -> list[SyncPoint]:
    """Local correlation maxima above threshold, strongest first."""
    peaks: list[SyncPoint] = []
    for i in range(1, len(correlations) - 1):
        offset, value = correlations[i]
        if (
            value > threshold
            and value > correlations[i - 1][1]
            and value > correlations[i + 1][1]
        ):
            peaks.append(
                SyncPoint(
                    recording_id=recording_id,
                    offset_seconds=round(offset, 4),
                    confidence=min(value * 100.0, 100.0),
                    method="audio",
                )
            )
    peaks.sort(key=lambda p: p.confidence, reverse=True)
    return peaks[:max_candidates]


def compare_visual_features(
    reference: Sequence[tuple[float, NDArray[np.floating]]],
    comparison: Sequence[tuple[float, NDArray[np.floating]]],
    recording_id: str,
    options: SyncOptions,
) -> list[SyncPoint]:
    """Match per-second feature vectors between two recordings.

    A match between reference time ``t_ref`` and comparison time ``t_cmp``
    implies an offset of ``t_ref - t_cmp``. Only the best similarity per
    offset is kept.
    """
    best: dict[float, float] = {}
    for t_ref, ref_vec in reference:
        for t_cmp, cmp_vec in comparison:
            offset = round(t_ref - t_cmp, 3)
            if abs(offset) > options.max_offset_seconds:
                continue
            similarity = cosine_similarity(ref_vec, cmp_vec)
            if similarity > options.visual_similarity_threshold and similarity > best.get(offset, 0.0):
                best[offset] = similarity

    ranked = sorted(best.items(), key=lambda item: item[1], reverse=True)
    return [
        SyncPoint(
            recording_id=recording_id,
            offset_seconds=offset,
            confidence=min(similarity * 100.0, 100.0),
            method="visual",
        )
        for offset, similarity in ranked[: options.max_visual_candidates]
    ]


def overall_confidence(points: Sequence[SyncPoint]) -> float:
    """Average candidate confidence plus a corroboration bonus, capped at 100."""
    if not points:
        return 0.0
    average = sum(p.confidence for p in points) / len(points)
    bonus = min(len(points) * 5, 20) if len(points) > 1 else 0
    return float(min(100.0, average + bonus))


def _average(points: Sequence[SyncPoint]) -> float:
    return sum(p.confidence for p in points) / len(points) if points else 0.0


def select_method(
    audio_points: Sequence[SyncPoint],
    visual_points: Sequence[SyncPoint],
    audio_threshold: float = 50.0,
) -> SyncMethod:
    """Name the signal the alignment rests on.

    Confident audio wins outright. Weak audio with only visual matches is
    visual; anything else, including no usable signal at all, is hybrid.
    """
    if audio_points and _average(audio_points) >= audio_threshold:
        return "audio"
    if visual_points and not audio_points:
        return "visual"
    return "hybrid"


def validate_sync_results(result: SyncResult) -> SyncValidation:
    """Diagnose a SyncResult for stitching readiness.

    Confidence below 30 is invalid, below 60 a warning. Recordings aligned
    with confidence below 20 are reported as unreliable; the result is
    invalid if half or more of them are.
    """
    issues: list[str] = []
    recommendations: list[str] = []

    if result.confidence < VALID_CONFIDENCE:
        issues.append("Very low synchronization confidence")
        recommendations.append(
            "Consider manual synchronization or check that the videos are from the same event"
        )
    elif result.confidence < GOOD_CONFIDENCE:
        issues.append("Moderate synchronization confidence")
        recommendations.append("Review synchronization results before stitching")

    unaligned = [a for a in result.aligned_videos if a.confidence < ALIGNED_CONFIDENCE]
    if unaligned:
        issues.append(f"{len(unaligned)} videos could not be reliably synchronized")
        recommendations.append(
            "Check that all videos contain overlapping audio from the same event"
        )

    if result.method == "visual":
        recommendations.append("Visual synchronization was used; manual verification recommended")

    is_valid = (
        result.confidence >= VALID_CONFIDENCE
        and len(unaligned) < len(result.aligned_videos) / 2
    )
    return SyncValidation(is_valid=is_valid, issues=issues, recommendations=recommendations)


class SynchronizationService:
    """Computes and persists per-recording sync offsets."""

    def __init__(
        self,
        recordings: RecordingStore,
        engine: MediaEngine,
        work_dir: Path,
        options: SyncOptions | None = None,
        feature_extractor: FeatureExtractor | None = None,
    ) -> None:
        self.recordings = recordings
        self.engine = engine
        self.work_dir = Path(work_dir)
        self.options = options or SyncOptions()
        self.feature_extractor = feature_extractor or HistogramFeatureExtractor()

    async def synchronize(
        self, project_id: str, progress: ProgressCallback | None = None
    ) -> SyncResult:
        """Synchronize every recording of a project against the reference.

        Args:
            project_id: Project to synchronize.
            progress: Optional callback receiving 0-100 progress.

        Returns:
            SyncResult with one aligned entry per recording, reference first.

        Raises:
            ValidationError: If the project has fewer than two recordings.
            SynchronizationError: If any waveform cannot be extracted.
        """
        recordings = self.recordings.find_by_project_id(project_id)
        if len(recordings) < 2:
            raise ValidationError("At least 2 videos are required for synchronization")

        start_time = time.perf_counter()
        report = progress or (lambda _: None)
        reference, others = recordings[0], recordings[1:]
        logger.info(
            f"Synchronizing {len(others)} recording(s) against reference {reference.id}"
        )

        ref_audio = await self._waveform(reference)
        report(10)

        audio_points: dict[str, list[SyncPoint]] = {}
        for i, recording in enumerate(others):
            samples = await self._waveform(recording)
            correlations = await asyncio.to_thread(
                cross_correlate, ref_audio, samples, self.options.sample_rate, self.options
            )
            audio_points[recording.id] = find_sync_candidates(
                correlations,
                recording.id,
                self.options.correlation_threshold,
                self.options.max_candidates_per_pair,
            )
            report(10 + 60 * (i + 1) / len(others))

        all_audio = [p for points in audio_points.values() for p in points]
        audio_confidence = _average(all_audio)

        visual_points: dict[str, list[SyncPoint]] = {}
        if audio_confidence < self.options.audio_confidence_threshold:
            logger.info(
                f"Audio sync confidence {audio_confidence:.1f} below "
                f"{self.options.audio_confidence_threshold:.0f}, trying visual sync"
            )
            visual_points = await self._visual_fallback(reference, others, audio_points)
        report(85)

        all_visual = [p for points in visual_points.values() for p in points]
        aligned = [
            AlignedRecording(recording_id=reference.id, offset_seconds=0.0, confidence=100.0)
        ]
        for recording in others:
            candidates = audio_points.get(recording.id, []) + visual_points.get(recording.id, [])
            best = max(candidates, key=lambda p: p.confidence, default=None)
            if best is None:
                logger.warning(f"No sync point found for recording {recording.id}")
            aligned.append(
                AlignedRecording(
                    recording_id=recording.id,
                    offset_seconds=best.offset_seconds if best else 0.0,
                    confidence=best.confidence if best else 0.0,
                )
            )

        result = SyncResult(
            method=select_method(
                all_audio, all_visual, self.options.audio_confidence_threshold
            ),
            confidence=round(overall_confidence(all_audio + all_visual), 2),
            reference_recording_id=reference.id,
            aligned_videos=aligned,
            sync_points=all_audio + all_visual,
        )

        for entry in aligned:
            self.recordings.update(
                entry.recording_id,
                sync_offset=entry.offset_seconds,
                sync_confidence=entry.confidence,
            )
        report(100)

        elapsed = time.perf_counter() - start_time
        logger.info(
            f"Synchronization complete in {elapsed:.2f}s "
            f"(method={result.method}, confidence={result.confidence:.1f})"
        )
        return result

    async def _waveform(self, recording: Recording) -> NDArray[np.float32]:
        max_duration = self.options.correlation_window_seconds + self.options.max_offset_seconds
        try:
            track = await asyncio.to_thread(
                self.engine.extract_audio,
                Path(recording.media_path),
                self.options.sample_rate,
                max_duration,
            )
        except MediaEngineError as e:
            raise SynchronizationError(
                f"Failed to extract audio from recording {recording.id}: {e}"
            ) from e

        samples = track.samples
        if track.sample_rate != self.options.sample_rate:
            raise SynchronizationError(
                f"Recording {recording.id} decoded at {track.sample_rate} Hz, "
                f"expected {self.options.sample_rate} Hz"
            )
        return samples

    async def _visual_fallback(
        self,
        reference: Recording,
        others: Sequence[Recording],
        audio_points: dict[str, list[SyncPoint]],
    ) -> dict[str, list[SyncPoint]]:
        """Visual candidates for recordings whose audio match is weak.

        Frame extraction problems only disable the fallback; audio results
        stand on their own.
        """
        weak = [
            r
            for r in others
            if _average(audio_points.get(r.id, [])) < self.options.audio_confidence_threshold
        ]
        try:
            ref_features = await self._features(reference)
        except MediaEngineError as e:
            logger.warning(f"Visual sync unavailable for reference {reference.id}: {e}")
            return {}

        found: dict[str, list[SyncPoint]] = {}
        for recording in weak:
            try:
                features = await self._features(recording)
            except MediaEngineError as e:
                logger.warning(f"Visual sync unavailable for recording {recording.id}: {e}")
                continue
            points = await asyncio.to_thread(
                compare_visual_features, ref_features, features, recording.id, self.options
            )
            if points:
                found[recording.id] = points
        return found

    async def _features(
        self, recording: Recording
    ) -> list[tuple[float, NDArray[np.float32]]]:
        interval = self.options.visual_sample_interval
        count = min(self.options.max_visual_frames, max(1, int(recording.duration / interval)))
        timestamps = [i * interval for i in range(count)]
        frames = await asyncio.to_thread(
            sample_frames,
            self.engine,
            Path(recording.media_path),
            timestamps,
            self.work_dir,
            "sync",
            recording.id,
            160,
        )
        return [(f.timestamp, self.feature_extractor.extract(f)) for f in frames]
