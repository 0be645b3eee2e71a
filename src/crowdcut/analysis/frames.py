"""Frame loading and the pluggable per-frame quality analyzers.

A ``FrameAnalyzer`` turns a sequence of sampled frames into raw measurements
for four independent dimensions (motion, lighting, framing, clarity). The
scoring formulas that turn those measurements into 0-100 scores live in
``crowdcut.services.quality``; analyzers only measure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence

import numpy as np
from numpy.typing import NDArray
from PIL import Image, UnidentifiedImageError

from crowdcut.media.engine import FrameGrab, MediaEngine
from crowdcut.utils.scratch import scratch_dir

logger = logging.getLogger(__name__)


@dataclass
class Frame:
    """A decoded RGB frame sampled from a recording."""

    timestamp: float
    pixels: NDArray[np.uint8]
    path: Path | None = None
    recording_id: str | None = None

    @property
    def gray(self) -> NDArray[np.float32]:
        """Luma in [0, 255] (ITU-R BT.601 weights)."""
        rgb = self.pixels.astype(np.float32)
        return rgb[..., 0] * 0.299 + rgb[..., 1] * 0.587 + rgb[..., 2] * 0.114


def load_frame(
    path: Path,
    timestamp: float,
    max_width: int | None = None,
    recording_id: str | None = None,
) -> Frame:
    """Load an image file as a Frame, downscaling to max_width."""
    with Image.open(path) as img:
        img = img.convert("RGB")
        if max_width and img.width > max_width:
            height = max(1, round(img.height * max_width / img.width))
            img = img.resize((max_width, height), Image.Resampling.BILINEAR)
        pixels = np.asarray(img, dtype=np.uint8)
    return Frame(timestamp=timestamp, pixels=pixels, path=Path(path), recording_id=recording_id)


def load_frames(
    grabs: Sequence[FrameGrab],
    max_width: int | None = None,
    recording_id: str | None = None,
) -> list[Frame]:
    """Load frame images, skipping unreadable ones."""
    frames: list[Frame] = []
    for ts, path in grabs:
        try:
            frames.append(load_frame(path, ts, max_width=max_width, recording_id=recording_id))
        except (OSError, UnidentifiedImageError) as e:
            logger.warning(f"Could not read frame {path}: {e}")
    return frames


def sample_frames(
    engine: MediaEngine,
    media_path: Path,
    timestamps: Sequence[float],
    work_dir: Path,
    area: str,
    recording_id: str,
    max_width: int | None = None,
) -> list[Frame]:
    """Extract frames into scratch space and load them into memory.

    The extracted image files are deleted before returning, so the frames
    carry no ``path``.

    Raises:
        MediaEngineError: If the engine cannot extract any frame.
    """
    with scratch_dir(work_dir, area, recording_id) as output_dir:
        grabs = engine.extract_frames(Path(media_path), timestamps, output_dir, max_width)
        frames = load_frames(grabs, max_width=max_width, recording_id=recording_id)
    for frame in frames:
        frame.path = None
    return frames


# ---------------------------------------------------------------------------
# Raw measurements
# ---------------------------------------------------------------------------


@dataclass
class MotionAnalysis:
    """Frame-to-frame motion magnitudes (pixels at analysis resolution)."""

    average_motion: float
    motion_variance: float
    frame_motion: list[float] = field(default_factory=list)


@dataclass
class LightingAnalysis:
    """Lighting measurements on 0-100 scales."""

    brightness: float
    brightness_variance: float
    contrast: float
    exposure: float
    color_balance: tuple[float, float, float]
    frame_brightness: list[float] = field(default_factory=list)


@dataclass
class FramingAnalysis:
    """Framing measurements on 0-100 scales."""

    composition: float
    rule_of_thirds: float
    centering: float
    aspect_ratio: float
    subject_detected: bool
    subject_confidence: float
    frame_composition: list[float] = field(default_factory=list)


@dataclass
class ClarityAnalysis:
    """Clarity measurements; blur and noise are penalty magnitudes."""

    sharpness: float
    focus: float
    noise_level: float
    edge_strength: float
    motion_blur: float
    focus_blur: float
    frame_sharpness: list[float] = field(default_factory=list)


def default_motion_analysis(frame_count: int) -> MotionAnalysis:
    return MotionAnalysis(
        average_motion=2.5, motion_variance=0.0, frame_motion=[2.5] * frame_count
    )


def default_lighting_analysis(frame_count: int) -> LightingAnalysis:
    return LightingAnalysis(
        brightness=60.0,
        brightness_variance=10.0,
        contrast=70.0,
        exposure=70.0,
        color_balance=(50.0, 50.0, 50.0),
        frame_brightness=[60.0] * frame_count,
    )


def default_framing_analysis(frame_count: int) -> FramingAnalysis:
    return FramingAnalysis(
        composition=70.0,
        rule_of_thirds=65.0,
        centering=60.0,
        aspect_ratio=85.0,
        subject_detected=False,
        subject_confidence=0.0,
        frame_composition=[70.0] * frame_count,
    )


def default_clarity_analysis(frame_count: int) -> ClarityAnalysis:
    return ClarityAnalysis(
        sharpness=70.0,
        focus=70.0,
        noise_level=15.0,
        edge_strength=65.0,
        motion_blur=10.0,
        focus_blur=8.0,
        frame_sharpness=[70.0] * frame_count,
    )


class FrameAnalyzer(Protocol):
    """Measures quality features over a recording's sampled frames."""

    def analyze_motion(self, frames: Sequence[Frame]) -> MotionAnalysis: ...

    def analyze_lighting(self, frames: Sequence[Frame]) -> LightingAnalysis: ...

    def analyze_framing(self, frames: Sequence[Frame]) -> FramingAnalysis: ...

    def analyze_clarity(self, frames: Sequence[Frame]) -> ClarityAnalysis: ...


# ---------------------------------------------------------------------------
# numpy implementation
# ---------------------------------------------------------------------------


def _gradients(gray: NDArray[np.float32]) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
    gy, gx = np.gradient(gray)
    return gx, gy


def _laplacian(gray: NDArray[np.float32]) -> NDArray[np.float32]:
    return (
        -4.0 * gray[1:-1, 1:-1]
        + gray[:-2, 1:-1]
        + gray[2:, 1:-1]
        + gray[1:-1, :-2]
        + gray[1:-1, 2:]
    )


def _estimate_shift(a: NDArray[np.float32], b: NDArray[np.float32]) -> float:
    """Global translation between two frames via phase correlation."""
    h = min(a.shape[0], b.shape[0])
    w = min(a.shape[1], b.shape[1])
    a = a[:h, :w] - a[:h, :w].mean()
    b = b[:h, :w] - b[:h, :w].mean()

    cross = np.fft.fft2(a) * np.conj(np.fft.fft2(b))
    cross /= np.abs(cross) + 1e-9
    corr = np.fft.ifft2(cross).real

    dy, dx = np.unravel_index(int(np.argmax(corr)), corr.shape)
    if dy > h // 2:
        dy -= h
    if dx > w // 2:
        dx -= w
    return float(np.hypot(dx, dy))


def _noise_sigma(gray: NDArray[np.float32]) -> float:
    """Immerkaer's fast noise variance estimate."""
    h, w = gray.shape
    if h < 3 or w < 3:
        return 0.0
    conv = (
        gray[:-2, :-2] - 2 * gray[:-2, 1:-1] + gray[:-2, 2:]
        - 2 * gray[1:-1, :-2] + 4 * gray[1:-1, 1:-1] - 2 * gray[1:-1, 2:]
        + gray[2:, :-2] - 2 * gray[2:, 1:-1] + gray[2:, 2:]
    )
    return float(np.sqrt(np.pi / 2) * np.abs(conv).sum() / (6 * (w - 2) * (h - 2)))


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return float(min(high, max(low, value)))


class PixelFrameAnalyzer:
    """FrameAnalyzer computed directly from pixel statistics with numpy.

    Motion uses phase correlation between consecutive frames. Lighting,
    framing and clarity use luma histograms, gradient energy and the
    Laplacian.
    """

    def analyze_motion(self, frames: Sequence[Frame]) -> MotionAnalysis:
        if len(frames) < 2:
            return MotionAnalysis(average_motion=0.0, motion_variance=0.0, frame_motion=[0.0] * len(frames))

        grays = [f.gray for f in frames]
        # First frame has no predecessor
        motion = [0.0] + [_estimate_shift(a, b) for a, b in zip(grays, grays[1:])]
        diffs = np.asarray(motion[1:], dtype=np.float64)
        return MotionAnalysis(
            average_motion=float(diffs.mean()),
            motion_variance=float(diffs.var()),
            frame_motion=motion,
        )

    def analyze_lighting(self, frames: Sequence[Frame]) -> LightingAnalysis:
        if not frames:
            raise ValueError("No frames to analyze")

        brightness: list[float] = []
        contrast: list[float] = []
        exposure: list[float] = []
        channel_means = np.zeros(3, dtype=np.float64)

        for frame in frames:
            gray = frame.gray
            brightness.append(float(gray.mean()) / 255.0 * 100.0)
            # std of ~64 gray levels is full contrast
            contrast.append(_clamp(float(gray.std()) / 64.0 * 100.0))
            clipped = float(((gray < 5) | (gray > 250)).mean())
            exposure.append(_clamp(100.0 - clipped * 200.0))
            channel_means += frame.pixels.reshape(-1, 3).mean(axis=0)

        channel_means /= len(frames)
        total = float(channel_means.sum())
        if total > 0:
            balance = tuple(float(c) / total * 150.0 for c in channel_means)
        else:
            balance = (50.0, 50.0, 50.0)

        values = np.asarray(brightness)
        return LightingAnalysis(
            brightness=float(values.mean()),
            brightness_variance=float(values.var()),
            contrast=float(np.mean(contrast)),
            exposure=float(np.mean(exposure)),
            color_balance=balance,  # type: ignore[arg-type]
            frame_brightness=brightness,
        )

    def analyze_framing(self, frames: Sequence[Frame]) -> FramingAnalysis:
        if not frames:
            raise ValueError("No frames to analyze")

        thirds_scores: list[float] = []
        center_scores: list[float] = []
        composition: list[float] = []
        subject_ratios: list[float] = []
        aspect_scores: list[float] = []

        for frame in frames:
            gray = frame.gray
            h, w = gray.shape
            gx, gy = _gradients(gray)
            energy = np.hypot(gx, gy)
            total = float(energy.sum()) or 1.0

            # Centroid of gradient energy stands in for the subject position
            ys, xs = np.mgrid[0:h, 0:w]
            cy = float((energy * ys).sum()) / total / max(h - 1, 1)
            cx = float((energy * xs).sum()) / total / max(w - 1, 1)

            thirds = [(tx, ty) for tx in (1 / 3, 2 / 3) for ty in (1 / 3, 2 / 3)]
            nearest = min(np.hypot(cx - tx, cy - ty) for tx, ty in thirds)
            thirds_scores.append(_clamp(100.0 - nearest / 0.471 * 100.0))
            center_scores.append(_clamp(100.0 - np.hypot(cx - 0.5, cy - 0.5) / 0.707 * 100.0))

            # Share of detail in the middle third of the frame
            middle = energy[h // 3 : 2 * h // 3, w // 3 : 2 * w // 3].sum() / total
            composition.append(_clamp(100.0 - abs(float(middle) - 1 / 3) * 150.0))

            # Densest 8x8 block vs. the mean block
            if h >= 8 and w >= 8:
                bh, bw = h // 8, w // 8
                blocks = energy[: bh * 8, : bw * 8].reshape(8, bh, 8, bw).mean(axis=(1, 3))
                mean_block = float(blocks.mean()) or 1.0
                subject_ratios.append(float(blocks.max()) / mean_block)
            else:
                subject_ratios.append(1.0)

            ratio = w / h if h else 0.0
            aspect_scores.append(_clamp(100.0 - abs(ratio - 16 / 9) / (16 / 9) * 100.0))

        peak = float(np.mean(subject_ratios))
        detected = peak > 2.0
        return FramingAnalysis(
            composition=float(np.mean(composition)),
            rule_of_thirds=float(np.mean(thirds_scores)),
            centering=float(np.mean(center_scores)),
            aspect_ratio=float(np.mean(aspect_scores)),
            subject_detected=detected,
            subject_confidence=_clamp(peak * 25.0) if detected else 0.0,
            frame_composition=composition,
        )

    def analyze_clarity(self, frames: Sequence[Frame]) -> ClarityAnalysis:
        if not frames:
            raise ValueError("No frames to analyze")

        sharpness: list[float] = []
        focus: list[float] = []
        noise: list[float] = []
        edges: list[float] = []
        anisotropy: list[float] = []

        for frame in frames:
            gray = frame.gray
            h, w = gray.shape
            lap = _laplacian(gray) if h > 2 and w > 2 else np.zeros((1, 1), dtype=np.float32)
            sharpness.append(_clamp(float(np.sqrt(lap.var())) * 4.0))

            center = gray[h // 4 : 3 * h // 4, w // 4 : 3 * w // 4]
            if center.shape[0] > 2 and center.shape[1] > 2:
                focus.append(_clamp(float(np.sqrt(_laplacian(center).var())) * 4.0))
            else:
                focus.append(sharpness[-1])

            noise.append(_clamp(_noise_sigma(gray) * 3.0))

            gx, gy = _gradients(gray)
            edges.append(_clamp(float(np.hypot(gx, gy).mean()) * 3.0))
            ex, ey = float(np.abs(gx).sum()), float(np.abs(gy).sum())
            # Directional blur flattens gradients along one axis
            anisotropy.append(abs(ex - ey) / (ex + ey) if ex + ey > 0 else 0.0)

        sharp = float(np.mean(sharpness))
        return ClarityAnalysis(
            sharpness=sharp,
            focus=float(np.mean(focus)),
            noise_level=float(np.mean(noise)),
            edge_strength=float(np.mean(edges)),
            motion_blur=_clamp(float(np.mean(anisotropy)) * 30.0),
            focus_blur=max(0.0, (60.0 - sharp) / 3.0),
            frame_sharpness=sharpness,
        )


class ConstantFrameAnalyzer:
    """Deterministic FrameAnalyzer returning fixed measurements.

    Any dimension not supplied returns the neutral defaults. Per-frame
    lists are stretched to the number of frames analyzed.
    """

    def __init__(
        self,
        motion: MotionAnalysis | None = None,
        lighting: LightingAnalysis | None = None,
        framing: FramingAnalysis | None = None,
        clarity: ClarityAnalysis | None = None,
    ) -> None:
        self._motion = motion
        self._lighting = lighting
        self._framing = framing
        self._clarity = clarity

    def analyze_motion(self, frames: Sequence[Frame]) -> MotionAnalysis:
        if self._motion is None:
            return default_motion_analysis(len(frames))
        return MotionAnalysis(
            average_motion=self._motion.average_motion,
            motion_variance=self._motion.motion_variance,
            frame_motion=[self._motion.average_motion] * len(frames),
        )

    def analyze_lighting(self, frames: Sequence[Frame]) -> LightingAnalysis:
        if self._lighting is None:
            return default_lighting_analysis(len(frames))
        lighting = self._lighting
        return LightingAnalysis(
            brightness=lighting.brightness,
            brightness_variance=lighting.brightness_variance,
            contrast=lighting.contrast,
            exposure=lighting.exposure,
            color_balance=lighting.color_balance,
            frame_brightness=[lighting.brightness] * len(frames),
        )

    def analyze_framing(self, frames: Sequence[Frame]) -> FramingAnalysis:
        if self._framing is None:
            return default_framing_analysis(len(frames))
        framing = self._framing
        return FramingAnalysis(
            composition=framing.composition,
            rule_of_thirds=framing.rule_of_thirds,
            centering=framing.centering,
            aspect_ratio=framing.aspect_ratio,
            subject_detected=framing.subject_detected,
            subject_confidence=framing.subject_confidence,
            frame_composition=[framing.composition] * len(frames),
        )

    def analyze_clarity(self, frames: Sequence[Frame]) -> ClarityAnalysis:
        if self._clarity is None:
            return default_clarity_analysis(len(frames))
        clarity = self._clarity
        return ClarityAnalysis(
            sharpness=clarity.sharpness,
            focus=clarity.focus,
            noise_level=clarity.noise_level,
            edge_strength=clarity.edge_strength,
            motion_blur=clarity.motion_blur,
            focus_blur=clarity.focus_blur,
            frame_sharpness=[clarity.sharpness] * len(frames),
        )
