"""Visual feature vectors for sync fallback and audio quality scoring."""

from __future__ import annotations

from typing import Protocol

import numpy as np
from numpy.typing import NDArray

from crowdcut.analysis.frames import Frame
from crowdcut.media.engine import AudioTrack


class FeatureExtractor(Protocol):
    """Turns a frame into a fixed-length feature vector."""

    def extract(self, frame: Frame) -> NDArray[np.float32]: ...


class HistogramFeatureExtractor:
    """Joint RGB histogram plus a coarse luma layout grid.

    The histogram captures the colour content of a scene and the grid
    captures where light and dark regions sit, so two cameras pointed at
    the same moment tend to land close together in cosine space.
    """

    def __init__(self, bins: int = 8, grid: int = 4) -> None:
        self.bins = bins
        self.grid = grid

    def extract(self, frame: Frame) -> NDArray[np.float32]:
        pixels = frame.pixels.reshape(-1, 3)
        quantized = (pixels.astype(np.int32) * self.bins) // 256
        index = (quantized[:, 0] * self.bins + quantized[:, 1]) * self.bins + quantized[:, 2]
        hist = np.bincount(index, minlength=self.bins**3).astype(np.float32)
        hist /= max(float(hist.sum()), 1.0)

        gray = frame.gray
        h, w = gray.shape
        layout = np.zeros((self.grid, self.grid), dtype=np.float32)
        for row in range(self.grid):
            for col in range(self.grid):
                cell = gray[
                    row * h // self.grid : (row + 1) * h // self.grid,
                    col * w // self.grid : (col + 1) * w // self.grid,
                ]
                layout[row, col] = float(cell.mean()) / 255.0 if cell.size else 0.0

        return np.concatenate([hist, layout.ravel()])


def cosine_similarity(a: NDArray[np.floating], b: NDArray[np.floating]) -> float:
    """Cosine similarity, 0.0 when either vector is all zeros."""
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


class AudioQualityAnalyzer(Protocol):
    """Scores an audio track from 0 to 100."""

    def score(self, track: AudioTrack) -> float: ...


class LoudnessAudioAnalyzer:
    """Score audio by RMS level and clipping.

    Levels inside [quiet_db, loud_db] dBFS score 100. Each dB outside that
    band costs ``db_penalty`` points and each percent of clipped samples
    costs ``clip_penalty`` points.
    """

    def __init__(
        self,
        quiet_db: float = -30.0,
        loud_db: float = -10.0,
        db_penalty: float = 3.0,
        clip_penalty: float = 10.0,
    ) -> None:
        self.quiet_db = quiet_db
        self.loud_db = loud_db
        self.db_penalty = db_penalty
        self.clip_penalty = clip_penalty

    def score(self, track: AudioTrack) -> float:
        samples = track.samples
        if samples.size == 0:
            return 0.0

        rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
        level = 20.0 * np.log10(rms) if rms > 0 else -120.0
        if level < self.quiet_db:
            score = 100.0 - (self.quiet_db - level) * self.db_penalty
        elif level > self.loud_db:
            score = 100.0 - (level - self.loud_db) * self.db_penalty
        else:
            score = 100.0

        clipped = float((np.abs(samples) >= 0.999).mean()) * 100.0
        score -= clipped * self.clip_penalty
        return float(min(100.0, max(0.0, score)))
