"""Camera angle classification for cut diversity."""

from __future__ import annotations

from collections import Counter
from typing import Mapping, Protocol, Sequence

import numpy as np

from crowdcut.analysis.frames import Frame
from crowdcut.models.schema import CameraAngle


class AngleClassifier(Protocol):
    """Classifies a single frame into a coarse camera angle."""

    def classify(self, frame: Frame) -> CameraAngle: ...


class EdgeDensityAngleClassifier:
    """Classify by the share of strongly textured pixels.

    Wide shots carry many small details, so a large fraction of pixels sit
    on an edge. Close shots are dominated by a few large smooth regions.
    """

    def __init__(
        self,
        edge_threshold: float = 20.0,
        wide_density: float = 0.18,
        medium_density: float = 0.08,
        min_contrast: float = 4.0,
    ) -> None:
        self.edge_threshold = edge_threshold
        self.wide_density = wide_density
        self.medium_density = medium_density
        self.min_contrast = min_contrast

    def classify(self, frame: Frame) -> CameraAngle:
        gray = frame.gray
        if gray.shape[0] < 2 or gray.shape[1] < 2 or float(gray.std()) < self.min_contrast:
            return CameraAngle.UNKNOWN

        gy, gx = np.gradient(gray)
        density = float((np.hypot(gx, gy) > self.edge_threshold).mean())
        if density >= self.wide_density:
            return CameraAngle.WIDE
        if density >= self.medium_density:
            return CameraAngle.MEDIUM
        return CameraAngle.CLOSE


class FixedAngleClassifier:
    """Deterministic classifier keyed by the frame's recording id."""

    def __init__(
        self,
        angles: Mapping[str, CameraAngle],
        default: CameraAngle = CameraAngle.UNKNOWN,
    ) -> None:
        self.angles = dict(angles)
        self.default = default

    def classify(self, frame: Frame) -> CameraAngle:
        if frame.recording_id is None:
            return self.default
        return self.angles.get(frame.recording_id, self.default)


def majority_angle(votes: Sequence[CameraAngle]) -> CameraAngle:
    """Most frequent known angle; ties go to the angle seen first.

    Returns UNKNOWN when no frame could be classified.
    """
    known = [v for v in votes if v != CameraAngle.UNKNOWN]
    if not known:
        return CameraAngle.UNKNOWN
    return Counter(known).most_common(1)[0][0]
