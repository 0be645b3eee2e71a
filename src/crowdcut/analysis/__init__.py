"""Pluggable analyzers used by the quality, sync and stitching services."""

from crowdcut.analysis.angles import (
    AngleClassifier,
    EdgeDensityAngleClassifier,
    FixedAngleClassifier,
    majority_angle,
)
from crowdcut.analysis.features import (
    AudioQualityAnalyzer,
    FeatureExtractor,
    HistogramFeatureExtractor,
    LoudnessAudioAnalyzer,
    cosine_similarity,
)
from crowdcut.analysis.frames import (
    ConstantFrameAnalyzer,
    Frame,
    FrameAnalyzer,
    PixelFrameAnalyzer,
    load_frames,
)

__all__ = [
    "AngleClassifier",
    "AudioQualityAnalyzer",
    "ConstantFrameAnalyzer",
    "EdgeDensityAngleClassifier",
    "FeatureExtractor",
    "FixedAngleClassifier",
    "Frame",
    "FrameAnalyzer",
    "HistogramFeatureExtractor",
    "LoudnessAudioAnalyzer",
    "PixelFrameAnalyzer",
    "cosine_similarity",
    "load_frames",
    "majority_angle",
]
