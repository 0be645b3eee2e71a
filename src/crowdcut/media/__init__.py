"""Media engine abstraction and the ffmpeg implementation."""

from crowdcut.media.engine import (
    AudioTrack,
    FFmpegEngine,
    FilterGraph,
    FrameGrab,
    MediaEngine,
    OutputSpec,
    ProbeResult,
)

__all__ = [
    "AudioTrack",
    "FFmpegEngine",
    "FilterGraph",
    "FrameGrab",
    "MediaEngine",
    "OutputSpec",
    "ProbeResult",
]
