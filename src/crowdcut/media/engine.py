"""Media engine: probing, decoding, frame grabs and rendering.

The core talks to media only through the ``MediaEngine`` protocol. The
``FFmpegEngine`` implementation shells out to ffmpeg/ffprobe; tests supply
an in-process fake.
"""

from __future__ import annotations

import json
import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Sequence

import numpy as np
from numpy.typing import NDArray

from crowdcut.config import StitchingOptions, WorkflowOptions
from crowdcut.errors import MediaEngineError

logger = logging.getLogger(__name__)

FFMPEG_INSTALL_HINT = (
    "Please install FFmpeg:\n"
    "  Ubuntu/Debian: sudo apt install ffmpeg\n"
    "  macOS: brew install ffmpeg\n"
    "  Windows: choco install ffmpeg"
)


@dataclass
class ProbeResult:
    """Parsed ffprobe output."""

    duration: float
    width: int | None
    height: int | None
    fps: float | None
    format_name: str
    has_video: bool
    has_audio: bool
    audio_channels: int
    audio_sample_rate: int | None
    codec_name: str | None
    rotation: int = 0
    streams: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class AudioTrack:
    """Decoded mono PCM audio, float32 in [-1, 1]."""

    samples: NDArray[np.float32]
    sample_rate: int

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0


# (timestamp, image path) of one extracted frame
FrameGrab = tuple[float, Path]


@dataclass
class FilterGraph:
    """A -filter_complex graph and the labels of its final streams."""

    filter_complex: str
    video_label: str = "outv"
    audio_label: str = "outa"


@dataclass
class OutputSpec:
    """Encoding parameters for a render."""

    width: int = 1920
    height: int = 1080
    frame_rate: int = 30
    video_bitrate: str = "4000k"
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    audio_channels: int = 2
    audio_sample_rate: int = 44100
    container: str = "mp4"

    @classmethod
    def from_stitching(cls, options: StitchingOptions) -> OutputSpec:
        width, height = options.dimensions()
        return cls(
            width=width,
            height=height,
            frame_rate=options.output_frame_rate,
            video_bitrate=options.output_bitrate,
            video_codec=options.video_codec,
            audio_codec=options.audio_codec,
            audio_channels=options.audio_channels,
            audio_sample_rate=options.audio_sample_rate,
            container=options.output_format.value,
        )

    @classmethod
    def from_workflow(cls, options: WorkflowOptions) -> OutputSpec:
        width, height = options.standard_resolution.split("x")
        return cls(
            width=int(width),
            height=int(height),
            frame_rate=options.standard_frame_rate,
            video_bitrate=options.standard_bitrate,
        )


class MediaEngine(Protocol):
    """Capabilities the core needs from a media toolkit.

    Every method may raise MediaEngineError.
    """

    def probe(self, path: Path) -> ProbeResult: ...

    def extract_audio(
        self, path: Path, sample_rate: int, max_duration: float | None = None
    ) -> AudioTrack: ...

    def extract_frames(
        self,
        path: Path,
        timestamps: Sequence[float],
        output_dir: Path,
        max_width: int | None = None,
    ) -> list[FrameGrab]: ...

    def render(
        self,
        inputs: Sequence[Path],
        graph: FilterGraph,
        spec: OutputSpec,
        output_path: Path,
    ) -> Path: ...


def _number(value: Any) -> float | None:
    """ffprobe reports numbers as strings, and "N/A" when unknown."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _rate(value: str | None) -> float | None:
    """Frame rate from "30000/1001" or "29.97". A zero denominator gives 0.0."""
    if not value:
        return None
    num, _, den = str(value).partition("/")
    if not den:
        return _number(num)
    numerator, denominator = _number(num), _number(den)
    if numerator is None or denominator is None:
        return None
    return numerator / denominator if denominator else 0.0


def _rotation(stream: dict[str, Any]) -> int:
    """Display rotation in degrees, from the legacy tag or the display matrix."""
    tag = _number(stream.get("tags", {}).get("rotate"))
    if tag is not None:
        return int(tag) % 360
    for side_data in stream.get("side_data_list", []):
        value = _number(side_data.get("rotation"))
        if value is not None:
            return int(value) % 360
    return 0


def parse_probe_result(data: dict) -> ProbeResult:
    """Turn ``ffprobe -show_format -show_streams`` JSON into a ProbeResult.

    Handheld recordings are the common input, so the parser tolerates
    "N/A" durations, prefers the average frame rate of variable-rate
    streams and reports width and height as displayed after rotation.
    """
    streams = data.get("streams", [])
    container = data.get("format", {})

    first: dict[str, dict[str, Any]] = {}
    for stream in streams:
        first.setdefault(stream.get("codec_type", ""), stream)
    video = first.get("video")
    audio = first.get("audio")

    duration = _number(container.get("duration"))
    if duration is None:
        stream_durations = [_number(s.get("duration")) for s in (video, audio) if s]
        duration = max((d for d in stream_durations if d is not None), default=0.0)

    width = height = fps = codec_name = None
    rotation = 0
    if video is not None:
        width, height = video.get("width"), video.get("height")
        rotation = _rotation(video)
        if rotation in (90, 270):
            width, height = height, width
        fps = _rate(video.get("avg_frame_rate")) or _rate(video.get("r_frame_rate", "0/1"))
        codec_name = video.get("codec_name")

    sample_rate = _number(audio.get("sample_rate")) if audio is not None else None

    return ProbeResult(
        duration=duration,
        width=width,
        height=height,
        fps=fps,
        format_name=container.get("format_name", "unknown").split(",")[0],
        has_video=video is not None,
        has_audio=audio is not None,
        audio_channels=int(audio.get("channels", 0)) if audio is not None else 0,
        audio_sample_rate=int(sample_rate) if sample_rate else None,
        codec_name=codec_name,
        rotation=rotation,
        streams=streams,
    )


class FFmpegEngine:
    """MediaEngine backed by the ffmpeg and ffprobe executables."""

    def __init__(
        self,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
        probe_timeout: float = 30.0,
        decode_timeout: float = 300.0,
        render_timeout: float = 1800.0,
    ) -> None:
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.probe_timeout = probe_timeout
        self.decode_timeout = decode_timeout
        self.render_timeout = render_timeout

    def _run(
        self, cmd: list[str], timeout: float, what: str, text: bool = True
    ) -> subprocess.CompletedProcess:
        """Run a media command, mapping launch failures to MediaEngineError."""
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=text,
                timeout=timeout,
            )
        except FileNotFoundError:
            raise MediaEngineError(f"{cmd[0]} not found. {FFMPEG_INSTALL_HINT}")
        except subprocess.TimeoutExpired:
            raise MediaEngineError(f"{what} timed out after {timeout:.0f}s")

        if result.returncode != 0:
            stderr = result.stderr
            if isinstance(stderr, bytes):
                stderr = stderr.decode("utf-8", errors="replace")
            raise MediaEngineError(f"{what} failed: {stderr.strip()}")
        return result

    def probe(self, path: Path) -> ProbeResult:
        """Probe a media file.

        Raises:
            MediaEngineError: If ffprobe fails or its output is unreadable.
        """
        cmd = [
            self.ffprobe,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        start_time = time.perf_counter()
        result = self._run(cmd, self.probe_timeout, f"ffprobe of {path}")

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise MediaEngineError(f"Failed to parse ffprobe output: {e}")

        elapsed = time.perf_counter() - start_time
        logger.debug(f"Probed {Path(path).name} in {elapsed:.2f}s")
        return parse_probe_result(data)

    def extract_audio(
        self, path: Path, sample_rate: int, max_duration: float | None = None
    ) -> AudioTrack:
        """Decode the first audio stream to mono float32 PCM.

        Args:
            path: Media file.
            sample_rate: Output sample rate in Hz.
            max_duration: Only decode this many seconds from the start.

        Raises:
            MediaEngineError: If decoding fails or yields no samples.
        """
        cmd = [self.ffmpeg, "-v", "error", "-i", str(path)]
        if max_duration is not None:
            cmd.extend(["-t", f"{max_duration:.3f}"])
        cmd.extend([
            "-vn",
            "-ac", "1",
            "-ar", str(sample_rate),
            "-acodec", "pcm_s16le",
            "-f", "s16le",
            "-",
        ])

        start_time = time.perf_counter()
        result = self._run(cmd, self.decode_timeout, f"Audio extraction for {path}", text=False)

        raw = result.stdout or b""
        # s16le frames are two bytes each
        raw = raw[: len(raw) - (len(raw) % 2)]
        if not raw:
            raise MediaEngineError(f"No audio decoded from: {path}")

        samples = np.frombuffer(raw, dtype="<i2").astype(np.float32) / 32768.0
        elapsed = time.perf_counter() - start_time
        logger.info(
            f"Decoded {len(samples) / sample_rate:.1f}s of audio from "
            f"{Path(path).name} in {elapsed:.2f}s"
        )
        return AudioTrack(samples=samples, sample_rate=sample_rate)

    def extract_frames(
        self,
        path: Path,
        timestamps: Sequence[float],
        output_dir: Path,
        max_width: int | None = None,
    ) -> list[FrameGrab]:
        """Grab one JPEG per timestamp.

        Frames that fail individually are skipped.

        Raises:
            MediaEngineError: If no frame could be extracted.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        stem = Path(path).stem
        frames: list[FrameGrab] = []
        last_error: MediaEngineError | None = None

        for i, ts in enumerate(timestamps):
            out = output_dir / f"{stem}_{i:04d}.jpg"
            cmd = [self.ffmpeg, "-v", "error", "-ss", f"{ts:.3f}", "-i", str(path), "-frames:v", "1"]
            if max_width:
                cmd.extend(["-vf", f"scale='min({max_width},iw)':-2"])
            cmd.extend(["-q:v", "3", "-y", str(out)])

            try:
                self._run(cmd, self.probe_timeout, f"Frame grab at {ts:.2f}s")
            except MediaEngineError as e:
                last_error = e
                logger.warning(f"Skipping frame at {ts:.2f}s of {stem}: {e}")
                continue
            if out.exists():
                frames.append((ts, out))

        if not frames:
            detail = f": {last_error}" if last_error else ""
            raise MediaEngineError(f"No frames extracted from {path}{detail}")
        return frames

    def render(
        self,
        inputs: Sequence[Path],
        graph: FilterGraph,
        spec: OutputSpec,
        output_path: Path,
    ) -> Path:
        """Render a filter graph over the inputs into one file.

        Raises:
            MediaEngineError: If ffmpeg fails or writes nothing.
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [self.ffmpeg, "-y", "-v", "error"]
        for source in inputs:
            cmd.extend(["-i", str(source)])
        cmd.extend([
            "-filter_complex", graph.filter_complex,
            "-map", f"[{graph.video_label}]",
            "-map", f"[{graph.audio_label}]",
            "-c:v", spec.video_codec,
            "-b:v", spec.video_bitrate,
            "-r", str(spec.frame_rate),
            "-c:a", spec.audio_codec,
            "-ac", str(spec.audio_channels),
            "-ar", str(spec.audio_sample_rate),
        ])
        if spec.container == "mp4":
            cmd.extend(["-movflags", "+faststart"])
        cmd.append(str(output_path))

        logger.info(f"Rendering {len(inputs)} input(s) -> {output_path.name}")
        start_time = time.perf_counter()
        self._run(cmd, self.render_timeout, f"Render of {output_path.name}")

        if not output_path.exists():
            raise MediaEngineError(f"Render produced no output: {output_path}")

        elapsed = time.perf_counter() - start_time
        logger.info(f"Rendered {output_path.name} in {elapsed:.2f}s")
        return output_path
