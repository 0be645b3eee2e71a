"""Configuration and settings for CrowdCut pipelines."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class OutputFormat(str, Enum):
    """Container formats the stitcher can write."""

    MP4 = "mp4"
    WEBM = "webm"
    AVI = "avi"


class QueueOptions(BaseModel):
    """Options for the job scheduler."""

    tick_interval: float = Field(
        default=1.0, gt=0, description="Seconds between scheduler ticks"
    )


class SyncOptions(BaseModel):
    """Options for audio/visual synchronization."""

    sample_rate: int = Field(
        default=16000, gt=0, description="Mono PCM sample rate used for correlation"
    )
    max_offset_seconds: float = Field(
        default=10.0, gt=0, description="Largest offset searched in either direction"
    )
    offset_step_seconds: float = Field(
        default=0.02, gt=0, description="Coarse step between tested offsets"
    )
    correlation_window_seconds: float = Field(
        default=30.0, gt=0, description="Maximum audio compared at each offset"
    )
    sample_stride: int = Field(
        default=64, ge=1, description="Sub-sampling stride inside the correlation window"
    )
    min_overlap_fraction: float = Field(
        default=0.25,
        ge=0,
        le=1,
        description="Minimum overlap, as a fraction of the window, for an offset to count",
    )
    correlation_threshold: float = Field(
        default=0.1, ge=0, le=1, description="Minimum correlation for a candidate sync point"
    )
    max_candidates_per_pair: int = Field(
        default=5, ge=1, description="Audio candidates kept per recording pair"
    )
    audio_confidence_threshold: float = Field(
        default=50.0, ge=0, le=100, description="Below this, the visual fallback runs"
    )
    visual_similarity_threshold: float = Field(
        default=0.7, ge=0, le=1, description="Minimum cosine similarity for a visual match"
    )
    max_visual_candidates: int = Field(
        default=3, ge=1, description="Visual candidates kept per recording pair"
    )
    visual_sample_interval: float = Field(
        default=1.0, gt=0, description="Seconds between visual feature samples"
    )
    max_visual_frames: int = Field(
        default=60, ge=1, description="Maximum frames sampled per recording for visual sync"
    )


class QualityOptions(BaseModel):
    """Options for per-recording quality assessment."""

    sample_frame_count: int = Field(
        default=30, ge=1, description="Maximum number of frames sampled"
    )
    analysis_interval: float = Field(
        default=2.0, gt=0, description="Seconds between sampled frames"
    )
    enable_stability: bool = Field(default=True, description="Run the motion analyzer")
    enable_lighting: bool = Field(default=True, description="Run the lighting analyzer")
    enable_framing: bool = Field(default=True, description="Run the framing analyzer")
    enable_clarity: bool = Field(default=True, description="Run the clarity analyzer")
    audio_quality_baseline: float = Field(
        default=75.0,
        ge=0,
        le=100,
        description="Audio score used when no audio analyzer is supplied",
    )
    neutral_score: float = Field(
        default=50.0, ge=0, le=100, description="Score substituted for a failed analyzer"
    )
    frame_max_width: int = Field(
        default=320, ge=16, description="Frames are downscaled to this width before analysis"
    )


class StitchingOptions(BaseModel):
    """Options for timeline construction and rendering."""

    transition_duration: float = Field(
        default=0.5, ge=0, description="Fade/crossfade length in seconds"
    )
    min_segment_duration: float = Field(
        default=2.0, gt=0, description="Length of each timeline window in seconds"
    )
    enable_smart_transitions: bool = Field(
        default=True, description="Assign fades/crossfades instead of hard cuts"
    )
    enable_camera_angle_switching: bool = Field(
        default=True, description="Prefer a different camera angle at each cut"
    )
    angle_sample_interval: float = Field(
        default=5.0, gt=0, description="Seconds between frames sampled for angle votes"
    )
    output_format: OutputFormat = Field(
        default=OutputFormat.MP4, description="Output container format"
    )
    output_resolution: str = Field(
        default="1920x1080", pattern=r"^\d+x\d+$", description="Output 'WIDTHxHEIGHT'"
    )
    output_bitrate: str = Field(default="4000k", description="Output video bitrate")
    output_frame_rate: int = Field(default=30, gt=0, description="Output frame rate")
    video_codec: str = Field(default="libx264", description="Output video codec")
    audio_codec: str = Field(default="aac", description="Output audio codec")
    audio_channels: int = Field(default=2, ge=1, description="Output audio channels")
    audio_sample_rate: int = Field(default=44100, gt=0, description="Output audio rate")

    def dimensions(self) -> tuple[int, int]:
        """Return the output resolution as (width, height)."""
        width, height = self.output_resolution.split("x")
        return int(width), int(height)


class WorkflowOptions(BaseModel):
    """Options for the end-to-end workflow."""

    standardize: bool = Field(
        default=True, description="Transcode every upload to a common format first"
    )
    max_parallel_media_tasks: int = Field(
        default=4, ge=1, description="Concurrent per-recording media tasks within a stage"
    )
    standard_resolution: str = Field(
        default="1920x1080", pattern=r"^\d+x\d+$", description="Standardized resolution"
    )
    standard_bitrate: str = Field(default="2000k", description="Standardized video bitrate")
    standard_frame_rate: int = Field(default=30, gt=0, description="Standardized frame rate")


class CleanupOptions(BaseModel):
    """Options for sweeping scratch files and finished jobs."""

    temp_file_max_age_hours: float = Field(
        default=24.0, ge=0, description="Scratch entries older than this are removed"
    )
    job_max_age_hours: float = Field(
        default=24.0, ge=0, description="Finished jobs older than this are forgotten"
    )
    dry_run: bool = Field(default=False, description="Report what would be removed only")


class PipelineConfig(BaseModel):
    """Configuration for a CrowdCut pipeline."""

    work_dir: str | None = Field(
        default=None,
        description="Directory for frames, audio and renders. Falls back to CROWDCUT_WORK_DIR.",
    )
    ffmpeg_binary: str | None = Field(
        default=None, description="ffmpeg executable. Falls back to CROWDCUT_FFMPEG."
    )
    ffprobe_binary: str | None = Field(
        default=None, description="ffprobe executable. Falls back to CROWDCUT_FFPROBE."
    )
    media_timeout: float = Field(
        default=1800.0, gt=0, description="Timeout in seconds for a single render"
    )
    queue: QueueOptions = Field(default_factory=QueueOptions, description="Scheduler options")
    sync: SyncOptions = Field(default_factory=SyncOptions, description="Sync options")
    quality: QualityOptions = Field(
        default_factory=QualityOptions, description="Quality options"
    )
    stitching: StitchingOptions = Field(
        default_factory=StitchingOptions, description="Stitching options"
    )
    workflow: WorkflowOptions = Field(
        default_factory=WorkflowOptions, description="Workflow options"
    )
    cleanup: CleanupOptions = Field(
        default_factory=CleanupOptions, description="Cleanup options"
    )

    def get_work_dir(self) -> Path:
        """Get the working directory, creating it if needed."""
        path = Path(
            self.work_dir or os.environ.get("CROWDCUT_WORK_DIR", "./crowdcut_output")
        )
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_ffmpeg(self) -> str:
        """Get the ffmpeg executable from config or environment."""
        if self.ffmpeg_binary is not None:
            return self.ffmpeg_binary
        return os.environ.get("CROWDCUT_FFMPEG", "ffmpeg")

    def get_ffprobe(self) -> str:
        """Get the ffprobe executable from config or environment."""
        if self.ffprobe_binary is not None:
            return self.ffprobe_binary
        return os.environ.get("CROWDCUT_FFPROBE", "ffprobe")
