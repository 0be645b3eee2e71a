"""Pydantic models defining the CrowdCut data schema.

Attributes are snake_case in Python. ``to_wire()`` produces the camelCase
JSON shape consumed by the API layer, with unset optional fields omitted.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class WireModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Export to the camelCase wire format."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# Projects and recordings
# ---------------------------------------------------------------------------


class ProjectStatus(str, Enum):
    """Lifecycle of a project."""

    UPLOADING = "uploading"
    PROCESSING = "processing"
    SYNCING = "syncing"
    ANALYZING = "analyzing"
    STITCHING = "stitching"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class Project(WireModel):
    """A set of recordings of one event."""

    id: str = Field(default_factory=new_id, description="Project identifier")
    name: str = Field(default="", description="Display name")
    status: ProjectStatus = Field(default=ProjectStatus.UPLOADING)
    final_video_path: str | None = Field(
        default=None, description="Path of the last successfully stitched output"
    )
    created_at: datetime = Field(default_factory=utc_now)


class Recording(WireModel):
    """A contributor-uploaded source clip."""

    id: str = Field(default_factory=new_id, description="Recording identifier")
    project_id: str = Field(..., description="Owning project")
    file_path: str = Field(..., description="Path of the uploaded file")
    duration: float = Field(..., ge=0, description="Duration in seconds")
    uploaded_at: datetime = Field(default_factory=utc_now)
    has_audio: bool = Field(default=True, description="Whether the clip has an audio track")
    processed_path: str | None = Field(
        default=None, description="Standardized copy written by the processing stage"
    )
    sync_offset: float | None = Field(
        default=None, description="Seconds relative to the reference recording"
    )
    sync_confidence: float | None = Field(default=None, ge=0, le=100)
    quality_score: float | None = Field(default=None, ge=0, le=100)

    @property
    def media_path(self) -> str:
        """Path analysis and rendering should read from."""
        return self.processed_path or self.file_path

    @property
    def timeline_start(self) -> float:
        """Start of this recording on the reference timeline."""
        return self.sync_offset or 0.0

    @property
    def timeline_end(self) -> float:
        """End of this recording on the reference timeline."""
        return self.timeline_start + self.duration


# ---------------------------------------------------------------------------
# Synchronization
# ---------------------------------------------------------------------------

SyncMethod = Literal["audio", "visual", "hybrid"]


class SyncPoint(WireModel):
    """A candidate alignment between the reference and one recording."""

    recording_id: str
    offset_seconds: float
    confidence: float = Field(..., ge=0, le=100)
    method: Literal["audio", "visual"]


class AlignedRecording(WireModel):
    """Final offset chosen for one recording."""

    recording_id: str
    offset_seconds: float
    confidence: float = Field(..., ge=0, le=100)


class SyncResult(WireModel):
    """Outcome of synchronizing a project."""

    method: SyncMethod
    confidence: float = Field(..., ge=0, le=100)
    reference_recording_id: str
    aligned_videos: list[AlignedRecording] = Field(default_factory=list)
    sync_points: list[SyncPoint] = Field(default_factory=list)


class SyncValidation(WireModel):
    """Diagnosis of a SyncResult."""

    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------


class QualityScores(WireModel):
    """Aggregate 0-100 quality scores for one recording."""

    overall: int = Field(..., ge=0, le=100)
    stability: int = Field(..., ge=0, le=100)
    lighting: int = Field(..., ge=0, le=100)
    framing: int = Field(..., ge=0, le=100)
    clarity: int = Field(..., ge=0, le=100)
    audio_quality: int = Field(..., ge=0, le=100)


class FrameQuality(WireModel):
    """Sub-scores for one sampled frame."""

    timestamp: float = Field(..., ge=0)
    stability_score: float = Field(..., ge=0, le=100)
    lighting_score: float = Field(..., ge=0, le=100)
    framing_score: float = Field(..., ge=0, le=100)
    clarity_score: float = Field(..., ge=0, le=100)


class QualityMetrics(WireModel):
    """Full quality assessment of a recording."""

    recording_id: str
    scores: QualityScores
    per_frame: list[FrameQuality] = Field(default_factory=list)
    shake_detected: bool = False
    degraded: list[str] = Field(
        default_factory=list, description="Analyzers whose score was substituted"
    )


# ---------------------------------------------------------------------------
# Stitching
# ---------------------------------------------------------------------------


class TransitionType(str, Enum):
    """How a segment is entered from the previous one."""

    CUT = "cut"
    FADE = "fade"
    CROSSFADE = "crossfade"


class CameraAngle(str, Enum):
    """Coarse framing class of a shot."""

    WIDE = "wide"
    MEDIUM = "medium"
    CLOSE = "close"
    UNKNOWN = "unknown"


class Segment(WireModel):
    """A window of the output timeline sourced from one recording."""

    recording_id: str
    start_time: float = Field(..., ge=0)
    end_time: float = Field(..., ge=0)
    quality_score: float = Field(default=0.0, ge=0, le=100)
    transition_type: TransitionType = TransitionType.CUT
    camera_angle: CameraAngle = CameraAngle.UNKNOWN

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class Timeline(WireModel):
    """Ordered, gapless list of segments covering [0, total_duration)."""

    segments: list[Segment] = Field(default_factory=list)
    total_duration: float = Field(default=0.0, ge=0)

    def is_contiguous(self, tolerance: float = 1e-6) -> bool:
        """Check segments start at 0, abut each other, and end at total_duration."""
        if not self.segments:
            return self.total_duration == 0
        if abs(self.segments[0].start_time) > tolerance:
            return False
        for prev, nxt in zip(self.segments, self.segments[1:]):
            if abs(prev.end_time - nxt.start_time) > tolerance:
                return False
        return abs(self.segments[-1].end_time - self.total_duration) <= tolerance


class StitchingMetrics(WireModel):
    """Summary statistics of a stitched timeline."""

    average_quality: int = 0
    transition_count: int = 0
    camera_angle_switches: int = 0


class StitchingResult(WireModel):
    """Rendered output of the stitching stage."""

    output_path: str
    timeline: Timeline
    duration: float = Field(..., ge=0)
    file_size: int = Field(..., ge=0)
    quality_metrics: StitchingMetrics


class StitchingReadiness(WireModel):
    """Whether a project has enough data to attempt stitching."""

    ready: bool
    has_recordings: bool
    has_sync_data: bool
    has_quality_data: bool
    missing: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class WorkflowStage(str, Enum):
    """Stages of the end-to-end workflow."""

    UPLOAD = "upload"
    PROCESSING = "processing"
    SYNC = "sync"
    QUALITY = "quality"
    STITCHING = "stitching"
    COMPLETE = "complete"
    ERROR = "error"


class WorkflowProgress(WireModel):
    """Progress event emitted while a workflow runs."""

    stage: WorkflowStage
    progress: int = Field(..., ge=0, le=100)
    message: str
    error: str | None = None


class StageFlags(WireModel):
    """Which stages finished successfully."""

    upload: bool = False
    processing: bool = False
    sync: bool = False
    quality: bool = False
    stitching: bool = False


class WorkflowResult(WireModel):
    """Outcome of one workflow run."""

    success: bool
    project_id: str
    stages_completed: StageFlags = Field(default_factory=StageFlags)
    final_video_path: str | None = None
    sync_result: SyncResult | None = None
    quality_metrics: list[QualityMetrics] = Field(default_factory=list)
    stitching_result: StitchingResult | None = None
    error: str | None = None


class WorkflowStatus(WireModel):
    """Point-in-time status of a project's workflow."""

    stage: str
    progress: int = Field(..., ge=0, le=100)
    message: str
    error: str | None = None


# ---------------------------------------------------------------------------
# Error reports
# ---------------------------------------------------------------------------


class ErrorLevel(str, Enum):
    """Severity of an error report."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorContext(WireModel):
    """Where an error happened."""

    operation: str
    project_id: str | None = None
    recording_id: str | None = None
    job_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class ErrorReport(WireModel):
    """A recorded error, visible to the project's subscribers."""

    id: str = Field(default_factory=new_id)
    level: ErrorLevel
    message: str
    context: ErrorContext
    resolved: bool = False
