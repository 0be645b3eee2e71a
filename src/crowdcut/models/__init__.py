"""Data models for CrowdCut."""

from crowdcut.models.jobs import (
    Job,
    JobOutcome,
    JobStatus,
    JobType,
    QualityOutcome,
    QueueStats,
    StitchingOutcome,
    SyncOutcome,
)
from crowdcut.models.schema import (
    AlignedRecording,
    CameraAngle,
    ErrorReport,
    FrameQuality,
    Project,
    ProjectStatus,
    QualityMetrics,
    QualityScores,
    Recording,
    Segment,
    StitchingMetrics,
    StitchingReadiness,
    StitchingResult,
    SyncPoint,
    SyncResult,
    SyncValidation,
    Timeline,
    TransitionType,
    WorkflowProgress,
    WorkflowResult,
    WorkflowStage,
)

__all__ = [
    "AlignedRecording",
    "CameraAngle",
    "ErrorReport",
    "FrameQuality",
    "Job",
    "JobOutcome",
    "JobStatus",
    "JobType",
    "Project",
    "ProjectStatus",
    "QualityMetrics",
    "QualityOutcome",
    "QualityScores",
    "QueueStats",
    "Recording",
    "Segment",
    "StitchingMetrics",
    "StitchingOutcome",
    "StitchingReadiness",
    "StitchingResult",
    "SyncOutcome",
    "SyncPoint",
    "SyncResult",
    "SyncValidation",
    "Timeline",
    "TransitionType",
    "WorkflowProgress",
    "WorkflowResult",
    "WorkflowStage",
]
