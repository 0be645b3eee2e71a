"""Job records and typed job outcomes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import Field

from crowdcut.models.schema import (
    QualityMetrics,
    StitchingResult,
    SyncResult,
    SyncValidation,
    WireModel,
    new_id,
    utc_now,
)


class JobType(str, Enum):
    """Kinds of long-running work the queue executes."""

    SYNC = "sync"
    QUALITY_ANALYSIS = "quality_analysis"
    STITCHING = "stitching"


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class SyncOutcome(WireModel):
    """Result of a sync job."""

    kind: Literal["sync"] = "sync"
    summary: str
    sync_result: SyncResult
    validation: SyncValidation


class QualityOutcome(WireModel):
    """Result of a quality analysis job."""

    kind: Literal["quality_analysis"] = "quality_analysis"
    summary: str
    metrics: list[QualityMetrics] = Field(default_factory=list)
    failed_recordings: list[str] = Field(
        default_factory=list, description="Recordings that fell back to the neutral score"
    )
    ranking: list[str] = Field(
        default_factory=list, description="Recording ids, best first"
    )


class StitchingOutcome(WireModel):
    """Result of a stitching job."""

    kind: Literal["stitching"] = "stitching"
    summary: str
    stitching_result: StitchingResult


JobOutcome = Annotated[
    Union[SyncOutcome, QualityOutcome, StitchingOutcome],
    Field(discriminator="kind"),
]


class Job(WireModel):
    """A unit of long-running work owned by the JobQueue."""

    id: str = Field(default_factory=new_id)
    project_id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    priority: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result: JobOutcome | None = None
    retry_of: str | None = Field(
        default=None, description="Id of the failed job this one retries"
    )
    options: dict[str, Any] | None = None


class QueueStats(WireModel):
    """Job counts by status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed + self.cancelled
