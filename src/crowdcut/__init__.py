"""CrowdCut: merge crowd-sourced recordings of one event into a single edit."""

from crowdcut.config import (
    PipelineConfig,
    QualityOptions,
    StitchingOptions,
    SyncOptions,
    WorkflowOptions,
)
from crowdcut.errors import CrowdCutError, ValidationError
from crowdcut.models.schema import Project, Recording, WorkflowResult
from crowdcut.pipeline import Pipeline
from crowdcut.workflow import WorkflowOrchestrator

__version__ = "0.1.0"

__all__ = [
    "CrowdCutError",
    "Pipeline",
    "PipelineConfig",
    "Project",
    "QualityOptions",
    "Recording",
    "StitchingOptions",
    "SyncOptions",
    "ValidationError",
    "WorkflowOptions",
    "WorkflowOrchestrator",
    "WorkflowResult",
    "__version__",
]
