"""Exception hierarchy shared by every CrowdCut stage."""

from __future__ import annotations


class CrowdCutError(Exception):
    """Base class for all CrowdCut errors."""

    pass


class ValidationError(CrowdCutError):
    """A precondition was not met. Raised before any job is enqueued."""

    pass


class ProjectNotFoundError(ValidationError):
    """The requested project does not exist."""

    pass


class RecordingNotFoundError(ValidationError):
    """The requested recording does not exist."""

    pass


class JobNotFoundError(ValidationError):
    """The requested job does not exist."""

    pass


class InvalidJobStateError(ValidationError):
    """The job is not in a state that allows the requested operation."""

    pass


class JobConflictError(ValidationError):
    """A job of the same type is already pending or running for the project."""

    pass


class WorkflowAlreadyRunningError(ValidationError):
    """A workflow is already executing for the project."""

    pass


class TransientExternalError(CrowdCutError):
    """An external collaborator failed. Not retried automatically."""

    pass


class MediaEngineError(TransientExternalError):
    """Error reported by the media engine (ffmpeg/ffprobe)."""

    pass


class SynchronizationError(TransientExternalError):
    """Error during synchronization."""

    pass


class QualityAssessmentError(TransientExternalError):
    """Error during quality assessment."""

    pass


class DegradedAnalysis(CrowdCutError):
    """A single quality analyzer failed and its score was substituted."""

    def __init__(self, analyzer: str, cause: BaseException | None = None) -> None:
        self.analyzer = analyzer
        self.cause = cause
        message = f"{analyzer} analysis degraded"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class FatalRenderError(CrowdCutError):
    """Rendering the stitched output failed."""

    pass


class WorkflowError(CrowdCutError):
    """Error while driving a project through the workflow."""

    pass


class StageError(WorkflowError):
    """A workflow stage failed."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(message)


class WorkflowCancelledError(WorkflowError):
    """The workflow was cancelled between stages."""

    pass
