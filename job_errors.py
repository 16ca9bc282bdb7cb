from typing import Any, Dict, Optional


class JobServiceError(Exception):
    """Base class for failures reported to clients with a machine-readable kind."""

    status_code = 500
    title = "Server error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.title
        self.details = details
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.title, "kind": self.kind, "message": self.message}
        payload.update({key: value for key, value in self.details.items() if value is not None})
        return payload


class ValidationError(JobServiceError):
    """Raised when an upload or spec is rejected before any job state exists."""

    status_code = 400
    title = "Invalid request"


class NoFilesError(ValidationError):
    title = "No files uploaded"


class TooManyFilesError(ValidationError):
    title = "Too many files"


class FileTooLargeError(ValidationError):
    status_code = 413
    title = "File too large"


class InvalidSpecJSON(ValidationError):
    title = "spec.json is not valid JSON"


class MissingReferencedFile(ValidationError):
    title = "Spec references a file that was not uploaded"


class InvalidLayerImage(ValidationError):
    title = "Uploaded layer is not a readable image"


class Unauthorized(JobServiceError):
    status_code = 401
    title = "Unauthorized"


class UnknownJob(JobServiceError):
    status_code = 404
    title = "Not found"


class ArtifactNotFound(JobServiceError):
    status_code = 404
    title = "Not found"


class StorageError(JobServiceError):
    """Raised when a job directory cannot be created."""

    title = "Storage error"


class JobAlreadySubmitted(JobServiceError):
    status_code = 409
    title = "Job already queued or running"


class JobNotCancelable(JobServiceError):
    status_code = 409
    title = "Job already finished"


class RenderError(JobServiceError):
    """Render-phase failure; recorded on the job instead of raised through requests."""

    title = "Renderer failed"


class SpawnError(RenderError):
    title = "Renderer failed to start"


class RenderTimeout(RenderError):
    title = "Renderer timed out"


class RenderExitError(RenderError):
    title = "Renderer failed"


class IncompleteOutputError(RenderError):
    title = "Renderer finished without producing outputs"


class RenderInterrupted(RenderError):
    title = "Render interrupted by a service restart"


class InternalError(RenderError):
    title = "Unexpected error while rendering"


RENDER_ERROR_TITLES = {
    cls.__name__: cls.title
    for cls in (SpawnError, RenderTimeout, RenderExitError, IncompleteOutputError, RenderInterrupted, InternalError)
}
