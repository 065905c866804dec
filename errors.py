"""Error taxonomy shared by the scheduler, query engine and HTTP layer."""

from typing import Optional

GENERIC_QUERY_FAILURE = "Failed to process your question. Please try again."


class AppError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(AppError):
    """User-fixable bad input."""

    status_code = 400
    code = "VALIDATION_ERROR"


class ProjectNotIndexedError(ValidationError):
    """The project exists but has no stored embeddings yet."""

    code = "PROJECT_NOT_INDEXED"

    def __init__(self, project_id: str):
        super().__init__(
            "This project has not been indexed yet. "
            "Please wait for the indexing to complete."
        )
        self.project_id = project_id


class NotFoundError(AppError):
    """Unknown (or unauthorized) project or job."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class UpstreamError(AppError):
    """Embedding or generation provider failure."""

    status_code = 502
    code = "UPSTREAM_ERROR"


class QueryFailedError(AppError):
    """Generic failure surfaced to the caller of a query.

    The underlying cause is kept as ``__cause__`` for logs and metrics only.
    """

    code = "QUERY_FAILED"

    def __init__(self):
        super().__init__(GENERIC_QUERY_FAILURE)

