"""Error taxonomy for the model serving service.

Every request-scoped failure is a ``ServingError`` subclass carrying a stable
``code``; ``model_serving.api.encoder`` maps each class to an HTTP status.
"""

from typing import Any, Dict, Optional


class ServingError(Exception):
    """Base exception for all serving errors."""

    code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the ``error`` object of a response body."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, code={self.code!r})"


class ModelLoadError(ServingError):
    """Model artifacts are missing, malformed or failed validation.

    Fatal at start-up; on reload the previously active model is kept.
    """

    code = "model_load_error"


class ModelUnavailableError(ServingError):
    """No model is currently loaded."""

    code = "model_unavailable"

    def __init__(self, message: str = "No model is currently loaded", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class InferenceError(ServingError):
    """Input is well-formed but invalid for the model, or the model failed."""

    code = "inference_error"


class MalformedRequestError(ServingError):
    """Request body could not be parsed into a request object."""

    code = "malformed_request"


class UnsupportedRouteError(ServingError):
    """No route matches the request path and method."""

    code = "unsupported_route"

    def __init__(self, method: str, path: str):
        super().__init__(
            f"Unsupported route {method} {path}",
            details={"method": method, "path": path},
        )


class UnauthorizedError(ServingError):
    """Admin operation attempted without a valid bearer token."""

    code = "unauthorized"


class DatasetNotFoundError(ServingError):
    """Requested dataset file is not in the dataset directory."""

    code = "dataset_not_found"

    def __init__(self, dataset: str):
        super().__init__(f"Dataset {dataset!r} not found", details={"dataset": dataset})


class JobNotFoundError(ServingError):
    """Unknown batch job identifier."""

    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Batch job {job_id!r} not found", details={"job_id": job_id})
