"""Response encoder: results and errors to JSON responses.

Every error kind maps to exactly one status code and error ``code``:

=====================  ======  ===================
error                  status  code
=====================  ======  ===================
MalformedRequestError  400     malformed_request
UnauthorizedError      401     unauthorized
UnsupportedRouteError  404     unsupported_route
DatasetNotFoundError   404     dataset_not_found
JobNotFoundError       404     job_not_found
InferenceError         422     inference_error
ModelLoadError         500     model_load_error
ModelUnavailableError  503     model_unavailable
anything else          500     internal_error
=====================  ======  ===================
"""

from typing import Any, Dict, Tuple, Type

from fastapi.responses import JSONResponse

from ..errors import (
    DatasetNotFoundError,
    InferenceError,
    JobNotFoundError,
    MalformedRequestError,
    ModelLoadError,
    ModelUnavailableError,
    ServingError,
    UnauthorizedError,
    UnsupportedRouteError,
)
from ..runtime.inference import InferenceResult

ERROR_STATUS: Dict[Type[ServingError], int] = {
    MalformedRequestError: 400,
    UnauthorizedError: 401,
    UnsupportedRouteError: 404,
    DatasetNotFoundError: 404,
    JobNotFoundError: 404,
    InferenceError: 422,
    ModelLoadError: 500,
    ModelUnavailableError: 503,
}

INTERNAL_ERROR = (500, "internal_error")


def error_status(exc: BaseException) -> Tuple[int, str]:
    """Status code and error code for ``exc``."""
    if isinstance(exc, ServingError):
        for cls in type(exc).__mro__:
            if cls in ERROR_STATUS:
                return ERROR_STATUS[cls], exc.code
    return INTERNAL_ERROR


def error_body(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, ServingError):
        return {"error": exc.to_dict()}
    return {"error": {"code": INTERNAL_ERROR[1], "message": "Internal server error", "details": {}}}


def encode_error(exc: BaseException) -> JSONResponse:
    """Serialize any exception into the error envelope."""
    status, _ = error_status(exc)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    return JSONResponse(status_code=status, content=error_body(exc), headers=headers)


def encode_result(result: InferenceResult) -> JSONResponse:
    """Serialize a successful inference result (HTTP 200)."""
    return JSONResponse(status_code=200, content=result.to_dict())
