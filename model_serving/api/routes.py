"""API routes for the model serving service."""

import hmac
from enum import Enum
from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Depends, Request, Response

from libs.common.config import ModelServingConfig
from libs.common.metrics import MetricsCollector
from ..errors import UnauthorizedError
from ..runtime.model_manager import ModelManager
from .encoder import encode_result
from .schemas import BatchRequest, BatchResponse, InferenceRequest, InferenceResponse, ModelInfo

logger = structlog.get_logger("model_serving.api")

API_PREFIX = "/api/v1"

# Status written to access logs for responses nobody received
CLIENT_CLOSED_REQUEST = 499


class Route(Enum):
    """Every route the service answers; anything else is unsupported."""

    ROOT = ("GET", "/")
    HEALTH = ("GET", "/health")
    METRICS = ("GET", "/metrics")
    RELOAD = ("POST", "/reload")
    INFER = ("POST", f"{API_PREFIX}/infer")
    MODEL = ("GET", f"{API_PREFIX}/model")
    DATASETS = ("GET", f"{API_PREFIX}/datasets")
    BATCH = ("POST", f"{API_PREFIX}/batch")
    BATCH_STATUS = ("GET", f"{API_PREFIX}/batch/{{job_id}}")

    def __init__(self, method: str, path: str):
        self.method = method
        self.path = path


router = APIRouter()


def get_model_manager(request: Request) -> ModelManager:
    """Get model manager from application state."""
    return request.app.state.model_manager


def get_metrics(request: Request) -> MetricsCollector:
    """Get metrics collector from application state."""
    return request.app.state.metrics_collector


def get_config(request: Request) -> ModelServingConfig:
    return request.app.state.config


def require_admin(request: Request, config: ModelServingConfig = Depends(get_config)) -> None:
    """Check ``Authorization: Bearer <token>`` when an admin token is configured."""
    expected = config.ml_admin_token
    if not expected:
        return
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode(), expected.encode()):
        raise UnauthorizedError("A valid admin bearer token is required")


async def _client_gone(request: Request, metrics: MetricsCollector, stage: str) -> bool:
    if await request.is_disconnected():
        logger.info("Client disconnected, abandoning request", state="abandoned", stage=stage)
        metrics.record_abandoned_response()
        return True
    return False


@router.post(Route.INFER.path, response_model=InferenceResponse, response_model_exclude_none=True)
async def infer(
    payload: InferenceRequest,
    request: Request,
    model_manager: ModelManager = Depends(get_model_manager),
    metrics_collector: MetricsCollector = Depends(get_metrics),
):
    """Score a batch of rows with the active model."""
    logger.debug("Request parsed", state="parsed", rows=len(payload.inputs))
    if await _client_gone(request, metrics_collector, "before_inference"):
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    logger.debug("Request dispatched", state="dispatched")
    result = await model_manager.predict(payload.inputs, payload.return_probabilities)

    if await _client_gone(request, metrics_collector, "after_inference"):
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    return encode_result(result)


@router.get(Route.MODEL.path, response_model=ModelInfo)
async def get_model_info(model_manager: ModelManager = Depends(get_model_manager)) -> Dict[str, Any]:
    """Metadata of the active model."""
    return model_manager.describe()


@router.get(Route.DATASETS.path)
async def list_datasets(model_manager: ModelManager = Depends(get_model_manager)) -> Dict[str, List[str]]:
    """Dataset files available to batch jobs."""
    return {"datasets": model_manager.list_datasets()}


@router.post(Route.BATCH.path, response_model=BatchResponse, status_code=202)
async def start_batch(
    payload: BatchRequest,
    model_manager: ModelManager = Depends(get_model_manager),
) -> Dict[str, Any]:
    """Queue a batch prediction job over a bundled dataset."""
    return model_manager.start_batch_job(
        dataset=payload.dataset,
        target_column=payload.target_column,
        holdout_ratio=payload.holdout_ratio,
        batch_size=payload.batch_size,
        shuffle_rows=payload.shuffle,
        seed=payload.seed,
        output=payload.output,
    )


@router.get(Route.BATCH_STATUS.path)
async def get_batch_status(
    job_id: str,
    model_manager: ModelManager = Depends(get_model_manager),
) -> Dict[str, Any]:
    """Status (and results, once finished) of a batch job."""
    return model_manager.get_batch_job_status(job_id)
