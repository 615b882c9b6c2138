"""Model serving service main application."""

import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

from libs.common.config import ModelServingConfig
from libs.common.logging import bind_request_context, clear_request_context
from . import __version__
from .api.encoder import encode_error, error_status
from .api.routes import CLIENT_CLOSED_REQUEST, Route, require_admin, router as api_router
from .errors import MalformedRequestError, ServingError, UnsupportedRouteError
from .runtime.metrics import MetricsCollector
from .runtime.model_manager import ModelManager

logger = structlog.get_logger("model_serving")

SERVICE_NAME = "model-serving"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    The model is loaded before the application accepts traffic; a
    ``ModelLoadError`` here aborts start-up.
    """
    logger.info("Starting model serving service", dataset_dir=app.state.config.ml_dataset_dir)
    await app.state.model_manager.initialize()
    logger.info("Model serving service started successfully")

    yield

    logger.info("Shutting down model serving service")
    await app.state.model_manager.cleanup()
    logger.info("Model serving service shutdown complete")


def _record_error(request: Request, code: str) -> None:
    metrics = getattr(request.app.state, "metrics_collector", None)
    if metrics is not None:
        metrics.record_error(code)


async def serving_error_handler(request: Request, exc: ServingError) -> JSONResponse:
    status, code = error_status(exc)
    log = logger.error if status >= 500 else logger.warning
    log("Request failed", state="failed", error_code=code, status=status, error=exc.message)
    _record_error(request, code)
    return encode_error(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return await serving_error_handler(
        request, MalformedRequestError("Request body could not be parsed", {"errors": errors})
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
    if exc.status_code in (404, 405):
        return await serving_error_handler(request, UnsupportedRouteError(request.method, request.url.path))
    if exc.status_code == 400:
        # FastAPI wraps body read failures in a bare 400; the cause tells them apart
        if isinstance(exc.__cause__, ClientDisconnect):
            logger.info("Client disconnected while sending the body", state="abandoned")
            metrics = getattr(request.app.state, "metrics_collector", None)
            if metrics is not None:
                metrics.record_abandoned_response()
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        return await serving_error_handler(
            request, MalformedRequestError("Request body could not be parsed", {"reason": str(exc.detail)})
        )
    _record_error(request, "http_error")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": "http_error", "message": str(exc.detail), "details": {}}},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", state="failed")
    _record_error(request, error_status(exc)[1])
    return encode_error(exc)


def create_app(
    config: Optional[ModelServingConfig] = None,
    model_manager: Optional[ModelManager] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Parameters
    - config: service configuration; read from the environment when omitted
    - model_manager: pre-initialised manager (the CLI loads the model before
      binding the port); created from ``config`` when omitted
    """
    config = config or ModelServingConfig()
    metrics_collector = MetricsCollector(SERVICE_NAME)
    if model_manager is None:
        model_manager = ModelManager(config, metrics=metrics_collector)
    elif model_manager.metrics is None:
        model_manager.metrics = metrics_collector
        if model_manager.is_loaded:
            active = model_manager.snapshot()
            metrics_collector.set_active_model(active.name, active.version)
            metrics_collector.record_model_load("startup", "success")

    app = FastAPI(
        title="Model Serving Service",
        description="Serves predictions from the model bundled in the dataset directory",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.model_manager = model_manager
    app.state.metrics_collector = metrics_collector

    app.add_exception_handler(ServingError, serving_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(api_router)

    @app.middleware("http")
    async def request_lifecycle(request: Request, call_next):
        """Bind a request id, log the terminal state and record metrics."""
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        bind_request_context(request_id=request_id, method=request.method, path=request.url.path)
        logger.debug("Request received", state="received")
        start_time = time.time()
        try:
            response = await call_next(request)

            duration = time.time() - start_time
            route = request.scope.get("route")
            endpoint = getattr(route, "path", "unmatched")
            metrics_collector.record_http_request(
                method=request.method,
                endpoint=endpoint,
                status=response.status_code,
                duration=duration,
            )
            if response.status_code < 400:
                logger.info("Request completed", state="completed", status=response.status_code,
                            duration_ms=round(duration * 1000, 3))
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = str(duration)
            return response
        finally:
            clear_request_context("request_id", "method", "path")

    @app.get(Route.HEALTH.path)
    async def health_check():
        """Health check endpoint."""
        if await model_manager.health_check():
            active = model_manager.snapshot()
            return {
                "status": "healthy",
                "service": SERVICE_NAME,
                "model_name": active.name,
                "model_version": active.version,
            }
        return JSONResponse(status_code=503, content={"status": "unhealthy", "service": SERVICE_NAME})

    @app.get(Route.METRICS.path)
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=metrics_collector.get_metrics(), media_type="text/plain")

    if config.ml_reload_enabled:
        @app.post(Route.RELOAD.path, dependencies=[Depends(require_admin)])
        async def reload_model():
            """Reload the model from the dataset directory."""
            model = await model_manager.reload()
            return {
                "status": "success",
                "message": "Model reloaded",
                "model_name": model.name,
                "model_version": model.version,
            }

    @app.get(Route.ROOT.path)
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": __version__,
            "status": "running",
            "endpoints": {
                route.name.lower(): f"{route.method} {route.path}"
                for route in Route
                if route is not Route.RELOAD or config.ml_reload_enabled
            },
        }

    return app
