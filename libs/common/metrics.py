"""Metrics collection for the model serving service.

Provides a thin convenience wrapper around ``prometheus_client`` so the
service consistently records HTTP, inference, model lifecycle and batch-job
metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- Each collector owns its registry, so several apps can coexist in tests
- A decorator is provided for quick timing instrumentation
"""

import time
from functools import wraps
from typing import Any, Callable, Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for the serving process.

    Parameters
    - service_name: Logical name used for scoping/labels if desired
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)

    Exposes typed helpers for common events to keep label sets consistent.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        self.inference_requests = Counter(
            'ml_inference_requests_total',
            'Total ML inference requests',
            ['model_name', 'model_version'],
            registry=self.registry
        )

        self.inference_rows = Counter(
            'ml_inference_rows_total',
            'Total rows scored',
            ['model_name', 'model_version'],
            registry=self.registry
        )

        self.inference_duration = Histogram(
            'ml_inference_duration_seconds',
            'ML inference duration',
            ['model_name', 'model_version'],
            registry=self.registry
        )

        self.request_errors = Counter(
            'ml_request_errors_total',
            'Requests that ended in an error response',
            ['code'],
            registry=self.registry
        )

        self.abandoned_responses = Counter(
            'ml_abandoned_responses_total',
            'Responses dropped because the client disconnected',
            registry=self.registry
        )

        self.model_loads = Counter(
            'ml_model_loads_total',
            'Model load attempts partitioned by trigger and outcome',
            ['trigger', 'outcome'],
            registry=self.registry
        )

        self.model_info = Gauge(
            'ml_model_active',
            'Currently active model (value is always 1)',
            ['model_name', 'model_version'],
            registry=self.registry
        )

        self.batch_jobs = Counter(
            'ml_batch_jobs_total',
            'Batch prediction jobs partitioned by final status',
            ['status'],
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_inference(
        self,
        model_name: str,
        model_version: str,
        duration: float,
        rows: int = 1
    ) -> None:
        """Record ML inference metrics."""
        self.inference_requests.labels(model_name=model_name, model_version=model_version).inc()
        self.inference_rows.labels(model_name=model_name, model_version=model_version).inc(rows)
        self.inference_duration.labels(model_name=model_name, model_version=model_version).observe(duration)

    def record_error(self, code: str) -> None:
        """Record an error response by its error code."""
        self.request_errors.labels(code=code).inc()

    def record_abandoned_response(self) -> None:
        self.abandoned_responses.inc()

    def record_model_load(self, trigger: str, outcome: str) -> None:
        """Record a model load; trigger is ``startup`` or ``reload``."""
        self.model_loads.labels(trigger=trigger, outcome=outcome).inc()

    def set_active_model(self, model_name: str, model_version: str) -> None:
        """Point the active-model gauge at a single name/version pair."""
        self.model_info.clear()
        self.model_info.labels(model_name=model_name, model_version=model_version).set(1)

    def record_batch_job(self, status: str) -> None:
        self.batch_jobs.labels(status=status).inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


def measure_time(operation: str, **labels: Any) -> Callable:
    """Decorator to measure function execution time.

    Example
    >>> @measure_time("model_load", source="disk")
    ... def load(path):
    ...     ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
                duration = time.time() - start_time
                logger.info(
                    f"Operation {operation} completed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    **labels
                )
                return result
            except Exception as e:
                duration = time.time() - start_time
                logger.error(
                    f"Operation {operation} failed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    error=str(e),
                    **labels
                )
                raise
        return wrapper
    return decorator
