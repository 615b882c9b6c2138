"""Model manager for loading and serving the active model.

Owns the single active ``LoadedModel`` for the process, hands out immutable
snapshots to request handlers, swaps in a freshly loaded model on reload and
runs batch prediction jobs over datasets bundled in the model directory.
"""

import asyncio
import threading
import time
import uuid
from contextlib import suppress
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

import numpy as np
import pandas as pd
import structlog

from libs.common.config import ModelServingConfig
from libs.common.logging import log_performance
from libs.common.metrics import MetricsCollector
from ..errors import (
    DatasetNotFoundError,
    JobNotFoundError,
    MalformedRequestError,
    ModelLoadError,
    ModelUnavailableError,
)
from ..loaders.datasets import (
    DataLoader,
    list_datasets,
    load_dataset,
    resolve_dataset,
    resolve_output,
    save_dataset,
    shuffle,
    split_features_target,
    train_test_split,
)
from ..loaders.model_loader import LoadedModel, ModelStore
from .inference import InferenceEngine, InferenceResult, Row

logger = structlog.get_logger("model_serving.model_manager")


class ModelManager:
    """Manages the active model and serves predictions from it.

    Design
    - The active model is a reference to an immutable ``LoadedModel``;
      readers copy the reference under ``_model_lock`` and then work on that
      snapshot without holding any lock
    - Reloads are serialised by ``_reload_lock`` and load the replacement
      completely before the reference is swapped, so a request sees either
      the old model or the new one, never a mixture
    - CPU-bound work runs in worker threads to keep the event loop free
    """

    def __init__(
        self,
        config: ModelServingConfig,
        store: Optional[ModelStore] = None,
        engine: Optional[InferenceEngine] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Create a model manager.

        Parameters
        - config: ``ModelServingConfig`` with the model directory and limits
        - store: model store used for start-up and reloads
        - engine: inference engine shared by all requests
        - metrics: optional collector for load and inference metrics
        """
        self.config = config
        self.model_dir = Path(config.ml_dataset_dir)
        self.store = store or ModelStore()
        self.engine = engine or InferenceEngine(max_batch_size=config.ml_max_batch_size)
        self.metrics = metrics

        self._model: Optional[LoadedModel] = None
        self._model_lock = threading.Lock()
        self._reload_lock = asyncio.Lock()

        self.batch_jobs: Dict[str, Dict[str, Any]] = {}
        self._batch_tasks: Set[asyncio.Task] = set()

    @property
    def is_loaded(self) -> bool:
        with self._model_lock:
            return self._model is not None

    def snapshot(self) -> LoadedModel:
        """Return the active model or raise ``ModelUnavailableError``."""
        with self._model_lock:
            model = self._model
        if model is None:
            raise ModelUnavailableError()
        return model

    def _activate(self, model: LoadedModel) -> None:
        with self._model_lock:
            self._model = model
        if self.metrics:
            self.metrics.set_active_model(model.name, model.version)

    async def initialize(self) -> LoadedModel:
        """Load the model from the configured directory.

        Raises ``ModelLoadError``; the caller must not start serving then.
        Calling it again once a model is active is a no-op.
        """
        with self._model_lock:
            if self._model is not None:
                return self._model

        try:
            model = await asyncio.to_thread(self.store.load, self.model_dir)
        except ModelLoadError as e:
            if self.metrics:
                self.metrics.record_model_load("startup", "failure")
            logger.error("Failed to initialize model manager", path=str(self.model_dir), error=str(e))
            raise

        self._activate(model)
        if self.metrics:
            self.metrics.record_model_load("startup", "success")
        logger.info("Model manager initialized successfully", model_name=model.name, model_version=model.version)
        return model

    async def reload(self) -> LoadedModel:
        """Reload the model from disk and make it active.

        On failure the previously active model keeps serving and the
        ``ModelLoadError`` propagates to the caller.
        """
        async with self._reload_lock:
            previous = self._model
            try:
                model = await asyncio.to_thread(self.store.load, self.model_dir)
            except ModelLoadError as e:
                if self.metrics:
                    self.metrics.record_model_load("reload", "failure")
                logger.error(
                    "Model reload failed, keeping active model",
                    active_version=previous.version if previous else None,
                    error=str(e),
                )
                raise

            self._activate(model)
            if self.metrics:
                self.metrics.record_model_load("reload", "success")
            logger.info(
                "Model reloaded",
                model_name=model.name,
                model_version=model.version,
                previous_version=previous.version if previous else None,
            )
            return model

    async def predict(self, rows: Sequence[Row], return_probabilities: bool = False) -> InferenceResult:
        """Score ``rows`` against the current snapshot in a worker thread."""
        model = self.snapshot()
        start = time.perf_counter()
        result = await asyncio.to_thread(self.engine.run, model, rows, return_probabilities)
        if self.metrics:
            self.metrics.record_inference(
                model.name, model.version, time.perf_counter() - start, rows=len(rows)
            )
        logger.debug(
            "Prediction completed",
            model_name=model.name,
            model_version=model.version,
            input_count=len(rows),
        )
        return result

    def describe(self) -> Dict[str, Any]:
        """Metadata of the active model."""
        return self.snapshot().metadata.to_dict()

    def list_datasets(self) -> List[str]:
        return list_datasets(self.model_dir)

    def start_batch_job(
        self,
        dataset: str,
        target_column: Optional[str] = None,
        holdout_ratio: Optional[float] = None,
        batch_size: Optional[int] = None,
        shuffle_rows: bool = False,
        seed: Optional[int] = None,
        output: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Queue a batch prediction over a bundled dataset.

        The job is bound to the model snapshot active when it is queued.
        When ``output`` is given the scored rows are written to that new file
        in the dataset directory. Must be called from the event loop.
        """
        path = resolve_dataset(self.model_dir, dataset)
        if path is None:
            raise DatasetNotFoundError(dataset)
        output_path = None
        if output is not None:
            output_path = resolve_output(self.model_dir, output)
            if output_path is None:
                raise MalformedRequestError(
                    f"Cannot write batch output to {output!r}",
                    {"output": output, "reason": "must be a new .csv, .json or .parquet file name"},
                )
        model = self.snapshot()
        self._evict_finished_jobs()

        job_id = uuid.uuid4().hex
        self.batch_jobs[job_id] = {
            "job_id": job_id,
            "status": "pending",
            "dataset": dataset,
            "model_name": model.name,
            "model_version": model.version,
            "created_at": time.time(),
            "progress": 0,
        }

        task = asyncio.create_task(
            self._run_batch_job(
                job_id,
                model,
                path,
                target_column=target_column,
                holdout_ratio=holdout_ratio,
                batch_size=min(batch_size or self.config.ml_batch_job_batch_size, self.engine.max_batch_size),
                shuffle_rows=shuffle_rows,
                seed=seed,
                output_path=output_path,
            )
        )
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_tasks.discard)

        logger.info("Batch job queued", job_id=job_id, dataset=dataset)
        return dict(self.batch_jobs[job_id])

    def _evict_finished_jobs(self) -> None:
        """Drop the oldest finished jobs so a new one fits under ``ml_max_batch_jobs``.

        Pending and running jobs are never dropped.
        """
        excess = len(self.batch_jobs) - self.config.ml_max_batch_jobs + 1
        if excess <= 0:
            return
        finished = [
            job_id for job_id, job in self.batch_jobs.items()
            if job["status"] in ("completed", "failed")
        ]
        for job_id in finished[:excess]:
            del self.batch_jobs[job_id]
            logger.debug("Batch job evicted", job_id=job_id)

    async def _run_batch_job(self, job_id: str, model: LoadedModel, path: Path, **options: Any) -> None:
        job = self.batch_jobs[job_id]
        job.update({"status": "processing", "started_at": time.time()})
        try:
            outcome = await asyncio.to_thread(self._score_dataset, job, model, path, **options)
        except Exception as e:
            job.update({"status": "failed", "finished_at": time.time(), "error": str(e)})
            logger.error("Batch prediction failed", job_id=job_id, error=str(e))
        else:
            job.update(outcome)
            job.update({"status": "completed", "finished_at": time.time(), "progress": 100})
            log_performance(
                "batch_prediction",
                (job["finished_at"] - job["started_at"]) * 1000,
                job_id=job_id,
                rows=outcome["rows"],
            )
        if self.metrics:
            self.metrics.record_batch_job(job["status"])

    def _score_dataset(
        self,
        job: Dict[str, Any],
        model: LoadedModel,
        path: Path,
        target_column: Optional[str],
        holdout_ratio: Optional[float],
        batch_size: int,
        shuffle_rows: bool,
        seed: Optional[int],
        output_path: Optional[Path] = None,
    ) -> Dict[str, Any]:
        """Run in a worker thread: load, split and score one dataset."""
        frame = load_dataset(path)
        if shuffle_rows:
            frame = shuffle(frame, seed)

        target = None
        if target_column is not None:
            frame, target = split_features_target(frame, target_column)
            if holdout_ratio is not None:
                _, frame, _, target = train_test_split(frame, target, holdout_ratio)

        feature_names = model.metadata.feature_names
        as_records = feature_names is not None and set(frame.columns) == set(feature_names)

        loader = DataLoader(frame, batch_size=batch_size)
        predictions: List[Any] = [None] * len(frame)
        for done, (indices, batch) in enumerate(loader, start=1):
            rows = batch.to_dict(orient="records") if as_records else batch.to_numpy().tolist()
            result = self.engine.run(model, rows)
            for position, value in zip(indices, result.predictions):
                predictions[position] = value
            job["progress"] = int(done * 100 / len(loader))

        outcome: Dict[str, Any] = {
            "row_ids": frame.index.tolist(),
            "predictions": predictions,
            "rows": len(frame),
            "batches": len(loader),
            "loader_session": str(loader.session_id),
        }
        if target is not None and len(frame):
            outcome["score"] = self._score(model, predictions, target)
        if output_path is not None:
            scored = frame.assign(prediction=pd.Series(predictions, index=frame.index))
            if target is not None:
                scored[target.name] = target
            scored.insert(0, "row_id", frame.index)
            save_dataset(scored, output_path)
            outcome["output"] = output_path.name
        return outcome

    @staticmethod
    def _score(model: LoadedModel, predictions: List[Any], target: pd.Series) -> Dict[str, Any]:
        if model.metadata.task == "classification":
            hits = np.asarray(predictions, dtype=object) == target.to_numpy(dtype=object)
            return {"metric": "accuracy", "value": float(np.mean(hits))}
        errors = np.abs(np.asarray(predictions, dtype=float) - target.to_numpy(dtype=float))
        return {"metric": "mean_absolute_error", "value": float(np.mean(errors))}

    def get_batch_job_status(self, job_id: str) -> Dict[str, Any]:
        """Status of a batch job with its elapsed or total duration."""
        if job_id not in self.batch_jobs:
            raise JobNotFoundError(job_id)

        job = dict(self.batch_jobs[job_id])
        started = job.get("started_at")
        if started is None:
            job["duration_seconds"] = 0.0
        else:
            job["duration_seconds"] = job.get("finished_at", time.time()) - started
        return job

    async def health_check(self) -> bool:
        """Healthy once a model is active."""
        if not self.is_loaded:
            logger.warning("Health check failed, no model loaded", service="model-serving")
            return False
        return True

    async def cleanup(self) -> None:
        """Cancel outstanding batch jobs and drop the model reference."""
        for task in list(self._batch_tasks):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._batch_tasks.clear()
        self.batch_jobs.clear()
        with self._model_lock:
            self._model = None
        logger.info("Model manager cleanup completed")
