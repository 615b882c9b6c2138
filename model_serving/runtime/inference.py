"""Inference engine: one forward pass over a validated batch of rows."""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import structlog

from ..errors import InferenceError
from ..loaders.model_loader import LoadedModel

logger = structlog.get_logger("model_serving.inference")

Row = Union[Sequence[float], Mapping[str, float]]


@dataclass(frozen=True)
class InferenceResult:
    """Output of one inference call; plain Python values only."""

    model_name: str
    model_version: str
    predictions: List[Any]
    probabilities: Optional[List[List[float]]]
    latency_ms: float

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "model_name": self.model_name,
            "model_version": self.model_version,
            "predictions": self.predictions,
            "latency_ms": self.latency_ms,
        }
        if self.probabilities is not None:
            data["probabilities"] = self.probabilities
        return data


class InferenceEngine:
    """Stateless executor shared by all requests.

    The engine never writes to the model it is handed, so any number of
    threads may call ``run`` against the same snapshot.
    """

    def __init__(self, max_batch_size: int = 256):
        self.max_batch_size = max_batch_size

    def build_matrix(self, model: LoadedModel, rows: Sequence[Row]) -> np.ndarray:
        """Validate rows against the model and stack them into a float matrix."""
        if len(rows) == 0:
            raise InferenceError("inputs must contain at least one row")
        if len(rows) > self.max_batch_size:
            raise InferenceError(
                f"batch of {len(rows)} rows exceeds the limit of {self.max_batch_size}",
                {"rows": len(rows), "max_batch_size": self.max_batch_size},
            )

        expected = model.metadata.n_features
        mapping_rows = [isinstance(row, Mapping) for row in rows]
        if any(mapping_rows) and not all(mapping_rows):
            raise InferenceError("rows must be all arrays or all objects, not a mix")

        if all(mapping_rows):
            matrix = self._matrix_from_mappings(model, rows)
        else:
            widths = {len(row) for row in rows}
            if widths != {expected}:
                raise InferenceError(
                    f"expected {expected} features per row",
                    {"expected": expected, "received": sorted(widths)},
                )
            try:
                matrix = np.asarray(rows, dtype=float)
            except (TypeError, ValueError) as e:
                raise InferenceError(f"inputs must be numeric: {e}") from e

        if not np.all(np.isfinite(matrix)):
            raise InferenceError("inputs contain NaN or infinite values")
        return matrix

    def _matrix_from_mappings(self, model: LoadedModel, rows: Sequence[Mapping[str, float]]) -> np.ndarray:
        feature_names = model.metadata.feature_names
        if feature_names is None:
            raise InferenceError("model has no feature names; send rows as arrays")

        expected = set(feature_names)
        matrix = np.empty((len(rows), len(feature_names)), dtype=float)
        for i, row in enumerate(rows):
            keys = set(row)
            if keys != expected:
                raise InferenceError(
                    f"row {i} does not match the model's features",
                    {
                        "row": i,
                        "missing": sorted(expected - keys),
                        "unexpected": sorted(keys - expected),
                    },
                )
            try:
                matrix[i] = [float(row[name]) for name in feature_names]
            except (TypeError, ValueError) as e:
                raise InferenceError(f"row {i} has a non-numeric value: {e}") from e
        return matrix

    def run(
        self,
        model: LoadedModel,
        rows: Sequence[Row],
        return_probabilities: bool = False,
    ) -> InferenceResult:
        """Score ``rows`` with ``model``.

        Raises ``InferenceError`` for input the model cannot accept and for
        any failure inside the estimator.
        """
        start = time.perf_counter()
        matrix = self.build_matrix(model, rows)

        if return_probabilities and not model.supports_probabilities:
            raise InferenceError(
                f"model {model.name} does not produce probabilities",
                {"task": model.metadata.task},
            )

        features = model.prepare(matrix)
        try:
            predictions = np.asarray(model.estimator.predict(features))
            probabilities = (
                np.asarray(model.estimator.predict_proba(features), dtype=float)
                if return_probabilities else None
            )
        except Exception as e:
            logger.warning("Estimator raised during inference", model_name=model.name, error=str(e))
            raise InferenceError(f"model failed to score inputs: {e}") from e

        if len(predictions) != len(matrix):
            raise InferenceError("model returned a different number of predictions than rows")
        if predictions.dtype.kind == "f" and not np.all(np.isfinite(predictions)):
            raise InferenceError("model produced non-finite predictions")

        latency_ms = (time.perf_counter() - start) * 1000
        return InferenceResult(
            model_name=model.name,
            model_version=model.version,
            predictions=predictions.tolist(),
            probabilities=probabilities.tolist() if probabilities is not None else None,
            latency_ms=round(latency_ms, 3),
        )
