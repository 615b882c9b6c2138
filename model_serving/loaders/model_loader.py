"""Model store: materialize a model from the dataset directory.

A model directory holds one artifact and an optional ``metadata.json``
manifest::

    datasets/
        model.joblib | model.pkl | model.json
        metadata.json            (optional)
        *.csv / *.json / *.parquet  (datasets for batch jobs)

``ModelStore.load`` either returns a fully validated ``LoadedModel`` or raises
``ModelLoadError``; it only reads from the directory.
"""

import hashlib
import json
import pickle
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

import joblib
import numpy as np
import pandas as pd
import structlog

from libs.common.metrics import measure_time
from ..errors import ModelLoadError

logger = structlog.get_logger("model_serving.model_loader")

MANIFEST_FILE = "metadata.json"

# Probe order when the manifest does not name a format
ARTIFACT_FILES: Tuple[Tuple[str, str], ...] = (
    ("joblib", "model.joblib"),
    ("pickle", "model.pkl"),
    ("json", "model.json"),
)

TASKS = ("classification", "regression")


@dataclass(frozen=True)
class ModelMetadata:
    """Descriptive, immutable facts about a loaded model."""

    name: str
    version: str
    format: str
    task: str
    n_features: int
    feature_names: Optional[Tuple[str, ...]]
    classes: Optional[Tuple[Any, ...]]
    artifact: str
    loaded_at: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["feature_names"] = list(self.feature_names) if self.feature_names else None
        data["classes"] = list(self.classes) if self.classes is not None else None
        return data


@dataclass(frozen=True)
class LoadedModel:
    """An estimator plus its metadata; the unit swapped on reload."""

    estimator: Any
    metadata: ModelMetadata

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def version(self) -> str:
        return self.metadata.version

    @property
    def supports_probabilities(self) -> bool:
        return (
            self.metadata.task == "classification"
            and callable(getattr(self.estimator, "predict_proba", None))
        )

    def prepare(self, matrix: np.ndarray) -> Union[np.ndarray, pd.DataFrame]:
        """Shape a feature matrix the way the estimator was fitted.

        Estimators fitted on DataFrames get one back with the same columns.
        """
        if getattr(self.estimator, "feature_names_in_", None) is not None:
            return pd.DataFrame(matrix, columns=list(self.metadata.feature_names))
        return matrix


class LinearModel:
    """Dependency-free linear model stored as ``model.json``.

    ``weights`` is ``(n_features,)`` for a single output or
    ``(n_outputs, n_features)``. For classification a single output is a
    binary logistic model over ``classes`` (default ``[0, 1]``); several
    outputs are a softmax over one class per row.
    """

    def __init__(
        self,
        weights: Sequence[Any],
        bias: Union[float, Sequence[float]] = 0.0,
        task: str = "regression",
        classes: Optional[Sequence[Any]] = None,
    ):
        if task not in TASKS:
            raise ValueError(f"task must be one of {TASKS}")
        w = np.asarray(weights, dtype=float)
        if w.ndim == 1:
            w = w.reshape(1, -1)
        if w.ndim != 2 or w.shape[1] == 0:
            raise ValueError("weights must be a non-empty vector or matrix")
        b = np.broadcast_to(np.asarray(bias, dtype=float), (w.shape[0],)).copy()

        self.task = task
        self.weights = w
        self.bias = b
        self.weights.setflags(write=False)
        self.bias.setflags(write=False)
        self.n_features_in_ = w.shape[1]

        if task == "classification":
            n_classes = 2 if w.shape[0] == 1 else w.shape[0]
            labels = list(classes) if classes is not None else list(range(n_classes))
            if len(labels) != n_classes:
                raise ValueError(f"expected {n_classes} classes, got {len(labels)}")
            self.classes_ = np.asarray(labels)
        elif classes is not None:
            raise ValueError("classes only apply to classification models")

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "LinearModel":
        if not isinstance(payload, dict) or "weights" not in payload:
            raise ValueError("linear model JSON must be an object with 'weights'")
        return cls(
            weights=payload["weights"],
            bias=payload.get("bias", 0.0),
            task=payload.get("task", "regression"),
            classes=payload.get("classes"),
        )

    def _scores(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        return X @ self.weights.T + self.bias

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        if self.task != "classification":
            raise AttributeError("predict_proba is only available for classification")
        scores = self._scores(X)
        if scores.shape[1] == 1:
            p = 1.0 / (1.0 + np.exp(-scores[:, 0]))
            return np.column_stack([1.0 - p, p])
        shifted = np.exp(scores - scores.max(axis=1, keepdims=True))
        return shifted / shifted.sum(axis=1, keepdims=True)

    def predict(self, X: np.ndarray) -> np.ndarray:
        if self.task == "classification":
            return self.classes_[np.argmax(self.predict_proba(X), axis=1)]
        scores = self._scores(X)
        return scores[:, 0] if scores.shape[1] == 1 else scores


class ModelStore:
    """Loads models from a directory for the inference engine."""

    def __init__(self):
        self.loaders: Dict[str, Callable[[Path], Any]] = {
            "joblib": self._load_joblib_model,
            "pickle": self._load_pickle_model,
            "json": self._load_json_model,
        }

    @measure_time("model_load")
    def load(self, model_dir: Union[str, Path]) -> LoadedModel:
        """Load, validate and warm up the model found in ``model_dir``."""
        model_dir = Path(model_dir)
        if not model_dir.exists():
            raise ModelLoadError(f"Model directory {model_dir} does not exist", {"path": str(model_dir)})
        if not model_dir.is_dir():
            raise ModelLoadError(f"Model path {model_dir} is not a directory", {"path": str(model_dir)})

        manifest = self._read_manifest(model_dir)
        framework, artifact = self._find_artifact(model_dir, manifest.get("format"))

        try:
            estimator = self.loaders[framework](artifact)
        except Exception as e:
            raise ModelLoadError(
                f"Failed to load {artifact.name}: {e}",
                {"path": str(artifact), "format": framework},
            ) from e

        metadata = self._build_metadata(model_dir, artifact, framework, estimator, manifest)
        model = LoadedModel(estimator=estimator, metadata=metadata)
        self._warmup_model(model)

        logger.info(
            "Model loaded successfully",
            model_name=metadata.name,
            model_version=metadata.version,
            framework=framework,
            task=metadata.task,
            n_features=metadata.n_features,
            model_path=str(model_dir),
        )
        return model

    def _read_manifest(self, model_dir: Path) -> Dict[str, Any]:
        manifest_path = model_dir / MANIFEST_FILE
        if not manifest_path.exists():
            return {}
        try:
            with open(manifest_path, "r") as f:
                manifest = json.load(f)
        except (OSError, ValueError) as e:
            raise ModelLoadError(f"Malformed {MANIFEST_FILE}: {e}", {"path": str(manifest_path)}) from e
        if not isinstance(manifest, dict):
            raise ModelLoadError(f"{MANIFEST_FILE} must contain a JSON object", {"path": str(manifest_path)})
        return manifest

    def _find_artifact(self, model_dir: Path, requested: Optional[str]) -> Tuple[str, Path]:
        """Pick the artifact, honouring an explicit manifest ``format``."""
        candidates = dict(ARTIFACT_FILES)
        if requested is not None:
            if requested not in candidates:
                raise ModelLoadError(
                    f"Unsupported model format {requested!r}",
                    {"supported": sorted(candidates)},
                )
            artifact = model_dir / candidates[requested]
            if not artifact.is_file():
                raise ModelLoadError(f"Artifact {artifact.name} named by manifest is missing", {"path": str(artifact)})
            return requested, artifact

        for framework, filename in ARTIFACT_FILES:
            artifact = model_dir / filename
            if artifact.is_file():
                return framework, artifact

        raise ModelLoadError(
            f"No model artifact found in {model_dir}",
            {"path": str(model_dir), "expected": [name for _, name in ARTIFACT_FILES]},
        )

    def _load_joblib_model(self, artifact: Path) -> Any:
        return joblib.load(str(artifact))

    def _load_pickle_model(self, artifact: Path) -> Any:
        with open(artifact, "rb") as f:
            return pickle.load(f)

    def _load_json_model(self, artifact: Path) -> Any:
        with open(artifact, "r") as f:
            return LinearModel.from_dict(json.load(f))

    def _build_metadata(
        self,
        model_dir: Path,
        artifact: Path,
        framework: str,
        estimator: Any,
        manifest: Dict[str, Any],
    ) -> ModelMetadata:
        if not callable(getattr(estimator, "predict", None)):
            raise ModelLoadError(
                f"Object in {artifact.name} has no predict method",
                {"type": type(estimator).__name__},
            )

        fitted_names = getattr(estimator, "feature_names_in_", None)
        fitted_names = tuple(str(n) for n in fitted_names) if fitted_names is not None else None
        feature_names = manifest.get("feature_names")
        if feature_names is not None:
            if not isinstance(feature_names, list) or not all(isinstance(n, str) for n in feature_names):
                raise ModelLoadError("feature_names must be a list of strings")
            if len(set(feature_names)) != len(feature_names):
                raise ModelLoadError("feature_names contains duplicates")
            feature_names = tuple(feature_names)
            if fitted_names is not None and feature_names != fitted_names:
                raise ModelLoadError(
                    "feature_names disagree with the fitted estimator",
                    {"manifest": list(feature_names), "estimator": list(fitted_names)},
                )
        else:
            feature_names = fitted_names

        n_features = self._resolve_n_features(estimator, manifest, feature_names)

        task = manifest.get("task") or getattr(estimator, "task", None)
        if task is None:
            is_classifier = callable(getattr(estimator, "predict_proba", None)) or hasattr(estimator, "classes_")
            task = "classification" if is_classifier else "regression"
        elif task not in TASKS:
            raise ModelLoadError(f"Unknown task {task!r}", {"supported": list(TASKS)})

        classes = getattr(estimator, "classes_", None)
        classes = tuple(np.asarray(classes).tolist()) if classes is not None else None

        version = manifest.get("version") or self._artifact_digest(artifact)

        return ModelMetadata(
            name=str(manifest.get("name") or model_dir.resolve().name),
            version=str(version),
            format=framework,
            task=task,
            n_features=n_features,
            feature_names=feature_names,
            classes=classes,
            artifact=artifact.name,
            loaded_at=time.time(),
        )

    def _resolve_n_features(
        self,
        estimator: Any,
        manifest: Dict[str, Any],
        feature_names: Optional[Tuple[str, ...]],
    ) -> int:
        """Reconcile the feature count from estimator, manifest and names."""
        sources = {}
        fitted = getattr(estimator, "n_features_in_", None)
        if fitted is not None:
            sources["estimator"] = int(fitted)
        if manifest.get("n_features") is not None:
            declared = manifest["n_features"]
            if isinstance(declared, bool) or not isinstance(declared, int) or declared <= 0:
                raise ModelLoadError("n_features must be a positive integer")
            sources["manifest"] = declared
        if feature_names is not None:
            sources["feature_names"] = len(feature_names)

        if not sources:
            raise ModelLoadError(
                "Cannot determine the number of input features; "
                f"add n_features or feature_names to {MANIFEST_FILE}"
            )
        if len(set(sources.values())) != 1:
            raise ModelLoadError("Inconsistent number of input features", {"sources": sources})
        return next(iter(sources.values()))

    def _warmup_model(self, model: LoadedModel) -> None:
        """Run one forward pass so a broken estimator fails at load time."""
        sample = model.prepare(np.zeros((1, model.metadata.n_features)))
        try:
            model.estimator.predict(sample)
            if model.supports_probabilities:
                model.estimator.predict_proba(sample)
        except Exception as e:
            raise ModelLoadError(
                f"Model warm-up failed: {e}",
                {"model_name": model.name, "model_version": model.version},
            ) from e

    @staticmethod
    def _artifact_digest(artifact: Path) -> str:
        digest = hashlib.sha256()
        with open(artifact, "rb") as f:
            for chunk in iter(lambda: f.read(1 << 20), b""):
                digest.update(chunk)
        return digest.hexdigest()[:12]
