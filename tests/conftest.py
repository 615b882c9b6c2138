"""Shared fixtures: throwaway model directories and configurations."""

import json
from pathlib import Path

import joblib
import numpy as np
import pandas as pd
import pytest
from sklearn.linear_model import LogisticRegression

from libs.common.config import ModelServingConfig

FEATURES = ["a", "b", "c"]
WEIGHTS = [1.0, 2.0, 3.0]
BIAS = 0.5


def expected_linear(row, weights=WEIGHTS, bias=BIAS):
    """Prediction of the fixture linear model for one row."""
    return float(np.dot(row, weights) + bias)


def write_linear_model(directory: Path, weights=WEIGHTS, bias=BIAS, version="1.0", **manifest):
    """Write ``model.json`` plus a manifest into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    with open(directory / "model.json", "w") as f:
        json.dump({"weights": weights, "bias": bias, "task": "regression"}, f)
    meta = {"name": "demo", "version": version, "feature_names": FEATURES}
    meta.update(manifest)
    with open(directory / "metadata.json", "w") as f:
        json.dump(meta, f)
    return directory


class ExplodingModel:
    """Estimator whose forward pass always fails."""

    n_features_in_ = 2

    def predict(self, X):
        raise RuntimeError("boom")


class NoPredictModel:
    n_features_in_ = 2


class FeaturelessModel:
    """Has a forward pass but no way to tell its input width."""

    def predict(self, X):
        return np.zeros(len(X))


@pytest.fixture
def model_dir(tmp_path):
    """Regression model in the JSON linear format with a bundled dataset."""
    directory = write_linear_model(tmp_path / "datasets")
    rows = np.arange(30, dtype=float).reshape(10, 3)
    frame = pd.DataFrame(rows, columns=FEATURES)
    frame["target"] = [expected_linear(r) for r in rows]
    frame.to_csv(directory / "train.csv", index=False)
    return directory


@pytest.fixture
def classifier_dir(tmp_path):
    """scikit-learn logistic regression stored with joblib."""
    directory = tmp_path / "classifier"
    directory.mkdir()
    X = np.array([[0.0, 0.0], [0.2, 0.1], [1.0, 1.0], [0.9, 1.1]])
    y = np.array([0, 0, 1, 1])
    joblib.dump(LogisticRegression().fit(X, y), directory / "model.joblib")
    return directory


@pytest.fixture
def config(model_dir):
    return ModelServingConfig(ml_dataset_dir=str(model_dir), ml_log_format="console")
