"""Tests for the model store."""

import json
import pickle

import joblib
import numpy as np
import pytest

from model_serving.errors import ModelLoadError
from model_serving.loaders.model_loader import LinearModel, ModelStore
from tests.conftest import FEATURES, ExplodingModel, FeaturelessModel, NoPredictModel, write_linear_model


@pytest.fixture
def store():
    return ModelStore()


def test_load_linear_model(store, model_dir):
    model = store.load(model_dir)

    assert model.name == "demo"
    assert model.version == "1.0"
    assert model.metadata.format == "json"
    assert model.metadata.task == "regression"
    assert model.metadata.n_features == 3
    assert model.metadata.feature_names == tuple(FEATURES)
    assert model.metadata.artifact == "model.json"
    assert not model.supports_probabilities


def test_defaults_without_manifest(store, tmp_path):
    directory = tmp_path / "bare_model"
    directory.mkdir()
    (directory / "model.json").write_text(json.dumps({"weights": [0.5, 0.5]}))

    model = store.load(directory)

    assert model.name == "bare_model"
    assert len(model.version) == 12
    assert model.metadata.feature_names is None
    assert model.metadata.n_features == 2


def test_version_digest_is_stable(store, tmp_path):
    directory = tmp_path / "m"
    directory.mkdir()
    (directory / "model.json").write_text(json.dumps({"weights": [1.0]}))

    assert store.load(directory).version == store.load(directory).version


def test_load_sklearn_classifier(store, classifier_dir):
    model = store.load(classifier_dir)

    assert model.metadata.format == "joblib"
    assert model.metadata.task == "classification"
    assert model.metadata.classes == (0, 1)
    assert model.metadata.n_features == 2
    assert model.supports_probabilities


def test_load_pickle_artifact(store, tmp_path, classifier_dir):
    directory = tmp_path / "pickled"
    directory.mkdir()
    estimator = joblib.load(classifier_dir / "model.joblib")
    with open(directory / "model.pkl", "wb") as f:
        pickle.dump(estimator, f)

    assert store.load(directory).metadata.format == "pickle"


def test_missing_directory(store, tmp_path):
    with pytest.raises(ModelLoadError, match="does not exist"):
        store.load(tmp_path / "nowhere")


def test_path_is_a_file(store, tmp_path):
    path = tmp_path / "model.json"
    path.write_text("{}")
    with pytest.raises(ModelLoadError, match="not a directory"):
        store.load(path)


def test_no_artifact(store, tmp_path):
    with pytest.raises(ModelLoadError, match="No model artifact"):
        store.load(tmp_path)


@pytest.mark.parametrize("payload", [
    "not json",
    json.dumps([1, 2, 3]),
    json.dumps({"bias": 1.0}),
    json.dumps({"weights": []}),
    json.dumps({"weights": [1.0], "task": "clustering"}),
    json.dumps({"weights": [[1.0, 2.0], [3.0, 4.0]], "task": "classification", "classes": ["x"]}),
])
def test_malformed_linear_artifact(store, tmp_path, payload):
    (tmp_path / "model.json").write_text(payload)
    with pytest.raises(ModelLoadError):
        store.load(tmp_path)


def test_malformed_manifest(store, model_dir):
    (model_dir / "metadata.json").write_text("{broken")
    with pytest.raises(ModelLoadError, match="metadata.json"):
        store.load(model_dir)


def test_manifest_names_missing_format(store, model_dir):
    write_linear_model(model_dir, format="joblib")
    with pytest.raises(ModelLoadError, match="missing"):
        store.load(model_dir)


def test_manifest_unknown_format(store, model_dir):
    write_linear_model(model_dir, format="onnx")
    with pytest.raises(ModelLoadError, match="Unsupported model format"):
        store.load(model_dir)


def test_feature_count_mismatch(store, model_dir):
    write_linear_model(model_dir, feature_names=["a", "b"])
    with pytest.raises(ModelLoadError, match="Inconsistent number of input features"):
        store.load(model_dir)


def test_duplicate_feature_names(store, model_dir):
    write_linear_model(model_dir, feature_names=["a", "a", "b"])
    with pytest.raises(ModelLoadError, match="duplicates"):
        store.load(model_dir)


def test_object_without_predict(store, tmp_path):
    joblib.dump(NoPredictModel(), tmp_path / "model.joblib")
    with pytest.raises(ModelLoadError, match="no predict method"):
        store.load(tmp_path)


def test_unknown_feature_count(store, tmp_path):
    joblib.dump(FeaturelessModel(), tmp_path / "model.joblib")
    with pytest.raises(ModelLoadError, match="Cannot determine the number of input features"):
        store.load(tmp_path)


def test_warmup_failure(store, tmp_path):
    joblib.dump(ExplodingModel(), tmp_path / "model.joblib")
    with pytest.raises(ModelLoadError, match="warm-up failed"):
        store.load(tmp_path)


def test_load_does_not_modify_directory(store, model_dir):
    before = {p.name: (p.stat().st_mtime_ns, p.stat().st_size) for p in model_dir.iterdir()}
    store.load(model_dir)
    after = {p.name: (p.stat().st_mtime_ns, p.stat().st_size) for p in model_dir.iterdir()}

    assert before == after


def test_loaded_weights_are_read_only(store, model_dir):
    model = store.load(model_dir)
    with pytest.raises(ValueError):
        model.estimator.weights[0, 0] = 42.0


class TestLinearModel:
    """Behaviour of the JSON linear model format."""

    def test_regression_predict(self):
        model = LinearModel([1.0, 2.0], bias=1.0)
        np.testing.assert_allclose(model.predict([[1.0, 1.0], [0.0, 0.0]]), [4.0, 1.0])

    def test_multi_output_regression(self):
        model = LinearModel([[1.0, 0.0], [0.0, 1.0]], bias=[0.0, 10.0])
        np.testing.assert_allclose(model.predict([[2.0, 3.0]]), [[2.0, 13.0]])

    def test_binary_classification(self):
        model = LinearModel([10.0], task="classification", classes=["no", "yes"])

        proba = model.predict_proba([[1.0], [-1.0]])

        np.testing.assert_allclose(proba.sum(axis=1), [1.0, 1.0])
        assert model.predict([[1.0], [-1.0]]).tolist() == ["yes", "no"]

    def test_multiclass_classification(self):
        model = LinearModel([[1.0, 0.0], [0.0, 1.0], [-1.0, -1.0]], task="classification")

        assert model.predict([[5.0, 0.0], [0.0, 5.0], [-5.0, -5.0]]).tolist() == [0, 1, 2]

    def test_regression_has_no_probabilities(self):
        with pytest.raises(AttributeError):
            LinearModel([1.0]).predict_proba([[1.0]])

    def test_classes_rejected_for_regression(self):
        with pytest.raises(ValueError):
            LinearModel([1.0], classes=[0, 1])
