"""Tests for the command line entry point."""

import json

import pytest

from model_serving import cli


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("ML_DATASET_DIR", "ML_MODEL_SERVING_PORT", "ML_MODEL_SERVING_HOST", "ML_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def uvicorn_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(cli.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    return calls


def test_serve_with_overrides(model_dir, uvicorn_calls):
    code = cli.main([
        "--dataset-dir", str(model_dir), "--log-format", "console",
        "serve", "--host", "127.0.0.1", "--port", "9001",
    ])

    assert code == cli.EXIT_OK
    assert len(uvicorn_calls) == 1
    app, kwargs = uvicorn_calls[0]
    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["port"] == 9001
    assert app.state.model_manager.is_loaded


def test_serve_is_the_default_command(model_dir, uvicorn_calls):
    assert cli.main(["--dataset-dir", str(model_dir)]) == cli.EXIT_OK
    assert uvicorn_calls[0][1]["port"] == 8080


def test_missing_model_never_binds(tmp_path, uvicorn_calls):
    code = cli.main(["--dataset-dir", str(tmp_path / "missing"), "serve"])

    assert code == cli.EXIT_MODEL_LOAD_ERROR
    assert uvicorn_calls == []


def test_invalid_port(model_dir, uvicorn_calls):
    code = cli.main(["--dataset-dir", str(model_dir), "serve", "--port", "70000"])

    assert code == cli.EXIT_CONFIG_ERROR
    assert uvicorn_calls == []


def test_check(model_dir, capsys):
    code = cli.main(["--dataset-dir", str(model_dir), "--log-level", "ERROR", "check"])

    assert code == cli.EXIT_OK
    out = capsys.readouterr().out
    assert '"name": "demo"' in out
    assert '"n_features": 3' in out


def test_check_missing_model(tmp_path):
    assert cli.main(["--dataset-dir", str(tmp_path), "check"]) == cli.EXIT_MODEL_LOAD_ERROR


def test_predict(model_dir, capsys):
    code = cli.main([
        "--dataset-dir", str(model_dir), "--log-level", "ERROR",
        "predict", "--input", json.dumps({"inputs": [[1, 1, 1]]}),
    ])

    assert code == cli.EXIT_OK
    out = capsys.readouterr().out
    assert '"model_version": "1.0"' in out
    assert "6.5" in out


def test_predict_accepts_bare_rows(model_dir):
    code = cli.main(["--dataset-dir", str(model_dir), "predict", "--input", "[[0, 0, 0]]"])

    assert code == cli.EXIT_OK


@pytest.mark.parametrize("raw", ["[[1, 2]]", "{not json", '{"inputs": "x"}'])
def test_predict_rejects_bad_input(model_dir, raw):
    code = cli.main(["--dataset-dir", str(model_dir), "predict", "--input", raw])

    assert code == cli.EXIT_PREDICT_ERROR


def test_predict_probabilities_from_regression_model(model_dir):
    code = cli.main(["--dataset-dir", str(model_dir), "predict", "--input", "[[1, 1, 1]]", "--probabilities"])

    assert code == cli.EXIT_PREDICT_ERROR
