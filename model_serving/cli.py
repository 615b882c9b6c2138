"""Command line entry point (``my_ml_project``).

Exit codes
- 0: graceful shutdown / success
- 2: invalid configuration
- 3: the model could not be loaded (the port is never opened)
- 4: ``predict`` rejected the input or inference failed
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from pydantic import ValidationError

from libs.common.config import ModelServingConfig
from libs.common.logging import configure_logging
from . import __version__
from .api.schemas import InferenceRequest
from .errors import InferenceError, ModelLoadError
from .main import SERVICE_NAME, create_app
from .runtime.model_manager import ModelManager

logger = structlog.get_logger("model_serving.cli")

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_MODEL_LOAD_ERROR = 3
EXIT_PREDICT_ERROR = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="my_ml_project",
        description="Serve predictions from the model bundled in the dataset directory.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--dataset-dir", help="Directory holding the model artifacts (ML_DATASET_DIR)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR (ML_LOG_LEVEL)")
    parser.add_argument("--log-format", choices=["json", "console"], help="Log renderer (ML_LOG_FORMAT)")

    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Load the model and serve HTTP requests (default)")
    serve.add_argument("--host", help="Listen address (ML_MODEL_SERVING_HOST)")
    serve.add_argument("--port", type=int, help="Listen port (ML_MODEL_SERVING_PORT)")

    subparsers.add_parser("check", help="Load and validate the model, print its metadata")

    predict = subparsers.add_parser("predict", help="Score rows locally without starting the server")
    predict.add_argument(
        "--input",
        required=True,
        help='JSON request body, e.g. \'{"inputs": [[1.0, 2.0]]}\' or a bare list of rows',
    )
    predict.add_argument("--probabilities", action="store_true", help="Include class probabilities")

    return parser


def load_config(args: argparse.Namespace) -> ModelServingConfig:
    """Environment configuration with command line overrides applied."""
    overrides: Dict[str, Any] = {
        "ml_dataset_dir": args.dataset_dir,
        "ml_log_level": args.log_level,
        "ml_log_format": args.log_format,
        "ml_model_serving_host": getattr(args, "host", None),
        "ml_model_serving_port": getattr(args, "port", None),
    }
    return ModelServingConfig(**{k: v for k, v in overrides.items() if v is not None})


def _load_model(manager: ModelManager) -> bool:
    try:
        asyncio.run(manager.initialize())
    except ModelLoadError as e:
        logger.error("Model load failed", error=e.message, details=e.details)
        return False
    return True


def serve(config: ModelServingConfig) -> int:
    """Load the model, then bind the port and serve until shutdown."""
    manager = ModelManager(config)
    if not _load_model(manager):
        logger.error("Refusing to start without a model", dataset_dir=config.ml_dataset_dir)
        return EXIT_MODEL_LOAD_ERROR

    app = create_app(config, model_manager=manager)
    logger.info(
        "Listening",
        host=config.ml_model_serving_host,
        port=config.ml_model_serving_port,
    )
    uvicorn.run(
        app,
        host=config.ml_model_serving_host,
        port=config.ml_model_serving_port,
        log_config=None,
        log_level=config.ml_log_level.lower(),
    )
    return EXIT_OK


def check(config: ModelServingConfig) -> int:
    manager = ModelManager(config)
    if not _load_model(manager):
        return EXIT_MODEL_LOAD_ERROR
    print(json.dumps(manager.describe(), indent=2))
    return EXIT_OK


def predict(config: ModelServingConfig, raw_input: str, probabilities: bool = False) -> int:
    """One-shot local inference; prints the result as JSON."""
    manager = ModelManager(config)
    if not _load_model(manager):
        return EXIT_MODEL_LOAD_ERROR

    try:
        payload = json.loads(raw_input)
        if isinstance(payload, list):
            payload = {"inputs": payload}
        if probabilities and isinstance(payload, dict):
            payload["return_probabilities"] = True
        request = InferenceRequest.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.error("Invalid input", error=str(e))
        return EXIT_PREDICT_ERROR

    try:
        result = asyncio.run(manager.predict(request.inputs, request.return_probabilities))
    except InferenceError as e:
        logger.error("Inference failed", error=e.message, details=e.details)
        return EXIT_PREDICT_ERROR

    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main function for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except ValidationError as e:
        configure_logging(SERVICE_NAME)
        logger.error("Invalid configuration", error=str(e))
        return EXIT_CONFIG_ERROR

    configure_logging(SERVICE_NAME, config.ml_log_level, config.ml_log_format)

    if args.command == "check":
        return check(config)
    if args.command == "predict":
        return predict(config, args.input, args.probabilities)
    return serve(config)


if __name__ == "__main__":
    sys.exit(main())
