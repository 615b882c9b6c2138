"""Model serving service package.

Layout:
- ``api``: REST endpoints, request schemas and the response encoder.
- ``runtime``: model manager, inference engine and service-scoped helpers.
- ``loaders``: model store and dataset readers.

Import convenience:
- from model_serving.runtime.model_manager import ModelManager
- from model_serving.main import create_app
"""

__version__ = "0.1.0"
