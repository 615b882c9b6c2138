"""Configuration management for the model serving service.

This module centralizes environment-driven configuration for the serving
process. It builds on ``pydantic_settings.BaseSettings`` so configuration can
be provided via environment variables, ``.env`` files, or defaults.

Highlights
- Strongly-typed settings with sensible defaults
- One place to discover commonly used environment variables
- Small service-specific subclass to keep concerns clear

Usage
- Inject the config in your service entrypoint:
  ``config = ModelServingConfig()``
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class shared by every process of the project.

    Parameters are read from the process environment using the upper-cased
    field name (``ml_log_level`` <- ``ML_LOG_LEVEL``).

    Notes
    - Add new shared settings here so downstream services inherit them.
    - Prefer adding a field over reading ``os.environ`` directly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ml_env: str = Field(default="local", description="Deployment environment name")

    # Logging
    ml_log_level: str = Field(default="INFO", description="Root log level")
    ml_log_format: str = Field(default="json", description="json or console")

    @field_validator("ml_log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return value

    @field_validator("ml_log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in {"json", "console"}:
            raise ValueError("log format must be 'json' or 'console'")
        return value


class ModelServingConfig(BaseConfig):
    """Configuration for the model serving service.

    Extends ``BaseConfig`` with the listen address, the dataset/model
    directory and request limits used by the serving API.
    """

    ml_model_serving_host: str = Field(default="0.0.0.0", description="Listen address")
    ml_model_serving_port: int = Field(default=8080, ge=1, le=65535, description="Listen port")
    ml_dataset_dir: str = Field(default="datasets", description="Directory holding model artifacts and datasets")

    # Limits
    ml_max_batch_size: int = Field(default=256, gt=0, description="Maximum rows per inference request")
    ml_batch_job_batch_size: int = Field(default=32, gt=0, description="Default rows per batch-job step")
    ml_max_batch_jobs: int = Field(default=100, gt=0, description="Batch jobs kept in memory; oldest finished ones are dropped")

    # Admin
    ml_reload_enabled: bool = Field(default=True, description="Expose POST /reload")
    ml_admin_token: Optional[str] = Field(default=None, description="Bearer token required by /reload when set")
