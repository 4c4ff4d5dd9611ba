"""Configuration management for the engine toolkit.

This module centralizes environment-driven configuration for the execution
wrapper and the bundled engines. It builds on ``pydantic_settings.BaseSettings``
so configuration can be provided via environment variables, ``.env`` files,
or defaults.

Highlights
- Strongly-typed settings with sensible defaults
- One place to discover commonly used environment variables
- Small purpose-specific subclasses to keep concerns clear

Usage
- Inject the appropriate config at startup: ``config = HandlerConfig()``
- Or select dynamically: ``config = get_config("handler")``
"""

import os
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration shared by every component.

    Field names map case-insensitively onto environment variables, so
    ``ml_log_level`` is read from ``ML_LOG_LEVEL``.

    Notes
    - Add new shared settings here so downstream configs inherit them.
    - Prefer a typed field over reading ``os.environ`` directly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ml_env: str = Field(default="local")

    # Logging
    ml_log_level: str = Field(default="INFO")
    ml_log_format: str = Field(default="json")
    # Engines run on worker threads, so diagnostics need a durable sink.
    ml_log_file: Optional[str] = Field(default=None)

    # Observability
    ml_tracing_enabled: bool = Field(default=False)
    ml_otel_exporter: str = Field(default="http://localhost:4318/v1/traces")
    ml_otel_service_name: str = Field(default="mlengines")

    # Events
    ml_events_enabled: bool = Field(default=False)
    ml_redis_url: str = Field(default="redis://localhost:6379")


class HandlerConfig(BaseConfig):
    """Configuration for the execution wrapper.

    Extends ``BaseConfig`` with storage location and worker pool sizing.
    """

    ml_engine_storage_path: str = Field(default="/tmp/mlengines/storage")
    ml_max_workers: int = Field(default=4, ge=1)
    ml_create_timeout: Optional[float] = Field(default=None, gt=0)


class HttpEngineConfig(BaseConfig):
    """Defaults for the remote inference engine.

    Argument bags passed to the engine override these per model.
    """

    ml_http_timeout: float = Field(default=30.0, gt=0)
    ml_http_max_retries: int = Field(default=3, ge=1)
    ml_http_retry_delay: float = Field(default=0.5, ge=0)
    ml_http_failure_threshold: int = Field(default=5, ge=1)
    ml_http_recovery_timeout: float = Field(default=60.0, gt=0)


def get_config(component: str) -> BaseConfig:
    """Get configuration for a specific component.

    Parameters
    - component: Literal name: ``handler`` or ``http``.

    Returns
    - A concrete ``BaseConfig`` subclass pre-wired to read the right env vars.
    """
    config_map = {
        "handler": HandlerConfig,
        "http": HttpEngineConfig,
    }

    # Default to ``BaseConfig`` to avoid surprising crashes for unknown names.
    config_class = config_map.get(component, BaseConfig)
    return config_class()


def load_env_file(env_file: str = ".env") -> Dict[str, Any]:
    """Load environment variables from a file.

    Parses a simple ``KEY=VALUE`` file, ignoring blank lines and comments.
    The process environment is left untouched.
    """
    env_vars = {}
    if os.path.exists(env_file):
        with open(env_file, "r") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    env_vars[key] = value
    return env_vars
