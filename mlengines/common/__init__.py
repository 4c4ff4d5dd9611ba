"""Common utilities shared across the toolkit.

Includes:
- ``config``: Pydantic-based configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics for engine operations.
- ``tracing``: OpenTelemetry spans around engine operations.
- ``events``: model lifecycle events, in-process bus and Redis publisher.
- ``resilience``: circuit breaker and retry helpers for remote engines.

Import pattern:
- from mlengines.common.config import HandlerConfig
- from mlengines.common.logging import configure_logging
"""
