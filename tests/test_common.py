"""Tests for common utilities."""

import json
import logging

import pytest
import redis
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from mlengines.common.config import BaseConfig, HandlerConfig, HttpEngineConfig, get_config, load_env_file
from mlengines.common.events import (
    EventBus,
    EventType,
    ModelCreatedEvent,
    ModelFailedEvent,
    RedisEventPublisher,
)
from mlengines.common.logging import configure_logging, engine_logger
from mlengines.common.metrics import MetricsCollector
from mlengines.common.resilience import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerState,
    RetryConfig,
    RetryHandler,
    get_circuit_breaker,
)
from mlengines.common.tracing import TracingContext


def test_config_loading():
    """Test configuration loading."""
    config = BaseConfig()
    assert config.ml_env == "local"
    assert config.ml_log_level == "INFO"
    assert config.ml_events_enabled is False


def test_handler_config_from_env(monkeypatch):
    """Environment variables override defaults."""
    monkeypatch.setenv("ML_MAX_WORKERS", "8")
    monkeypatch.setenv("ML_ENGINE_STORAGE_PATH", "/data/engines")
    config = HandlerConfig()
    assert config.ml_max_workers == 8
    assert config.ml_engine_storage_path == "/data/engines"


def test_get_config():
    assert isinstance(get_config("handler"), HandlerConfig)
    assert isinstance(get_config("http"), HttpEngineConfig)
    assert type(get_config("unknown")) is BaseConfig


def test_load_env_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("# comment\nML_ENV=staging\n\nML_LOG_LEVEL=DEBUG\n")
    assert load_env_file(str(env_file)) == {"ML_ENV": "staging", "ML_LOG_LEVEL": "DEBUG"}
    assert load_env_file(str(tmp_path / "missing.env")) == {}


def test_logging_configuration():
    """Test logging configuration."""
    # This should not raise an exception
    configure_logging("test-service", "INFO", "json")


def test_logging_to_file(tmp_path):
    """Engine diagnostics end up in the rotating log file."""
    log_file = tmp_path / "logs" / "engines.log"
    configure_logging("test-service", "INFO", "json", log_file=str(log_file))

    engine_logger("sklearn", model_id="abc", model_name=None).info("Model trained", rows=10)
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = [json.loads(line) for line in log_file.read_text().splitlines() if line.strip()]
    trained = [line for line in lines if line["event"] == "Model trained"]
    assert trained
    assert trained[-1]["engine"] == "sklearn"
    assert trained[-1]["model_id"] == "abc"
    assert "model_name" not in trained[-1]
    assert trained[-1]["rows"] == 10


def test_metrics_collector():
    """Test metrics collector."""
    collector = MetricsCollector("test-service")
    assert collector.service_name == "test-service"

    collector.record_operation("sklearn", "create", "success", 0.5)
    collector.record_predicted_rows("sklearn", 25)
    collector.set_model_count("complete", 3)

    metrics = collector.get_metrics()
    assert isinstance(metrics, str)
    assert "ml_engine_operations_total" in metrics
    assert 'ml_engine_predicted_rows_total{engine="sklearn"} 25.0' in metrics
    assert 'ml_engine_models{status="complete"} 3.0' in metrics


def test_metrics_time_operation_records_errors():
    collector = MetricsCollector("test-service")

    with pytest.raises(RuntimeError):
        with collector.time_operation("http", "predict"):
            raise RuntimeError("boom")

    value = collector.registry.get_sample_value(
        "ml_engine_operations_total",
        {"engine": "http", "operation": "predict", "status": "error"},
    )
    assert value == 1.0


def test_event_bus_dispatch():
    """Handlers receive events of the type they subscribed to."""
    bus = EventBus()
    received = []
    bus.subscribe(EventType.MODEL_CREATED, received.append)

    bus.publish(ModelCreatedEvent(model_name="m", model_id="abc", engine="sklearn", target="price"))
    bus.publish(ModelFailedEvent(model_name="m", model_id="abc", engine="sklearn", error="boom"))

    assert len(received) == 1
    assert received[0].event_type == EventType.MODEL_CREATED.value
    assert received[0].timestamp > 0


def test_event_bus_survives_failing_handler():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.subscribe(EventType.MODEL_CREATED, broken)
    bus.subscribe(EventType.MODEL_CREATED, received.append)
    bus.publish(ModelCreatedEvent(model_name="m"))

    assert len(received) == 1


class _FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    def publish(self, channel, message):
        if self.fail:
            raise redis.ConnectionError("redis down")
        self.published.append((channel, message))

    def close(self):
        pass


def test_redis_publisher_channel():
    client = _FakeRedis()
    publisher = RedisEventPublisher("redis://localhost:6379", client=client)
    assert publisher.channel_prefix == "ml_events"

    assert publisher.publish(ModelCreatedEvent(model_name="m", target="price")) is True
    channel, message = client.published[0]
    assert channel == "ml_events:ml.model.created.v1"
    assert json.loads(message)["target"] == "price"


def test_redis_publisher_outage_is_reported():
    publisher = RedisEventPublisher("redis://localhost:6379", client=_FakeRedis(fail=True))
    assert publisher.publish(ModelCreatedEvent(model_name="m")) is False


def test_circuit_breaker_opens_and_recovers():
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0.0, expected_exception=ValueError)

    def fail():
        raise ValueError("nope")

    for _ in range(2):
        with pytest.raises(ValueError):
            breaker.call(fail)
    assert breaker.get_state() == CircuitBreakerState.OPEN

    assert breaker.get_stats()["failure_count"] == 2

    # recovery_timeout=0 lets the next call probe in HALF_OPEN
    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.get_state() == CircuitBreakerState.CLOSED
    assert breaker.get_stats()["failure_count"] == 0


def test_circuit_breaker_rejects_while_open():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=3600, expected_exception=ValueError)

    def fail():
        raise ValueError("x")

    with pytest.raises(ValueError):
        breaker.call(fail)
    with pytest.raises(CircuitBreakerError):
        breaker.call(lambda: "never")


def test_get_circuit_breaker_is_shared():
    assert get_circuit_breaker("svc") is get_circuit_breaker("svc")


def test_retry_handler_retries_then_succeeds():
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("transient")
        return "done"

    handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0, jitter=False))
    assert handler.execute(flaky, operation_name="flaky") == "done"
    assert len(attempts) == 3


def test_retry_handler_does_not_retry_other_errors():
    attempts = []

    def broken():
        attempts.append(1)
        raise KeyError("bad")

    handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0, retryable_exceptions=(ConnectionError,)))
    with pytest.raises(KeyError):
        handler.execute(broken)
    assert len(attempts) == 1


def test_tracing_context_records_status():
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    tracer = provider.get_tracer("test")

    with TracingContext(tracer, "engine.create", engine="sklearn", model_id=None):
        pass
    with pytest.raises(RuntimeError):
        with TracingContext(tracer, "engine.predict", engine="sklearn"):
            raise RuntimeError("boom")

    ok_span, error_span = exporter.get_finished_spans()
    assert ok_span.name == "engine.create"
    assert ok_span.attributes["engine"] == "sklearn"
    assert "model_id" not in ok_span.attributes
    assert ok_span.status.status_code == StatusCode.OK
    assert error_span.status.status_code == StatusCode.ERROR
