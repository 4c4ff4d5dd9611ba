"""Shared fixtures for engine and wrapper tests."""

import json
from typing import Any, Dict, List

import httpx
import numpy as np
import pandas as pd
import pytest

from mlengines.common.config import HandlerConfig
from mlengines.common.events import EventBus
from mlengines.common.metrics import MetricsCollector
from mlengines.common.resilience import reset_circuit_breakers
from mlengines.engines.factory import EngineRegistry
from mlengines.engines.http_engine import HttpEngine
from mlengines.engines.sklearn_engine import SklearnEngine
from mlengines.wrapper.handler import EngineHandler

ENDPOINT = "http://inference.test"


class FakeInferenceService:
    """In-memory stand-in for a remote model server.

    Predicts ``2 * feature1`` for every record and answers health checks.
    Set ``health_status`` or ``predict_status`` to simulate failures.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.health_status = 200
        self.predict_status = 200
        self.drop_last = False
        self.with_explanations = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/health":
            return httpx.Response(self.health_status, json={"status": "ok"})

        if self.predict_status != 200:
            return httpx.Response(self.predict_status, json={"error": "unavailable"})

        records = json.loads(request.content)["records"]
        predictions = [2 * record["feature1"] for record in records]
        if self.drop_last:
            predictions = predictions[:-1]
        body: Dict[str, Any] = {"predictions": predictions}
        if self.with_explanations:
            body["explanations"] = [{"source": "fake"} for _ in predictions]
        return httpx.Response(200, json=body)

    @property
    def predict_calls(self) -> int:
        return sum(1 for r in self.requests if r.url.path != "/health")


@pytest.fixture(autouse=True)
def _reset_breakers():
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


@pytest.fixture
def config(tmp_path):
    return HandlerConfig(ml_engine_storage_path=str(tmp_path / "storage"), ml_max_workers=2)


@pytest.fixture
def inference_service():
    return FakeInferenceService()


@pytest.fixture
def http_engine_class(inference_service):
    """``HttpEngine`` wired to the fake service."""
    return type("MockedHttpEngine", (HttpEngine,), {"transport": httpx.MockTransport(inference_service)})


@pytest.fixture
def registry(http_engine_class):
    registry = EngineRegistry()
    registry.register(SklearnEngine)
    registry.register(http_engine_class, name="http")
    return registry


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def handler(config, registry, event_bus):
    handler = EngineHandler(
        config=config,
        registry=registry,
        event_bus=event_bus,
        metrics=MetricsCollector("test-service"),
    )
    yield handler
    handler.shutdown()


@pytest.fixture
def regression_df():
    """Prices driven by a numeric and a categorical feature."""
    rng = np.random.default_rng(7)
    n = 80
    feature1 = rng.uniform(0, 10, n)
    feature2 = rng.choice(["red", "green", "blue"], n)
    offset = pd.Series(feature2).map({"red": 0.0, "green": 5.0, "blue": 10.0}).to_numpy()
    price = 3.0 * feature1 + offset + rng.normal(0, 0.5, n)
    return pd.DataFrame({
        "feature1": feature1,
        "feature2": pd.Categorical(feature2),
        "price": price,
    })


@pytest.fixture
def classification_df():
    """Two well separated classes."""
    rng = np.random.default_rng(11)
    n = 60
    label = np.array(["low", "high"] * (n // 2))
    x = np.where(label == "high", rng.normal(8, 1, n), rng.normal(2, 1, n))
    y = rng.normal(0, 1, n)
    return pd.DataFrame({"x": x, "y": y, "label": label})
