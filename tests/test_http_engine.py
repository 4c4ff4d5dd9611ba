"""Tests for the remote inference engine."""

import json

import pandas as pd
import pytest

from mlengines.engines.base import (
    EngineConnectionError,
    EngineInferenceError,
    EngineValidationError,
    explain_column,
)
from mlengines.engines.http_engine import CONNECTION_FILE, REGISTRATION_FILE
from mlengines.storage import EngineStorage, ModelStorage

from .conftest import ENDPOINT

FAST = {"retry_delay": 0, "max_retries": 2}


@pytest.fixture
def engine_storage(tmp_path):
    return EngineStorage(tmp_path / "engines" / "http", "http")


@pytest.fixture
def make_engine(tmp_path, http_engine_class, engine_storage):
    def _make(model_id="remote1"):
        return http_engine_class(
            model_storage=ModelStorage(tmp_path / "models" / model_id, model_id),
            engine_storage=engine_storage,
        )
    return _make


@pytest.fixture
def query():
    return pd.DataFrame({"feature1": [1.0, 2.5, 4.0], "feature2": ["a", "b", "c"]}, index=[10, 11, 12])


def test_create_without_data_registers_endpoint(make_engine, inference_service):
    engine = make_engine()
    engine.create("price", None, {"endpoint": ENDPOINT, **FAST})

    registration = engine.model_storage.json_get(REGISTRATION_FILE)
    assert registration["endpoint"] == ENDPOINT
    assert registration["target"] == "price"
    assert [r.url.path for r in inference_service.requests] == ["/health"]


def test_create_requires_endpoint(make_engine):
    with pytest.raises(EngineValidationError, match="endpoint"):
        make_engine().create("price", None, {})


def test_create_checks_target_when_data_given(make_engine):
    df = pd.DataFrame({"feature1": [1.0]})
    with pytest.raises(EngineValidationError):
        make_engine().create("price", df, {"endpoint": ENDPOINT})


def test_create_can_skip_health_check(make_engine, inference_service):
    inference_service.health_status = 503
    make_engine().create("price", None, {"endpoint": ENDPOINT, "check_connection": False})
    assert inference_service.requests == []


def test_predict(make_engine, inference_service, query):
    engine = make_engine()
    engine.create("price", None, {"endpoint": ENDPOINT, "api_key": "secret", **FAST})

    result = engine.predict(query)

    assert list(result["price"]) == [2.0, 5.0, 8.0]
    assert list(result.index) == [10, 11, 12]
    request = inference_service.requests[-1]
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content)["records"][0] == {"feature1": 1.0, "feature2": "a"}


def test_predict_with_explanations(make_engine, inference_service, query):
    inference_service.with_explanations = True
    engine = make_engine()
    engine.create("price", None, {"endpoint": ENDPOINT, **FAST})

    result = engine.predict(query)
    assert json.loads(result[explain_column("price")].iloc[0]) == {"source": "fake"}


def test_predict_row_count_mismatch(make_engine, inference_service, query):
    inference_service.drop_last = True
    engine = make_engine()
    engine.create("price", None, {"endpoint": ENDPOINT, **FAST})

    with pytest.raises(EngineInferenceError, match="2 predictions for 3 rows"):
        engine.predict(query)


def test_predict_retries_server_errors(make_engine, inference_service, query):
    engine = make_engine()
    engine.create("price", None, {"endpoint": ENDPOINT, **FAST})
    inference_service.predict_status = 503

    with pytest.raises(EngineInferenceError):
        engine.predict(query)
    assert inference_service.predict_calls == 2


def test_predict_client_error_is_not_retried(make_engine, inference_service, query):
    engine = make_engine()
    engine.create("price", None, {"endpoint": ENDPOINT, **FAST})
    inference_service.predict_status = 422

    with pytest.raises(EngineInferenceError, match="422"):
        engine.predict(query)
    assert inference_service.predict_calls == 1


def test_connect_is_idempotent(make_engine, engine_storage):
    engine = make_engine()
    args = {"endpoint": ENDPOINT, "api_key": "secret"}

    engine.connect(args)
    first = engine_storage.file_get(CONNECTION_FILE)
    engine.connect(args)

    assert engine_storage.file_get(CONNECTION_FILE) == first
    assert engine_storage.list_files() == [CONNECTION_FILE]


def test_connect_rejects_bad_credentials(make_engine, inference_service):
    inference_service.health_status = 401
    with pytest.raises(EngineConnectionError, match="credentials"):
        make_engine().connect({"endpoint": ENDPOINT, "api_key": "wrong"})


def test_create_uses_connection_settings(make_engine, query):
    engine = make_engine()
    engine.connect({"endpoint": ENDPOINT, **FAST})

    model = make_engine("remote2")
    model.create("price", None, {})
    assert model.model_storage.json_get(REGISTRATION_FILE)["endpoint"] == ENDPOINT
    assert len(model.predict(query)) == 3


def test_describe_redacts_secrets(make_engine):
    engine = make_engine()
    engine.create("price", None, {"endpoint": ENDPOINT, "api_key": "secret"})

    description = engine.describe()
    assert description["api_key"].iloc[0] == "***"
    assert description["endpoint"].iloc[0] == ENDPOINT

    engine.connect({"endpoint": ENDPOINT, "api_key": "secret"})
    assert engine.describe("connection")["api_key"].iloc[0] == "***"
