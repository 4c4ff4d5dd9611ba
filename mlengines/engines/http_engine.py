"""Remote inference engine.

Registers a model that lives behind an HTTP endpoint instead of training one
locally. ``create`` only records where the model is (and optionally checks it
answers); ``predict`` posts the rows to the endpoint and maps the response
back onto the input rows.

Wire format
- Request: ``POST {endpoint}{predict_path}`` with ``{"records": [...]}``
- Response: a JSON list with one prediction per record, or an object with a
  ``predictions`` list (or a list under ``output_column``) and an optional
  ``explanations`` list of per-row objects

Connection settings given to ``connect`` are stored per engine and used as
defaults for every model registered afterwards.
"""

import json
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pandas as pd
from pydantic import Field

from mlengines.common.config import HttpEngineConfig
from mlengines.common.resilience import (
    CircuitBreakerError,
    RetryConfig,
    RetryHandler,
    get_circuit_breaker,
)

from .base import (
    BaseMLEngine,
    Capability,
    EngineArgs,
    EngineConnectionError,
    EngineInferenceError,
    EngineValidationError,
    explain_column,
)

REGISTRATION_FILE = "registration.json"
CONNECTION_FILE = "connection.json"
REDACTED = "***"


@lru_cache(maxsize=1)
def _settings() -> HttpEngineConfig:
    return HttpEngineConfig()


def _default(name: str) -> Any:
    return getattr(_settings(), name)


class HttpArgs(EngineArgs):
    """Arguments accepted by ``connect``, ``create`` and ``predict``."""
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = Field(default_factory=lambda: _default("ml_http_timeout"), gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    health_path: str = "/health"
    predict_path: str = ""
    max_retries: int = Field(default_factory=lambda: _default("ml_http_max_retries"), ge=1)
    retry_delay: float = Field(default_factory=lambda: _default("ml_http_retry_delay"), ge=0)
    output_column: Optional[str] = None
    check_connection: bool = True


class _ServerError(httpx.HTTPStatusError):
    """5xx response; retried and counted by the circuit breaker."""


class HttpEngine(BaseMLEngine):
    """Proxy for a model served by an external HTTP service."""

    name = "http"
    capabilities = frozenset({
        Capability.CREATE,
        Capability.PREDICT,
        Capability.DESCRIBE,
        Capability.CONNECT,
    })
    args_model = HttpArgs

    # Tests swap in ``httpx.MockTransport``.
    transport: Optional[httpx.BaseTransport] = None

    def connect(self, args: Dict[str, Any]) -> None:
        params = self.parse_args(args)
        self._require_endpoint(params)
        self._check_health(params)

        if self.engine_storage is not None:
            # Same arguments, same document: repeated calls change nothing.
            settings = params.model_dump(mode="json", exclude={"check_connection"})
            self.engine_storage.json_set(CONNECTION_FILE, settings)
        self.logger.info("Connected to inference endpoint", endpoint=params.endpoint)

    def create(
        self,
        target: str,
        df: Optional[pd.DataFrame] = None,
        args: Optional[Dict[str, Any]] = None,
    ) -> None:
        storage = self.require_model_storage()
        self.validate_target(target, df)
        params = self._resolve_args(args)
        self._require_endpoint(params)

        if params.check_connection:
            self._check_health(params)

        registration = params.model_dump(mode="json", exclude={"check_connection"})
        registration["target"] = target
        storage.json_set(REGISTRATION_FILE, registration)
        self.logger.info("Registered remote model", endpoint=params.endpoint, target=target)

    def predict(self, df: pd.DataFrame, args: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
        registration = self._registration()
        target = registration.pop("target")
        params = self.validate_args(HttpArgs, {**registration, **(args or {})})
        self._require_endpoint(params)

        records = json.loads(df.to_json(orient="records", date_format="iso"))
        url = self._url(params, params.predict_path)
        breaker = get_circuit_breaker(
            f"http:{params.endpoint}",
            failure_threshold=_default("ml_http_failure_threshold"),
            recovery_timeout=_default("ml_http_recovery_timeout"),
            expected_exception=httpx.HTTPError,
        )
        retry = RetryHandler(RetryConfig(
            max_attempts=params.max_retries,
            base_delay=params.retry_delay,
            retryable_exceptions=(httpx.TransportError, _ServerError),
        ))

        try:
            with self._client(params) as client:
                response = retry.execute(
                    breaker.call,
                    self._post,
                    client,
                    url,
                    {"records": records},
                    operation_name="http_predict",
                )
        except CircuitBreakerError as e:
            raise EngineInferenceError(
                f"Endpoint {params.endpoint} is failing; requests are paused: {e}",
                engine=self.name,
                model_id=self.model_id,
            ) from e
        except httpx.HTTPError as e:
            raise EngineInferenceError(
                f"Request to {url} failed: {e}", engine=self.name, model_id=self.model_id
            ) from e

        if response.is_error:
            raise EngineInferenceError(
                f"Endpoint returned HTTP {response.status_code}: {response.text[:200]}",
                engine=self.name,
                model_id=self.model_id,
            )

        predictions, explanations = self._parse_response(response, params.output_column or target)
        if len(predictions) != len(df):
            raise EngineInferenceError(
                f"Endpoint returned {len(predictions)} predictions for {len(df)} rows",
                engine=self.name,
                model_id=self.model_id,
            )

        out = pd.DataFrame({target: predictions}, index=df.index)
        if explanations is not None:
            out[explain_column(target)] = [
                value if isinstance(value, str) else json.dumps(value) for value in explanations
            ]
        return out

    def describe(self, key: Optional[str] = None) -> pd.DataFrame:
        if key == "connection":
            settings = self.engine_storage.json_get(CONNECTION_FILE, {}) if self.engine_storage else {}
            return pd.DataFrame([self._redact(settings)])
        return pd.DataFrame([self._redact(self._registration())])

    def _registration(self) -> Dict[str, Any]:
        registration = self.require_model_storage().json_get(REGISTRATION_FILE)
        if registration is None:
            raise EngineInferenceError(
                "Model registration not found; was the model created?",
                engine=self.name,
                model_id=self.model_id,
            )
        return registration

    def _resolve_args(self, args: Optional[Dict[str, Any]]) -> HttpArgs:
        """Model arguments layered over the engine's connection settings."""
        connection = self.engine_storage.json_get(CONNECTION_FILE, {}) if self.engine_storage else {}
        return self.parse_args({**connection, **(args or {})})

    def _require_endpoint(self, params: HttpArgs) -> None:
        if not params.endpoint:
            raise EngineValidationError(
                "The http engine needs an 'endpoint' argument",
                engine=self.name,
                model_id=self.model_id,
            )

    def _client(self, params: HttpArgs) -> httpx.Client:
        headers = dict(params.headers)
        if params.api_key:
            headers["Authorization"] = f"Bearer {params.api_key}"
        return httpx.Client(timeout=params.timeout, headers=headers, transport=self.transport)

    @staticmethod
    def _url(params: HttpArgs, path: str) -> str:
        endpoint = params.endpoint.rstrip("/")
        if not path:
            return endpoint
        return f"{endpoint}/{path.lstrip('/')}"

    @staticmethod
    def _post(client: httpx.Client, url: str, payload: Dict[str, Any]) -> httpx.Response:
        response = client.post(url, json=payload)
        if response.status_code >= 500:
            raise _ServerError(
                f"Server error {response.status_code}", request=response.request, response=response
            )
        return response

    def _check_health(self, params: HttpArgs) -> None:
        url = self._url(params, params.health_path)
        try:
            with self._client(params) as client:
                response = client.get(url)
        except httpx.HTTPError as e:
            raise EngineConnectionError(
                f"Cannot reach {url}: {e}", engine=self.name, model_id=self.model_id
            ) from e

        if response.status_code in (401, 403):
            raise EngineConnectionError(
                f"Endpoint rejected the credentials (HTTP {response.status_code})",
                engine=self.name,
                model_id=self.model_id,
            )
        if response.is_error:
            raise EngineConnectionError(
                f"Health check failed with HTTP {response.status_code}",
                engine=self.name,
                model_id=self.model_id,
            )

    def _parse_response(
        self,
        response: httpx.Response,
        output_key: str,
    ) -> Tuple[List[Any], Optional[List[Any]]]:
        try:
            body = response.json()
        except ValueError as e:
            raise EngineInferenceError(
                "Endpoint returned a non-JSON body", engine=self.name, model_id=self.model_id
            ) from e

        if isinstance(body, list):
            return body, None
        if isinstance(body, dict):
            for key in ("predictions", output_key):
                if isinstance(body.get(key), list):
                    explanations = body.get("explanations")
                    if explanations is not None and (
                        not isinstance(explanations, list) or len(explanations) != len(body[key])
                    ):
                        raise EngineInferenceError(
                            "Explanations do not line up with predictions",
                            engine=self.name,
                            model_id=self.model_id,
                        )
                    return body[key], explanations
        raise EngineInferenceError(
            f"Unrecognized response shape; expected a list or a '{output_key}'/'predictions' field",
            engine=self.name,
            model_id=self.model_id,
        )

    @staticmethod
    def _redact(settings: Dict[str, Any]) -> Dict[str, Any]:
        redacted = dict(settings)
        if redacted.get("api_key"):
            redacted["api_key"] = REDACTED
        if isinstance(redacted.get("headers"), dict):
            redacted["headers"] = json.dumps(sorted(redacted["headers"]))
        return redacted
