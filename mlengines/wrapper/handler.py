"""Execution wrapper driving engines on behalf of a host.

``EngineHandler`` owns the model registry and runs every engine call on a
worker pool, away from the caller's thread. Around each call it:

- resolves the engine class and checks optional capabilities up front
- builds a fresh engine instance with the model's storage handles
- serializes calls per model (one writer at a time, see below)
- normalizes failures into the ``EngineError`` taxonomy
- validates and reshapes prediction tables
- records metrics, spans and lifecycle events

Concurrency policy
- Single writer per model: ``create``, ``update``, ``predict`` and
  ``describe`` for one model take the same re-entrant lock, so an update
  never races a prediction on the same artifacts. Different models run in
  parallel, bounded by ``ml_max_workers``.
- ``create_model(timeout=...)`` bounds how long the caller waits; training
  keeps running in the background and the record is finalized when it ends.
"""

import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type

import pandas as pd
import structlog

from mlengines.common.config import HandlerConfig
from mlengines.common.events import (
    EventBus,
    ModelCreatedEvent,
    ModelDroppedEvent,
    ModelFailedEvent,
    ModelUpdatedEvent,
    PredictionCompletedEvent,
    create_event_bus,
)
from mlengines.common.logging import configure_logging, engine_logger, log_performance
from mlengines.common.metrics import MetricsCollector, get_metrics_collector
from mlengines.common.tracing import TracingContext, configure_tracing, get_tracer
from mlengines.dataprep.type_infer import NUMERIC_TYPES, DataType, infer_column_type
from mlengines.engines.base import (
    BaseMLEngine,
    Capability,
    EngineConnectionError,
    EngineError,
    EngineInferenceError,
    EngineNotSupportedError,
    EngineTrainingError,
    EngineValidationError,
)
from mlengines.engines.factory import EngineRegistry, default_registry
from mlengines.storage.file_storage import EngineStorage, ModelStorage
from mlengines.storage.records import ModelRecord, ModelStatus, RecordStore

logger = structlog.get_logger("wrapper.handler")

MODEL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def normalize_error(
    error: BaseException,
    default_class: Type[EngineError],
    engine: str,
    model_id: Optional[str] = None,
) -> EngineError:
    """Map any exception raised by an engine onto the error taxonomy.

    ``EngineError`` instances pass through (with engine/model filled in);
    anything else is wrapped in ``default_class``.
    """
    if isinstance(error, EngineError):
        error.engine = error.engine or engine
        error.model_id = error.model_id or model_id
        return error
    return default_class(f"{type(error).__name__}: {error}", engine=engine, model_id=model_id)


class EngineHandler:
    """Registry of models plus the machinery to run engine calls.

    Parameters
    - config: ``HandlerConfig``; read from the environment when omitted
    - registry: Engine registry (defaults to the built-in one)
    - record_store: Where model records live (defaults under the storage path)
    - event_bus: Lifecycle event bus; Redis forwarding when events are enabled
    - metrics: Metrics collector
    """

    def __init__(
        self,
        config: Optional[HandlerConfig] = None,
        registry: Optional[EngineRegistry] = None,
        record_store: Optional[RecordStore] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or HandlerConfig()
        self.registry = registry or default_registry
        self.storage_root = Path(self.config.ml_engine_storage_path)
        self.record_store = record_store or RecordStore(self.storage_root / "records")
        if event_bus is None:
            event_bus = create_event_bus(self.config.ml_redis_url if self.config.ml_events_enabled else None)
        self.event_bus = event_bus
        self.metrics = metrics or get_metrics_collector(self.config.ml_otel_service_name)
        self.tracer = get_tracer("mlengines.wrapper")

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.ml_max_workers,
            thread_name_prefix="ml-engine",
        )
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._connections: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def from_env(cls, registry: Optional[EngineRegistry] = None) -> "EngineHandler":
        """Build a handler from environment settings.

        Configures logging, tracing (when ``ML_TRACING_ENABLED``) and loads
        engine plugins from installed distributions.
        """
        config = HandlerConfig()
        configure_logging(
            service_name=config.ml_otel_service_name,
            log_level=config.ml_log_level,
            log_format=config.ml_log_format,
            log_file=config.ml_log_file,
        )
        if config.ml_tracing_enabled:
            configure_tracing(config.ml_otel_service_name, config.ml_otel_exporter)

        registry = registry or default_registry
        registry.load_entry_points()
        return cls(config=config, registry=registry)

    def engine_connection(self, engine: str) -> Optional[Dict[str, Any]]:
        """Arguments of the last successful ``connect_engine`` for ``engine``."""
        return self._connections.get(engine)

    # ------------------------------------------------------------------
    # Model lifecycle
    # ------------------------------------------------------------------

    def create_model(
        self,
        name: str,
        engine: str,
        target: str,
        df: Optional[pd.DataFrame] = None,
        args: Optional[Dict[str, Any]] = None,
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> ModelRecord:
        """Register a model and run the engine's ``create`` in the background.

        The record is ``generating`` until ``create`` finishes, then
        ``complete`` or ``error``. A failed create removes whatever artifacts
        the engine wrote, so an ``error`` record can never serve predictions.

        With ``wait=True`` (default) this blocks until the engine finishes and
        re-raises its error; with ``wait=False`` it returns the pending record
        at once and ``wait_for`` collects the outcome later.
        """
        self._validate_name(name)
        engine_class = self.registry.get(engine)
        if df is not None and not isinstance(df, pd.DataFrame):
            raise EngineValidationError("Training data must be a pandas DataFrame", engine=engine)
        if not target:
            raise EngineValidationError("A target column is required", engine=engine)
        if df is not None and target not in df.columns:
            raise EngineValidationError(
                f"Target column '{target}' not found in data; available columns: {list(df.columns)}",
                engine=engine,
            )

        with self._lock_for(name):
            existing = self.record_store.get(name)
            if existing is not None and existing.status != ModelStatus.ERROR:
                raise EngineValidationError(
                    f"Model '{name}' already exists with status '{existing.status.value}'",
                    engine=engine,
                    model_id=existing.model_id,
                )
            if existing is not None:
                self._model_storage(existing).clear()

            record = ModelRecord(
                name=name,
                engine=engine,
                target=target,
                target_dtype=infer_column_type(df[target]).value if df is not None else None,
                args=dict(args or {}),
            )
            # The worker blocks on this lock, so the future is registered
            # before the record becomes visible to drop_model.
            future = self._executor.submit(
                self._run_create,
                record,
                engine_class,
                df.copy() if df is not None else None,
                dict(args or {}),
            )
            with self._locks_guard:
                self._pending[name] = future
            future.add_done_callback(lambda done: self._forget_pending(name, done))
            self.record_store.save(record)

        logger.info("Model creation started", model_name=name, engine=engine, model_id=record.model_id)
        self._refresh_model_gauge()

        if not wait:
            return record
        self._collect(name, future, timeout or self.config.ml_create_timeout)
        return self._require_record(name)

    def wait_for(self, name: str, timeout: Optional[float] = None) -> ModelRecord:
        """Wait for a pending ``create`` and return the final record.

        Raises the creation error when the model ended in ``error``. Raises
        ``concurrent.futures.TimeoutError`` when ``timeout`` elapses first;
        the creation keeps running and can be waited on again.
        """
        with self._locks_guard:
            future = self._pending.get(name)
        if future is not None:
            self._collect(name, future, timeout)
        record = self._require_record(name)
        if record.status == ModelStatus.ERROR:
            raise EngineTrainingError(
                record.error or "Model creation failed",
                engine=record.engine,
                model_id=record.model_id,
            )
        return record

    def predict(self, name: str, df: pd.DataFrame, args: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
        """Score ``df`` with a ready model.

        Returns the input columns (without any existing target column)
        followed by the predicted target and explanation columns, one row per
        input row and in input order.
        """
        record = self._require_ready(name)
        if not isinstance(df, pd.DataFrame):
            raise EngineValidationError("Prediction data must be a pandas DataFrame", engine=record.engine)

        if len(df) == 0:
            return self._conform_predictions(record, df, pd.DataFrame({record.target: []}, index=df.index))

        future = self._executor.submit(self._run_predict, record, df.copy(), dict(args or {}))
        return future.result()

    def update_model(
        self,
        name: str,
        df: Optional[pd.DataFrame] = None,
        args: Optional[Dict[str, Any]] = None,
    ) -> ModelRecord:
        """Incrementally train a ready model; its ``model_id`` is unchanged."""
        record = self._require_ready(name)
        engine_class = self._require_capability(record.engine, Capability.UPDATE)
        future = self._executor.submit(
            self._run_update,
            record,
            engine_class,
            df.copy() if df is not None else None,
            dict(args or {}),
        )
        return future.result()

    def describe_model(self, name: str, key: Optional[str] = None) -> pd.DataFrame:
        """Engine-specific details of a ready model."""
        record = self._require_ready(name)
        engine_class = self._require_capability(record.engine, Capability.DESCRIBE)
        future = self._executor.submit(self._run_describe, record, engine_class, key)
        return future.result()

    def connect_engine(self, engine: str, args: Dict[str, Any]) -> None:
        """Validate and remember connection settings for ``engine``.

        Calling again with the same arguments leaves the engine's state as it
        was after the first call.
        """
        engine_class = self._require_capability(engine, Capability.CONNECT)
        future = self._executor.submit(self._run_connect, engine, engine_class, dict(args))
        future.result()

    def get_model(self, name: str) -> Optional[ModelRecord]:
        return self.record_store.get(name)

    def list_models(self) -> List[ModelRecord]:
        return self.record_store.list()

    def drop_model(self, name: str) -> None:
        """Delete a model record and its artifacts.

        Refused while the model's ``create`` is still running.
        """
        self._require_record(name)
        self._refuse_while_creating(name)

        with self._lock_for(name):
            self._refuse_while_creating(name)
            record = self._require_record(name)
            self._model_storage(record).clear()
            self.record_store.delete(name)

        with self._locks_guard:
            self._locks.pop(name, None)
        self._refresh_model_gauge()
        logger.info("Model dropped", model_name=name, model_id=record.model_id)
        self.event_bus.publish(ModelDroppedEvent(model_name=name, model_id=record.model_id, engine=record.engine))

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool."""
        self._executor.shutdown(wait=wait)
        logger.info("Engine handler shut down")

    def __enter__(self) -> "EngineHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False

    # ------------------------------------------------------------------
    # Worker-side operations
    # ------------------------------------------------------------------

    def _run_create(
        self,
        record: ModelRecord,
        engine_class: Type[BaseMLEngine],
        df: Optional[pd.DataFrame],
        args: Dict[str, Any],
    ) -> ModelRecord:
        start = time.perf_counter()
        with self._lock_for(record.name):
            try:
                self._invoke(
                    record,
                    engine_class,
                    "create",
                    EngineTrainingError,
                    lambda engine: engine.create(record.target, df=df, args=args),
                )
            except EngineError as e:
                self._model_storage(record).clear()
                record.mark_failed(str(e))
                self.record_store.save(record)
                self._refresh_model_gauge()
                self.event_bus.publish(ModelFailedEvent(
                    model_name=record.name,
                    model_id=record.model_id,
                    engine=record.engine,
                    error=str(e),
                ))
                raise

            record.mark_complete()
            self.record_store.save(record)

        duration_ms = int((time.perf_counter() - start) * 1000)
        self._refresh_model_gauge()
        logger.info("Model created", model_name=record.name, model_id=record.model_id, duration_ms=duration_ms)
        self.event_bus.publish(ModelCreatedEvent(
            model_name=record.name,
            model_id=record.model_id,
            engine=record.engine,
            target=record.target,
            duration_ms=duration_ms,
        ))
        return record

    def _run_predict(self, record: ModelRecord, df: pd.DataFrame, args: Dict[str, Any]) -> pd.DataFrame:
        start = time.perf_counter()
        engine_class = self.registry.get(record.engine)
        with self._lock_for(record.name):
            result = self._invoke(
                record,
                engine_class,
                "predict",
                EngineInferenceError,
                lambda engine: engine.predict(df, args=args),
            )
        output = self._conform_predictions(record, df, result)

        latency_ms = int((time.perf_counter() - start) * 1000)
        self.metrics.record_predicted_rows(record.engine, len(output))
        log_performance("predict", latency_ms, engine=record.engine, model_name=record.name, rows=len(output))
        self.event_bus.publish(PredictionCompletedEvent(
            model_name=record.name,
            model_id=record.model_id,
            engine=record.engine,
            rows=len(output),
            latency_ms=latency_ms,
        ))
        return output

    def _run_update(
        self,
        record: ModelRecord,
        engine_class: Type[BaseMLEngine],
        df: Optional[pd.DataFrame],
        args: Dict[str, Any],
    ) -> ModelRecord:
        start = time.perf_counter()
        with self._lock_for(record.name):
            self._invoke(
                record,
                engine_class,
                "update",
                EngineTrainingError,
                lambda engine: engine.update(df=df, args=args),
            )
            # Re-read so a concurrent status change is not overwritten.
            current = self._require_record(record.name)
            current.bump_version()
            self.record_store.save(current)

        logger.info("Model updated", model_name=current.name, model_id=current.model_id, version=current.version)
        self.event_bus.publish(ModelUpdatedEvent(
            model_name=current.name,
            model_id=current.model_id,
            engine=current.engine,
            version=current.version,
            duration_ms=int((time.perf_counter() - start) * 1000),
        ))
        return current

    def _run_describe(
        self,
        record: ModelRecord,
        engine_class: Type[BaseMLEngine],
        key: Optional[str],
    ) -> pd.DataFrame:
        with self._lock_for(record.name):
            result = self._invoke(
                record,
                engine_class,
                "describe",
                EngineInferenceError,
                lambda engine: engine.describe(key),
            )
        if not isinstance(result, pd.DataFrame):
            raise EngineInferenceError(
                f"describe returned {type(result).__name__}, expected a DataFrame",
                engine=record.engine,
                model_id=record.model_id,
            )
        return result

    def _run_connect(self, engine_name: str, engine_class: Type[BaseMLEngine], args: Dict[str, Any]) -> None:
        engine = engine_class(
            model_storage=None,
            engine_storage=self._engine_storage(engine_name),
            logger=engine_logger(engine_name),
        )
        with TracingContext(self.tracer, "engine.connect", engine=engine_name):
            try:
                with self.metrics.time_operation(engine_name, "connect"):
                    engine.connect(args)
            except Exception as e:
                error = normalize_error(e, EngineConnectionError, engine_name)
                logger.error("Engine connection failed", engine=engine_name, error=str(error))
                if error is e:
                    raise
                raise error from e
            finally:
                engine.close()
        self._connections[engine_name] = args
        logger.info("Engine connected", engine=engine_name)

    def _invoke(
        self,
        record: ModelRecord,
        engine_class: Type[BaseMLEngine],
        operation: str,
        default_error: Type[EngineError],
        call: Callable[[BaseMLEngine], Any],
    ) -> Any:
        """Run one engine call with tracing, metrics and error normalization."""
        engine = self._build_engine(record, engine_class)
        with TracingContext(
            self.tracer,
            f"engine.{operation}",
            engine=record.engine,
            model_name=record.name,
            model_id=record.model_id,
        ):
            try:
                with self.metrics.time_operation(record.engine, operation):
                    return call(engine)
            except Exception as e:
                error = normalize_error(e, default_error, record.engine, record.model_id)
                logger.error(
                    f"Engine {operation} failed",
                    engine=record.engine,
                    model_name=record.name,
                    model_id=record.model_id,
                    error_type=type(error).__name__,
                    error=str(error),
                )
                if error is e:
                    raise
                raise error from e
            finally:
                engine.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _conform_predictions(self, record: ModelRecord, df: pd.DataFrame, result: Any) -> pd.DataFrame:
        """Check an engine's prediction table and join it onto the input."""
        if not isinstance(result, pd.DataFrame):
            raise EngineInferenceError(
                f"predict returned {type(result).__name__}, expected a DataFrame",
                engine=record.engine,
                model_id=record.model_id,
            )
        if record.target not in result.columns:
            raise EngineInferenceError(
                f"Prediction table lacks the target column '{record.target}'",
                engine=record.engine,
                model_id=record.model_id,
            )
        if len(result) != len(df):
            raise EngineInferenceError(
                f"Prediction table has {len(result)} rows for {len(df)} input rows",
                engine=record.engine,
                model_id=record.model_id,
            )

        output = df.drop(columns=[record.target], errors="ignore").copy()
        for column in result.columns:
            output[column] = result[column].to_numpy()

        if record.target_dtype is not None and DataType(record.target_dtype) in NUMERIC_TYPES:
            try:
                output[record.target] = pd.to_numeric(output[record.target])
            except (TypeError, ValueError) as e:
                raise EngineInferenceError(
                    f"Predicted values for '{record.target}' are not numeric: {e}",
                    engine=record.engine,
                    model_id=record.model_id,
                ) from e
        return output

    def _build_engine(self, record: ModelRecord, engine_class: Type[BaseMLEngine]) -> BaseMLEngine:
        return engine_class(
            model_storage=self._model_storage(record),
            engine_storage=self._engine_storage(record.engine),
            logger=engine_logger(
                record.engine,
                model_name=record.name,
                model_id=record.model_id,
            ),
        )

    def _model_storage(self, record: ModelRecord) -> ModelStorage:
        return ModelStorage(self.storage_root / "models" / record.model_id, record.model_id)

    def _engine_storage(self, engine: str) -> EngineStorage:
        return EngineStorage(self.storage_root / "engines" / engine, engine)

    def _lock_for(self, name: str) -> threading.RLock:
        with self._locks_guard:
            if name not in self._locks:
                self._locks[name] = threading.RLock()
            return self._locks[name]

    def _collect(self, name: str, future: Future, timeout: Optional[float]) -> None:
        try:
            future.result(timeout=timeout)
        finally:
            if future.done():
                self._forget_pending(name, future)

    def _forget_pending(self, name: str, future: Future) -> None:
        with self._locks_guard:
            if self._pending.get(name) is future:
                del self._pending[name]

    def _refuse_while_creating(self, name: str) -> None:
        with self._locks_guard:
            future = self._pending.get(name)
        if future is not None and not future.done():
            raise EngineValidationError(f"Model '{name}' is still being created")

    def _require_record(self, name: str) -> ModelRecord:
        record = self.record_store.get(name)
        if record is None:
            raise EngineValidationError(f"Model '{name}' does not exist")
        return record

    def _require_ready(self, name: str) -> ModelRecord:
        record = self._require_record(name)
        if record.status != ModelStatus.COMPLETE:
            detail = f": {record.error}" if record.error else ""
            raise EngineValidationError(
                f"Model '{name}' is not ready (status '{record.status.value}'){detail}",
                engine=record.engine,
                model_id=record.model_id,
            )
        return record

    def _require_capability(self, engine: str, capability: Capability) -> Type[BaseMLEngine]:
        engine_class = self.registry.get(engine)
        if not engine_class.supports(capability):
            raise EngineNotSupportedError(
                f"Engine '{engine}' does not support '{capability.value}'",
                engine=engine,
            )
        return engine_class

    def _validate_name(self, name: str) -> None:
        if not isinstance(name, str) or not MODEL_NAME_PATTERN.match(name):
            raise EngineValidationError(
                f"Invalid model name {name!r}; use letters, digits, '_', '-' or '.'"
            )

    def _refresh_model_gauge(self) -> None:
        counts = {status: 0 for status in ModelStatus}
        for record in self.record_store.list():
            counts[record.status] += 1
        for status, count in counts.items():
            self.metrics.set_model_count(status.value, count)
