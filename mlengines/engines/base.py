"""Base ML engine interface.

Defines the contract every machine-learning backend implements so a host can
drive it exactly like any other backend, independent of the framework behind
it (scikit-learn, a deep-learning library, a hosted inference API, ...).

Two operations are mandatory (``create`` and ``predict``). Three are
optional (``update``, ``describe``, ``connect``); an engine advertises the
ones it implements in ``capabilities`` and the host checks that set before
calling them. Calling an optional operation an engine does not implement
raises ``EngineNotSupportedError``.

Engines run on worker threads of the host. They must report diagnostics
through ``self.logger`` (injected at construction) and never print.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Type

import pandas as pd
from pydantic import BaseModel, ConfigDict, ValidationError

from mlengines.common.logging import engine_logger
from mlengines.storage.file_storage import EngineStorage, ModelStorage

# Columns whose name ends with this suffix carry row-wise explanations,
# never predicted values.
EXPLAIN_SUFFIX = "_explain"


class Capability(Enum):
    """Operations an engine can support."""
    CREATE = "create"
    PREDICT = "predict"
    UPDATE = "update"
    DESCRIBE = "describe"
    CONNECT = "connect"


REQUIRED_CAPABILITIES: FrozenSet[Capability] = frozenset({Capability.CREATE, Capability.PREDICT})
OPTIONAL_CAPABILITIES: FrozenSet[Capability] = frozenset(
    {Capability.UPDATE, Capability.DESCRIBE, Capability.CONNECT}
)


class EngineError(Exception):
    """Base exception for engine operations."""

    def __init__(self, message: str, engine: Optional[str] = None, model_id: Optional[str] = None):
        super().__init__(message)
        self.engine = engine
        self.model_id = model_id


class EngineValidationError(EngineError):
    """Malformed or missing input, e.g. a target column absent from the data."""
    pass


class EngineNotSupportedError(EngineError):
    """An optional operation was invoked on an engine that lacks it."""
    pass


class EngineTrainingError(EngineError):
    """The framework's fit/train step failed."""
    pass


class EngineInferenceError(EngineError):
    """The framework's predict step failed or feature columns are missing."""
    pass


class EngineConnectionError(EngineError):
    """An external resource is unreachable or rejected the credentials."""
    pass


class EngineArgs(BaseModel):
    """Argument bag accepted by an engine.

    Subclasses declare the well-known keys of their engine with types and
    defaults. Unknown keys are kept (``extra="allow"``) so callers can pass
    engine-specific extensions through untouched.
    """

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    def extra_args(self) -> Dict[str, Any]:
        """Keys supplied by the caller that the model does not declare."""
        return dict(self.model_extra or {})


def explain_column(target: str) -> str:
    """Name of the explanation column for ``target``."""
    return f"{target}{EXPLAIN_SUFFIX}"


def is_explanation_column(column: Any) -> bool:
    return str(column).endswith(EXPLAIN_SUFFIX)


def explanation_columns(df: pd.DataFrame) -> List[str]:
    """Explanation columns of a prediction table."""
    return [column for column in df.columns if is_explanation_column(column)]


def prediction_columns(df: pd.DataFrame) -> List[str]:
    """Columns of a prediction table that hold values, not explanations."""
    return [column for column in df.columns if not is_explanation_column(column)]


class BaseMLEngine(ABC):
    """Abstract base class for ML engines.

    Parameters
    - model_storage: Artifact storage of the model this instance serves
      (``None`` for engine-level calls such as ``connect``)
    - engine_storage: Storage shared by every model of this engine
    - logger: Logger for diagnostics; defaults to a structlog logger bound
      with the engine name and model id

    Implementations persist everything they need in ``model_storage`` during
    ``create``/``update`` and reload it in ``predict``/``describe``; the host
    builds a fresh instance for every call.
    """

    name: str = "base"
    capabilities: FrozenSet[Capability] = REQUIRED_CAPABILITIES
    args_model: Type[EngineArgs] = EngineArgs

    def __init__(
        self,
        model_storage: Optional[ModelStorage],
        engine_storage: Optional[EngineStorage],
        logger: Optional[Any] = None,
    ):
        self.model_storage = model_storage
        self.engine_storage = engine_storage
        self.logger = logger or engine_logger(self.name, model_id=self.model_id)

    @property
    def model_id(self) -> Optional[str]:
        return self.model_storage.model_id if self.model_storage is not None else None

    @classmethod
    def supports(cls, capability: Capability) -> bool:
        """Check whether this engine implements ``capability``."""
        return capability in cls.capabilities

    def parse_args(self, args: Optional[Dict[str, Any]]) -> EngineArgs:
        """Validate an argument bag against ``args_model``."""
        return self.validate_args(self.args_model, args)

    def validate_args(self, model: Type[EngineArgs], args: Optional[Dict[str, Any]]) -> EngineArgs:
        try:
            return model.model_validate(args or {})
        except ValidationError as e:
            raise EngineValidationError(
                f"Invalid arguments for engine '{self.name}': {e}",
                engine=self.name,
                model_id=self.model_id,
            ) from e

    def validate_target(self, target: str, df: Optional[pd.DataFrame]) -> None:
        """Ensure ``target`` names a column of ``df`` (when data is given)."""
        if not target:
            raise EngineValidationError("A target column is required", engine=self.name, model_id=self.model_id)
        if df is not None and target not in df.columns:
            raise EngineValidationError(
                f"Target column '{target}' not found in data; available columns: {list(df.columns)}",
                engine=self.name,
                model_id=self.model_id,
            )

    def require_model_storage(self) -> ModelStorage:
        if self.model_storage is None:
            raise EngineValidationError(
                f"Engine '{self.name}' needs model storage for this operation",
                engine=self.name,
            )
        return self.model_storage

    def _not_supported(self, capability: Capability) -> EngineNotSupportedError:
        return EngineNotSupportedError(
            f"Engine '{self.name}' does not support '{capability.value}'",
            engine=self.name,
            model_id=self.model_id,
        )

    @abstractmethod
    def create(
        self,
        target: str,
        df: Optional[pd.DataFrame] = None,
        args: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Train (or register) a model predicting ``target``.

        ``df`` may be ``None`` for engines that register a reference to an
        externally trained model. Raises ``EngineValidationError`` when
        ``target`` is not a column of ``df`` and ``EngineTrainingError`` when
        the framework's fit fails.
        """

    @abstractmethod
    def predict(self, df: pd.DataFrame, args: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
        """Score ``df``.

        Returns one row per input row, in input order, with a column named
        after the target and optional ``*_explain`` columns. Raises
        ``EngineInferenceError`` on missing feature columns or framework
        failures. Must not modify stored artifacts.
        """

    def update(self, df: Optional[pd.DataFrame] = None, args: Optional[Dict[str, Any]] = None) -> None:
        """Adjust an existing model without discarding what it learned."""
        raise self._not_supported(Capability.UPDATE)

    def describe(self, key: Optional[str] = None) -> pd.DataFrame:
        """Report engine-specific details of the model; read-only."""
        raise self._not_supported(Capability.DESCRIBE)

    def connect(self, args: Dict[str, Any]) -> None:
        """Establish or validate connectivity to an external resource."""
        raise self._not_supported(Capability.CONNECT)

    def close(self) -> None:
        """Release resources held by this instance."""
        pass
