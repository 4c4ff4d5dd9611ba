"""ML engine interface, reference engines and registry.

Primary components:
- ``base``: abstract ``BaseMLEngine`` contract, capability flags, argument
  bags and the error taxonomy.
- ``sklearn_engine``: trains scikit-learn pipelines locally.
- ``http_engine``: registers models served by an external HTTP endpoint.
- ``factory``: registry mapping engine names to classes.

Guidance:
- Subclass ``BaseMLEngine``, list the optional operations you implement in
  ``capabilities`` and register the class with ``register_engine``.
"""

from .base import (
    EXPLAIN_SUFFIX,
    BaseMLEngine,
    Capability,
    EngineArgs,
    EngineConnectionError,
    EngineError,
    EngineInferenceError,
    EngineNotSupportedError,
    EngineTrainingError,
    EngineValidationError,
    explain_column,
    explanation_columns,
    prediction_columns,
)
from .factory import EngineRegistry, create_engine, default_registry, register_engine

__all__ = [
    "EXPLAIN_SUFFIX",
    "BaseMLEngine",
    "Capability",
    "EngineArgs",
    "EngineConnectionError",
    "EngineError",
    "EngineInferenceError",
    "EngineNotSupportedError",
    "EngineRegistry",
    "EngineTrainingError",
    "EngineValidationError",
    "create_engine",
    "default_registry",
    "explain_column",
    "explanation_columns",
    "prediction_columns",
    "register_engine",
]
