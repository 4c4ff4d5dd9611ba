"""Execution wrapper hosting engines.

``EngineHandler`` keeps the model registry, runs engine calls on worker
threads and turns engine failures into the ``EngineError`` taxonomy.
"""

from .handler import EngineHandler, normalize_error

__all__ = ["EngineHandler", "normalize_error"]
