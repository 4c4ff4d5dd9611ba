"""ML engine adapter toolkit.

Packages:
- ``engines``: the adapter interface, reference adapters, and the registry.
- ``wrapper``: the execution wrapper that drives adapters on worker threads.
- ``storage``: model records and per-model / per-engine artifact storage.
- ``dataprep``: type inference, cleaning/splitting, and evaluation helpers.
- ``common``: configuration, logging, metrics, tracing, events, resilience.

Import pattern:
- from mlengines.engines.base import BaseMLEngine
- from mlengines.wrapper.handler import EngineHandler
"""

__version__ = "0.1.0"
