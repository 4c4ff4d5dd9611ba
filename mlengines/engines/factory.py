"""Engine registry and factory.

Maps engine names to ``BaseMLEngine`` subclasses so callers never depend on
a concrete engine. Built-in engines register on import; third-party engines
register either with the ``register_engine`` decorator or through the
``mlengines.engines`` entry-point group of their distribution.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

import structlog

from mlengines.storage.file_storage import EngineStorage, ModelStorage

from .base import (
    OPTIONAL_CAPABILITIES,
    REQUIRED_CAPABILITIES,
    BaseMLEngine,
    EngineValidationError,
)
from .http_engine import HttpEngine
from .sklearn_engine import SklearnEngine

logger = structlog.get_logger("engines.factory")

ENTRY_POINT_GROUP = "mlengines.engines"


class EngineRegistry:
    """Registry of available engine classes."""

    def __init__(self):
        self._engines: Dict[str, Type[BaseMLEngine]] = {}

    def register(self, engine_class: Type[BaseMLEngine], name: Optional[str] = None) -> Type[BaseMLEngine]:
        """Register an engine class.

        The class must implement the mandatory operations, and every optional
        capability it advertises must be backed by an override of the
        corresponding method.
        """
        if not (isinstance(engine_class, type) and issubclass(engine_class, BaseMLEngine)):
            raise TypeError(f"{engine_class!r} is not a BaseMLEngine subclass")

        engine_name = name or engine_class.name
        if not engine_name or engine_name == BaseMLEngine.name:
            raise ValueError(f"{engine_class.__name__} needs a unique 'name'")

        missing = REQUIRED_CAPABILITIES - set(engine_class.capabilities)
        if missing:
            raise ValueError(
                f"Engine '{engine_name}' must support {sorted(c.value for c in missing)}"
            )
        for capability in OPTIONAL_CAPABILITIES & set(engine_class.capabilities):
            method = capability.value
            if getattr(engine_class, method) is getattr(BaseMLEngine, method):
                raise ValueError(
                    f"Engine '{engine_name}' advertises '{method}' but does not implement it"
                )

        if engine_name in self._engines and self._engines[engine_name] is not engine_class:
            logger.warning("Replacing registered engine", engine=engine_name)
        self._engines[engine_name] = engine_class
        logger.debug("Engine registered", engine=engine_name, engine_class=engine_class.__name__)
        return engine_class

    def unregister(self, name: str) -> None:
        self._engines.pop(name, None)

    def get(self, name: str) -> Type[BaseMLEngine]:
        """Look up an engine class by name."""
        try:
            return self._engines[name]
        except KeyError:
            raise EngineValidationError(
                f"Unknown engine '{name}'; available engines: {self.list_engines()}",
                engine=name,
            ) from None

    def is_registered(self, name: str) -> bool:
        return name in self._engines

    def list_engines(self) -> List[str]:
        return sorted(self._engines)

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> List[str]:
        """Register engines advertised by installed distributions.

        A plugin that fails to import is logged and skipped so one broken
        distribution cannot hide every other engine.
        """
        loaded = []
        for entry_point in entry_points(group=group):
            try:
                engine_class = entry_point.load()
                self.register(engine_class, name=entry_point.name)
            except Exception as e:
                logger.error(
                    "Failed to load engine plugin",
                    entry_point=entry_point.value,
                    error=str(e),
                )
                continue
            loaded.append(entry_point.name)
        if loaded:
            logger.info("Loaded engine plugins", engines=loaded)
        return loaded


default_registry = EngineRegistry()
default_registry.register(SklearnEngine)
default_registry.register(HttpEngine)


def register_engine(engine_class: Type[BaseMLEngine]) -> Type[BaseMLEngine]:
    """Class decorator registering an engine in the default registry."""
    return default_registry.register(engine_class)


def create_engine(
    name: str,
    model_storage: Optional[ModelStorage],
    engine_storage: Optional[EngineStorage],
    registry: Optional[EngineRegistry] = None,
    **kwargs: Any
) -> BaseMLEngine:
    """Instantiate the engine registered as ``name``."""
    engine_class = (registry or default_registry).get(name)
    return engine_class(model_storage=model_storage, engine_storage=engine_storage, **kwargs)
