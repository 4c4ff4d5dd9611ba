#!/usr/bin/env python3
"""Script to scaffold a new ML engine.

Writes ``mlengines/engines/<name>_engine.py`` with a working baseline engine
(predicts the most frequent target value) and ``tests/test_<name>_engine.py``
exercising it through the execution wrapper. Existing files are never
overwritten.
"""

import argparse
import re
import sys
from pathlib import Path
from typing import List

import structlog

from mlengines.common.logging import configure_logging

logger = structlog.get_logger("scaffold_engine")

ENGINE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

ENGINE_TEMPLATE = '''"""{title} engine."""

from typing import Any, Dict, Optional

import pandas as pd

from .base import BaseMLEngine, Capability, EngineArgs, EngineInferenceError
from .factory import register_engine

STATE_FILE = "state.json"


class {class_name}Args(EngineArgs):
    """Arguments accepted by the {name} engine."""
    pass


@register_engine
class {class_name}Engine(BaseMLEngine):
    """Baseline engine predicting the most frequent target value."""

    name = "{name}"
    capabilities = frozenset({{Capability.CREATE, Capability.PREDICT}})
    args_model = {class_name}Args

    def create(
        self,
        target: str,
        df: Optional[pd.DataFrame] = None,
        args: Optional[Dict[str, Any]] = None,
    ) -> None:
        storage = self.require_model_storage()
        self.validate_target(target, df)
        self.parse_args(args)

        value = None
        if df is not None and not df[target].dropna().empty:
            value = df[target].dropna().mode().iloc[0]
            value = value.item() if hasattr(value, "item") else value
        storage.json_set(STATE_FILE, {{"target": target, "value": value}})
        self.logger.info("Model created", target=target)

    def predict(self, df: pd.DataFrame, args: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
        state = self.require_model_storage().json_get(STATE_FILE)
        if state is None:
            raise EngineInferenceError(
                "Model state not found", engine=self.name, model_id=self.model_id
            )
        return pd.DataFrame({{state["target"]: [state["value"]] * len(df)}}, index=df.index)
'''

TEST_TEMPLATE = '''"""Tests for the {name} engine."""

import pandas as pd
import pytest

from mlengines.common.config import HandlerConfig
from mlengines.engines.{name}_engine import {class_name}Engine
from mlengines.engines.factory import EngineRegistry
from mlengines.wrapper.handler import EngineHandler


@pytest.fixture
def handler(tmp_path):
    registry = EngineRegistry()
    registry.register({class_name}Engine)
    handler = EngineHandler(
        config=HandlerConfig(ml_engine_storage_path=str(tmp_path)),
        registry=registry,
    )
    yield handler
    handler.shutdown()


@pytest.mark.contract
def test_create_and_predict(handler):
    df = pd.DataFrame({{"x": [1, 2, 3], "y": [5, 5, 7]}})
    record = handler.create_model("baseline", "{name}", "y", df=df)
    assert record.is_ready

    result = handler.predict("baseline", pd.DataFrame({{"x": [4, 5]}}))
    assert list(result["y"]) == [5, 5]
'''


def class_name_for(name: str) -> str:
    """``my_engine`` -> ``MyEngine``."""
    return "".join(part.capitalize() for part in name.split("_"))


def scaffold_engine(name: str, root: Path) -> List[Path]:
    """Create the engine module and its test under ``root``.

    Returns the paths written. Raises ``ValueError`` for an invalid name and
    ``FileExistsError`` when either file already exists.
    """
    if not ENGINE_NAME_PATTERN.match(name):
        raise ValueError(f"Invalid engine name {name!r}; use lowercase letters, digits and '_'")

    values = {
        "name": name,
        "class_name": class_name_for(name),
        "title": name.replace("_", " ").capitalize(),
    }
    targets = [
        (root / "mlengines" / "engines" / f"{name}_engine.py", ENGINE_TEMPLATE),
        (root / "tests" / f"test_{name}_engine.py", TEST_TEMPLATE),
    ]

    existing = [path for path, _ in targets if path.exists()]
    if existing:
        raise FileExistsError(f"Refusing to overwrite {', '.join(str(p) for p in existing)}")

    written = []
    for path, template in targets:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(template.format(**values))
        written.append(path)
        logger.info("File written", path=str(path))
    return written


def main():
    """Main function for CLI."""
    parser = argparse.ArgumentParser(description="Scaffold a new ML engine")
    parser.add_argument("name", help="Engine name, e.g. 'prophet'")
    parser.add_argument("--root", default=".", help="Repository root")

    args = parser.parse_args()

    configure_logging("scaffold_engine", "INFO", "console")

    try:
        written = scaffold_engine(args.name, Path(args.root))
    except (ValueError, FileExistsError) as e:
        logger.error("Scaffolding failed", engine=args.name, error=str(e))
        sys.exit(1)

    print(f"Engine '{args.name}' scaffolded:")
    for path in written:
        print(f"  {path}")
    print("Import the module (or list it under the 'mlengines.engines' entry point) to register it.")


if __name__ == "__main__":
    main()
