"""Directory-backed storage handles handed to engines.

Each handle owns one directory. Engines store whatever they need there:
raw bytes, JSON documents, or joblib-serialized Python objects (fitted
pipelines). Writes go to a temporary file first and are moved into place,
so a crash mid-write never leaves a truncated artifact behind.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Union

import joblib
import structlog

logger = structlog.get_logger("storage")


class FileStorage:
    """Named artifacts inside a single directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        # Artifact names are flat; anything path-like would escape the root.
        if not name or Path(name).name != name or name in (".", ".."):
            raise ValueError(f"Invalid artifact name: {name!r}")
        return self.root / name

    def _write_atomic(self, name: str, writer) -> None:
        path = self._path(name)
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.root), prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                writer(f)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def file_set(self, name: str, content: bytes) -> None:
        self._write_atomic(name, lambda f: f.write(content))

    def file_get(self, name: str) -> Optional[bytes]:
        path = self._path(name)
        if not path.exists():
            return None
        return path.read_bytes()

    def json_set(self, name: str, data: Any) -> None:
        payload = json.dumps(data, indent=2, default=str).encode("utf-8")
        self.file_set(name, payload)

    def json_get(self, name: str, default: Any = None) -> Any:
        content = self.file_get(name)
        if content is None:
            return default
        return json.loads(content.decode("utf-8"))

    def joblib_set(self, name: str, obj: Any) -> None:
        self._write_atomic(name, lambda f: joblib.dump(obj, f))

    def joblib_get(self, name: str) -> Any:
        path = self._path(name)
        if not path.exists():
            raise FileNotFoundError(f"Artifact not found: {path}")
        return joblib.load(str(path))

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def delete(self, name: str) -> bool:
        path = self._path(name)
        if path.exists():
            path.unlink()
            return True
        return False

    def list_files(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_file() and not p.name.startswith(".")
        )

    def clear(self) -> None:
        """Remove the directory and everything in it."""
        if self.root.exists():
            shutil.rmtree(self.root)
            logger.debug("Storage cleared", path=str(self.root))


class ModelStorage(FileStorage):
    """Artifacts belonging to one model record."""

    def __init__(self, root: Union[str, Path], model_id: str):
        super().__init__(root)
        self.model_id = model_id

    def __repr__(self) -> str:
        return f"ModelStorage(model_id={self.model_id!r}, root={str(self.root)!r})"


class EngineStorage(FileStorage):
    """State shared by every model of one engine."""

    def __init__(self, root: Union[str, Path], engine_name: str):
        super().__init__(root)
        self.engine_name = engine_name

    def __repr__(self) -> str:
        return f"EngineStorage(engine_name={self.engine_name!r}, root={str(self.root)!r})"
