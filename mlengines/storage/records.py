"""Model records and their persistence.

A ``ModelRecord`` is the handle the host uses to address one model. Its
``status`` tells whether the model can serve predictions: records start in
``generating``, move to ``complete`` after a successful ``create`` and to
``error`` when it fails. Only ``complete`` records are usable.
"""

import json
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from .file_storage import FileStorage

logger = structlog.get_logger("storage.records")


class ModelStatus(str, Enum):
    """Readiness of a model record."""
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ModelRecord:
    """One registered model."""
    name: str
    engine: str
    model_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    target: Optional[str] = None
    target_dtype: Optional[str] = None
    args: Dict[str, Any] = field(default_factory=dict)
    status: ModelStatus = ModelStatus.GENERATING
    error: Optional[str] = None
    version: int = 1
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_ready(self) -> bool:
        return self.status == ModelStatus.COMPLETE

    def mark_complete(self) -> None:
        self.status = ModelStatus.COMPLETE
        self.error = None
        self.updated_at = time.time()

    def mark_failed(self, error: str) -> None:
        self.status = ModelStatus.ERROR
        self.error = error
        self.updated_at = time.time()

    def bump_version(self) -> None:
        self.version += 1
        self.updated_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelRecord":
        data = dict(data)
        data["status"] = ModelStatus(data.get("status", ModelStatus.GENERATING.value))
        return cls(**data)


class RecordStore:
    """Persists model records as one JSON document per model name."""

    def __init__(self, root: Union[str, Path]):
        self._files = FileStorage(root)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._files.root

    def save(self, record: ModelRecord) -> None:
        with self._lock:
            self._files.json_set(f"{record.name}.json", record.to_dict())

    def get(self, name: str) -> Optional[ModelRecord]:
        with self._lock:
            data = self._files.json_get(f"{name}.json")
        if data is None:
            return None
        return ModelRecord.from_dict(data)

    def list(self) -> List[ModelRecord]:
        records = []
        with self._lock:
            names = self._files.list_files()
        for file_name in names:
            if not file_name.endswith(".json"):
                continue
            try:
                record = self.get(file_name[: -len(".json")])
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable model record", file=file_name, error=str(e))
                continue
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.created_at)

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._files.delete(f"{name}.json")
