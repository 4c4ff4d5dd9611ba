"""Persisted state for engines and the execution wrapper.

Primary components:
- ``file_storage``: ``ModelStorage`` (artifacts of one model, keyed by its id)
  and ``EngineStorage`` (state shared by every model of one engine, such as
  connection settings).
- ``records``: ``ModelRecord`` and the ``RecordStore`` that persists them.
"""

from .file_storage import EngineStorage, FileStorage, ModelStorage
from .records import ModelRecord, ModelStatus, RecordStore

__all__ = [
    "EngineStorage",
    "FileStorage",
    "ModelRecord",
    "ModelStatus",
    "ModelStorage",
    "RecordStore",
]
