"""
promorch.store - Versioned record storage.

Usage:
    from promorch.store import create_store

    store = create_store("file", "~/.local/share/promorch/store")
    record = store.read_record("project_queue")
    store.compare_and_swap("project_queue", record.version, new_queue)
"""

from pathlib import Path

from .base import NO_CHANGE, RecordStore, StoredRecord, normalize_path
from .memory import InMemoryRecordStore
from .file import FileRecordStore
from .sqlite import SqliteRecordStore


def create_store(backend: str, path: str | Path | None = None) -> RecordStore:
    """
    Build a RecordStore for a backend name.

    Args:
        backend: memory, file or sqlite
        path: Store directory (file) or database file (sqlite)

    Raises:
        ValueError: On an unknown backend or a missing path
    """
    if backend == "memory":
        return InMemoryRecordStore()
    if path is None:
        raise ValueError(f"Store backend '{backend}' requires a path")
    if backend == "file":
        return FileRecordStore(path)
    if backend == "sqlite":
        return SqliteRecordStore(path)
    raise ValueError(f"Unknown store backend: {backend}")


__all__ = [
    "NO_CHANGE",
    "RecordStore",
    "StoredRecord",
    "normalize_path",
    "InMemoryRecordStore",
    "FileRecordStore",
    "SqliteRecordStore",
    "create_store",
]
