"""In-memory RecordStore."""

import copy
import json
import threading
from typing import Any, Optional

from promorch.store.base import RecordStore, StoredRecord, normalize_path
from promorch.utils import utcnow


class InMemoryRecordStore(RecordStore):
    """
    In-memory implementation of RecordStore for testing.

    Documents are round-tripped through JSON on write so callers never share
    mutable state with the store. All data is lost when the instance is
    garbage collected.
    """

    def __init__(self):
        self._records: dict[str, StoredRecord] = {}
        self._lock = threading.Lock()

    def read_record(self, path: str) -> Optional[StoredRecord]:
        key = normalize_path(path)
        with self._lock:
            record = self._records.get(key)
        if record is None:
            return None
        return StoredRecord(copy.deepcopy(record.doc), record.version, record.updated_at)

    def write_json(self, path: str, doc: Any) -> int:
        key = normalize_path(path)
        frozen = json.loads(json.dumps(doc))
        with self._lock:
            current = self._records.get(key)
            version = (current.version if current else 0) + 1
            self._records[key] = StoredRecord(frozen, version, utcnow())
        return version

    def compare_and_swap(self, path: str, expected_version: int, doc: Any) -> bool:
        key = normalize_path(path)
        frozen = json.loads(json.dumps(doc))
        with self._lock:
            current = self._records.get(key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._records[key] = StoredRecord(frozen, current_version + 1, utcnow())
        return True

    def list(self, prefix: str = "") -> list[str]:
        prefix = prefix.strip("/")
        with self._lock:
            keys = list(self._records)
        if not prefix:
            return sorted(keys)
        return sorted(k for k in keys if k == prefix or k.startswith(prefix + "/"))

    def delete(self, path: str) -> bool:
        key = normalize_path(path)
        with self._lock:
            return self._records.pop(key, None) is not None
