"""SQLite-backed RecordStore."""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from promorch.store.base import RecordStore, StoredRecord, normalize_path
from promorch.utils import parse_timestamp, utcnow

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    path TEXT PRIMARY KEY,
    doc TEXT NOT NULL,
    version INTEGER NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class SqliteRecordStore(RecordStore):
    """
    RecordStore over a single SQLite table.

    compare_and_swap is a single ``UPDATE ... WHERE version = ?`` (or an
    ``INSERT OR IGNORE`` for expected version 0), so the database enforces
    the condition even across processes.
    """

    def __init__(self, db_path: Path | str):
        if str(db_path) != ":memory:":
            db_path = Path(db_path).expanduser()
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.execute(_SCHEMA)

    def read_record(self, path: str) -> Optional[StoredRecord]:
        key = normalize_path(path)
        with self._lock:
            row = self._conn.execute(
                "SELECT doc, version, updated_at FROM records WHERE path = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return StoredRecord(json.loads(row[0]), row[1], parse_timestamp(row[2]))

    def write_json(self, path: str, doc: Any) -> int:
        key = normalize_path(path)
        payload = json.dumps(doc)
        now = utcnow().isoformat()
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO records (path, doc, version, updated_at) VALUES (?, ?, 1, ?) "
                "ON CONFLICT(path) DO UPDATE SET doc = excluded.doc, "
                "version = records.version + 1, updated_at = excluded.updated_at",
                (key, payload, now),
            )
            row = self._conn.execute("SELECT version FROM records WHERE path = ?", (key,)).fetchone()
        return row[0]

    def compare_and_swap(self, path: str, expected_version: int, doc: Any) -> bool:
        key = normalize_path(path)
        payload = json.dumps(doc)
        now = utcnow().isoformat()
        with self._lock, self._conn:
            if expected_version == 0:
                cursor = self._conn.execute(
                    "INSERT OR IGNORE INTO records (path, doc, version, updated_at) VALUES (?, ?, 1, ?)",
                    (key, payload, now),
                )
            else:
                cursor = self._conn.execute(
                    "UPDATE records SET doc = ?, version = version + 1, updated_at = ? "
                    "WHERE path = ? AND version = ?",
                    (payload, now, key, expected_version),
                )
        return cursor.rowcount == 1

    def list(self, prefix: str = "") -> list[str]:
        prefix = prefix.strip("/")
        with self._lock:
            if prefix:
                rows = self._conn.execute(
                    "SELECT path FROM records WHERE path = ? OR substr(path, 1, ?) = ? ORDER BY path",
                    (prefix, len(prefix) + 1, prefix + "/"),
                ).fetchall()
            else:
                rows = self._conn.execute("SELECT path FROM records ORDER BY path").fetchall()
        return [r[0] for r in rows]

    def delete(self, path: str) -> bool:
        key = normalize_path(path)
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM records WHERE path = ?", (key,))
        return cursor.rowcount == 1

    def close(self) -> None:
        self._conn.close()
