"""File-based RecordStore."""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from promorch.store.base import RecordStore, StoredRecord, normalize_path
from promorch.utils import parse_timestamp, utcnow

_DOC_SUFFIX = ".json"
_META_SUFFIX = ".meta"


class FileRecordStore(RecordStore):
    """
    File-based implementation of RecordStore.

    Stores each document as a JSON file with a version sidecar:
        store_dir/
            .store.lock
            docs/
                project_queue.json
                project_queue.json.meta
                {project}/
                    status.json
                    status.json.meta
                    processing/
                        batch_status.json
                        ...

    Writes and compare-and-swap run under an exclusive ``fcntl`` lock on
    ``.store.lock``, so several processes on one host may share a store.
    Files are replaced atomically; readers never see partial documents.
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir).expanduser()
        self._docs_dir = self._store_dir / "docs"
        self._docs_dir.mkdir(parents=True, exist_ok=True)
        self._lock_path = self._store_dir / ".store.lock"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock_path.open("a+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _doc_path(self, path: str) -> Path:
        return self._docs_dir / (normalize_path(path) + _DOC_SUFFIX)

    @staticmethod
    def _meta_path(doc_path: Path) -> Path:
        return doc_path.with_name(doc_path.name + _META_SUFFIX)

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _read_version(self, doc_path: Path) -> int:
        meta_path = self._meta_path(doc_path)
        if not doc_path.exists():
            return 0
        if not meta_path.exists():
            return 1
        with open(meta_path) as f:
            return int(json.load(f).get("version", 1))

    def _write_locked(self, doc_path: Path, doc: Any, version: int) -> None:
        # Meta first: a reader that sees the new doc never sees an older version
        meta = {"version": version, "updatedAt": utcnow().isoformat()}
        self._atomic_write(self._meta_path(doc_path), json.dumps(meta))
        self._atomic_write(doc_path, json.dumps(doc, indent=2))

    def read_record(self, path: str) -> Optional[StoredRecord]:
        doc_path = self._doc_path(path)
        if not doc_path.exists():
            return None
        with self._locked():
            if not doc_path.exists():
                return None
            with open(doc_path) as f:
                doc = json.load(f)
            meta_path = self._meta_path(doc_path)
            meta = {}
            if meta_path.exists():
                with open(meta_path) as f:
                    meta = json.load(f)
        updated_at = parse_timestamp(meta.get("updatedAt"))
        if updated_at is None:
            updated_at = parse_timestamp(doc_path.stat().st_mtime * 1000)
        return StoredRecord(doc, int(meta.get("version", 1)), updated_at)

    def write_json(self, path: str, doc: Any) -> int:
        doc_path = self._doc_path(path)
        with self._locked():
            version = self._read_version(doc_path) + 1
            self._write_locked(doc_path, doc, version)
        return version

    def compare_and_swap(self, path: str, expected_version: int, doc: Any) -> bool:
        doc_path = self._doc_path(path)
        with self._locked():
            current = self._read_version(doc_path)
            if current != expected_version:
                return False
            self._write_locked(doc_path, doc, current + 1)
        return True

    def list(self, prefix: str = "") -> list[str]:
        prefix = prefix.strip("/")
        paths = []
        for doc_path in self._docs_dir.rglob(f"*{_DOC_SUFFIX}"):
            if doc_path.name.startswith("."):
                continue
            key = doc_path.relative_to(self._docs_dir).as_posix()[: -len(_DOC_SUFFIX)]
            if not prefix or key == prefix or key.startswith(prefix + "/"):
                paths.append(key)
        return sorted(paths)

    def delete(self, path: str) -> bool:
        doc_path = self._doc_path(path)
        with self._locked():
            if not doc_path.exists():
                return False
            doc_path.unlink()
            meta_path = self._meta_path(doc_path)
            if meta_path.exists():
                meta_path.unlink()
        return True
