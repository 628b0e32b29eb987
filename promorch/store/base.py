"""
RecordStore - path-addressed JSON document storage.

Every document carries a version that increments on each write. Workers and
schedulers coordinate only through this store, so the two primitives that
matter are:

- compare_and_swap: a conditional write that either atomically succeeds or
  reports that another writer got there first
- append: journal semantics for documents several writers extend

Storage backends:
- In-memory (for testing)
- File-based (for development and single-host deployments)
- SQLite (for multi-process deployments on one host)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from promorch.errors import ClaimConflictError

logger = logging.getLogger(__name__)


class _NoChange:
    def __repr__(self) -> str:
        return "NO_CHANGE"


# Returned by an update function to skip the write
NO_CHANGE = _NoChange()


@dataclass(frozen=True)
class StoredRecord:
    """A document together with its version metadata."""
    doc: Any
    version: int
    updated_at: datetime


def normalize_path(path: str) -> str:
    """Canonical store key: no leading/trailing slash, no empty segments."""
    parts = [p for p in str(path).split("/") if p]
    if not parts:
        raise ValueError("Store path must not be empty")
    if any(p in (".", "..") for p in parts):
        raise ValueError(f"Invalid store path: {path}")
    return "/".join(parts)


class RecordStore(ABC):
    """
    Abstract base class for record storage.

    Implementations provide versioned reads, unconditional writes, an atomic
    conditional write, listing and deletion. ``update`` and ``append`` are
    built on top of compare_and_swap.
    """

    max_update_attempts = 50

    @abstractmethod
    def read_record(self, path: str) -> Optional[StoredRecord]:
        """
        Read a document with its version.

        Args:
            path: Store path

        Returns:
            The StoredRecord if present, None otherwise
        """
        pass

    @abstractmethod
    def write_json(self, path: str, doc: Any) -> int:
        """
        Write a document unconditionally.

        Returns:
            The new version
        """
        pass

    @abstractmethod
    def compare_and_swap(self, path: str, expected_version: int, doc: Any) -> bool:
        """
        Write ``doc`` only if the stored version equals ``expected_version``.

        An expected version of 0 means the document must not exist yet.

        Returns:
            True if the write was applied, False if another writer won
        """
        pass

    @abstractmethod
    def list(self, prefix: str = "") -> list[str]:
        """List document paths under ``prefix`` (sorted)."""
        pass

    @abstractmethod
    def delete(self, path: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        pass

    def read_json(self, path: str) -> Any:
        """Read a document, or None if absent."""
        record = self.read_record(path)
        return record.doc if record is not None else None

    def exists(self, path: str) -> bool:
        return self.read_record(path) is not None

    def update(
        self,
        path: str,
        fn: Callable[[Any], Any],
        default: Any = None,
        max_attempts: Optional[int] = None,
    ) -> Any:
        """
        Optimistic read-modify-write.

        ``fn`` receives the current document (or ``default`` when absent) and
        returns the new document, or NO_CHANGE to leave it untouched. ``fn``
        may run several times and must not have side effects.

        Returns:
            The document as written (or as read, for NO_CHANGE)

        Raises:
            ClaimConflictError: If every attempt lost against another writer
        """
        attempts = max_attempts or self.max_update_attempts
        for _ in range(attempts):
            record = self.read_record(path)
            current = record.doc if record is not None else default
            version = record.version if record is not None else 0
            new_doc = fn(current)
            if new_doc is NO_CHANGE:
                return current
            if self.compare_and_swap(path, version, new_doc):
                return new_doc
            logger.debug(f"CAS lost on {path} at version {version}, retrying")
        raise ClaimConflictError(path, f"update failed after {attempts} attempts")

    def append(self, path: str, *entries: Any) -> int:
        """
        Append entries to a JSON array document.

        Returns:
            Length of the array after the append
        """
        if not entries:
            doc = self.read_json(path)
            return len(doc) if isinstance(doc, list) else 0

        def extend(current: Any) -> list:
            current = list(current) if isinstance(current, list) else []
            return current + list(entries)

        return len(self.update(path, extend, default=[]))
