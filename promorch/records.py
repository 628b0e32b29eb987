"""
Record layout - where each pipeline document lives in the store.

Paths (``<project>`` is the project path with surrounding slashes removed):
    project_queue                                  [ProjectRecord]
    <project>/status                               {status, params, statuses}
    <project>/source_paths                         [sourcePath]
    <project>/discovery                            discovery summary
    <project>/<group>/batch_status                 {batchName: status}
    <project>/<group>/<batchName>                  {status, files}
    <project>/<group>/leases                       {batchName: {claimedAt, owner}}
    <project>/<group>/barrier                      {expected, remaining}
    <project>/promoted_files_for_preview           [TrackingEntry]  (journal)
    <project>/copied_files_for_preview             [TrackingEntry]  (journal)
    <project>/retry_errors                         [RetryEntry]     (journal)
    <project>/audit_log                            [[message, timestamp, details]]

``group`` is ``processing`` or ``non_processing``.
"""

import logging
from typing import Any, Iterable, Optional

from promorch.schemas import (
    AuditEntry,
    BatchRecord,
    BatchStatus,
    ItemType,
    ProjectRecord,
    ProjectStatus,
    TrackingEntry,
)
from promorch.store import NO_CHANGE, RecordStore, StoredRecord, normalize_path
from promorch.utils import batch_number

logger = logging.getLogger(__name__)

PROJECT_QUEUE = "project_queue"
PROMOTED_TRACKING = "promoted_files_for_preview"
COPIED_TRACKING = "copied_files_for_preview"
TRACKING_FILES = (PROMOTED_TRACKING, COPIED_TRACKING)


def project_key(project: str) -> str:
    return normalize_path(project)


def status_path(project: str) -> str:
    return f"{project_key(project)}/status"


def source_paths_path(project: str) -> str:
    return f"{project_key(project)}/source_paths"


def discovery_path(project: str) -> str:
    return f"{project_key(project)}/discovery"


def batch_status_path(project: str, group: ItemType | str) -> str:
    return f"{project_key(project)}/{ItemType(group).value}/batch_status"


def batch_path(project: str, group: ItemType | str, batch_name: str) -> str:
    return f"{project_key(project)}/{ItemType(group).value}/{batch_name}"


def leases_path(project: str, group: ItemType | str) -> str:
    return f"{project_key(project)}/{ItemType(group).value}/leases"


def barrier_path(project: str, group: ItemType | str) -> str:
    return f"{project_key(project)}/{ItemType(group).value}/barrier"


def tracking_path(project: str, tracking_file: str) -> str:
    if tracking_file not in TRACKING_FILES:
        raise ValueError(f"Unknown tracking file: {tracking_file}")
    return f"{project_key(project)}/{tracking_file}"


def retry_errors_path(project: str) -> str:
    return f"{project_key(project)}/retry_errors"


def audit_log_path(project: str) -> str:
    return f"{project_key(project)}/audit_log"


def fold_tracking(entries: Iterable[TrackingEntry]) -> dict[str, TrackingEntry]:
    """Current state of a tracking journal: the last entry per file path."""
    current: dict[str, TrackingEntry] = {}
    for entry in entries:
        current[entry.file_path] = entry
    return current


class ProjectRecords:
    """
    Domain accessors over a RecordStore.

    All mutations of shared documents go through ``store.update`` (CAS loop)
    or ``store.append`` (journal), never a blind read-then-write.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    # -- project queue ---------------------------------------------------

    def queue(self) -> list[ProjectRecord]:
        """All projects, oldest first."""
        raw = self.store.read_json(PROJECT_QUEUE) or []
        projects = [ProjectRecord.from_dict(p) for p in raw]
        return sorted(projects, key=lambda p: p.created_time)

    def get_project(self, project: str) -> Optional[ProjectRecord]:
        key = project_key(project)
        for record in self.queue():
            if project_key(record.project_path) == key:
                return record
        return None

    def put_project(self, record: ProjectRecord) -> None:
        """Insert or replace a queue entry."""
        key = project_key(record.project_path)

        def replace(queue: Any) -> list:
            others = [p for p in queue if project_key(p["projectPath"]) != key]
            return others + [record.to_dict()]

        self.store.update(PROJECT_QUEUE, replace, default=[])

    def set_queue_status(self, project: str, expected: ProjectStatus, target: ProjectStatus) -> bool:
        """
        Conditionally move the queue entry from ``expected`` to ``target``.

        Returns:
            True if this call changed the entry
        """
        key = project_key(project)
        changed = []

        def transition(queue: Any) -> Any:
            changed.clear()
            new_queue = []
            for entry in queue:
                if project_key(entry["projectPath"]) == key and entry["status"] == ProjectStatus(expected).value:
                    record = ProjectRecord.from_dict(entry).with_status(target)
                    new_queue.append(record.to_dict())
                    changed.append(True)
                else:
                    new_queue.append(entry)
            return new_queue if changed else NO_CHANGE

        self.store.update(PROJECT_QUEUE, transition, default=[])
        return bool(changed)

    def remove_project(self, project: str) -> bool:
        key = project_key(project)
        removed = []

        def drop(queue: Any) -> Any:
            removed.clear()
            kept = [p for p in queue if project_key(p["projectPath"]) != key]
            if len(kept) == len(queue):
                return NO_CHANGE
            removed.append(True)
            return kept

        self.store.update(PROJECT_QUEUE, drop, default=[])
        return bool(removed)

    # -- status document -------------------------------------------------

    def status_doc(self, project: str) -> dict[str, Any]:
        return self.store.read_json(status_path(project)) or {}

    def status(self, project: str) -> Optional[ProjectStatus]:
        doc = self.status_doc(project)
        return ProjectStatus(doc["status"]) if doc.get("status") else None

    def audit_entries(self, project: str) -> list[AuditEntry]:
        return [AuditEntry.from_dict(e) for e in self.status_doc(project).get("statuses", [])]

    def add_audit_entry(self, project: str, entry: AuditEntry) -> None:
        """Append a status log entry without changing the status."""

        def add(doc: Any) -> dict:
            doc = dict(doc or {})
            doc["statuses"] = list(doc.get("statuses", [])) + [entry.to_dict()]
            return doc

        self.store.update(status_path(project), add, default={})

    # -- inputs and summaries --------------------------------------------

    def source_paths(self, project: str) -> list[str]:
        return list(self.store.read_json(source_paths_path(project)) or [])

    def write_source_paths(self, project: str, paths: list[str]) -> None:
        self.store.write_json(source_paths_path(project), list(paths))

    def discovery_summary(self, project: str) -> dict[str, Any]:
        return self.store.read_json(discovery_path(project)) or {}

    def write_discovery_summary(self, project: str, summary: dict[str, Any]) -> None:
        self.store.write_json(discovery_path(project), summary)

    # -- batches ---------------------------------------------------------

    def batch_status_record(self, project: str, group: ItemType | str) -> Optional[StoredRecord]:
        return self.store.read_record(batch_status_path(project, group))

    def batch_statuses(self, project: str, group: ItemType | str) -> dict[str, BatchStatus]:
        """Status table ordered by batch number."""
        raw = self.store.read_json(batch_status_path(project, group)) or {}
        return {name: BatchStatus(raw[name]) for name in sorted(raw, key=batch_number)}

    def batch(self, project: str, group: ItemType | str, batch_name: str) -> Optional[BatchRecord]:
        raw = self.store.read_json(batch_path(project, group, batch_name))
        if raw is None:
            return None
        return BatchRecord.from_dict(raw, batch_name=batch_name, item_type=ItemType(group))

    def write_batch(self, project: str, batch: BatchRecord) -> None:
        self.store.write_json(batch_path(project, batch.item_type, batch.batch_name), batch.to_dict())

    def set_batch_status(
        self,
        project: str,
        group: ItemType | str,
        batch_name: str,
        status: BatchStatus,
        expected: Optional[BatchStatus] = None,
    ) -> bool:
        """
        Set one entry of the status table.

        With ``expected`` the write only happens if the entry currently
        holds that status (compare-and-swap on the entry).

        Returns:
            True if the entry was written
        """
        status = BatchStatus(status)
        applied = []

        def transition(table: Any) -> Any:
            applied.clear()
            table = dict(table or {})
            if batch_name not in table:
                return NO_CHANGE
            if expected is not None and table[batch_name] != BatchStatus(expected).value:
                return NO_CHANGE
            table[batch_name] = status.value
            applied.append(True)
            return table

        self.store.update(batch_status_path(project, group), transition, default={})
        if applied:
            self._sync_batch_doc_status(project, group, batch_name, status)
        return bool(applied)

    def _sync_batch_doc_status(self, project: str, group: ItemType | str, batch_name: str, status: BatchStatus) -> None:
        # The batch document mirrors the table; the table is authoritative
        def mirror(doc: Any) -> Any:
            if not isinstance(doc, dict) or doc.get("status") == status.value:
                return NO_CHANGE
            return {**doc, "status": status.value}

        self.store.update(batch_path(project, group, batch_name), mirror, default=None)

    # -- leases ----------------------------------------------------------

    def leases(self, project: str, group: ItemType | str) -> dict[str, dict[str, Any]]:
        return self.store.read_json(leases_path(project, group)) or {}

    def write_lease(self, project: str, group: ItemType | str, batch_name: str, lease: dict[str, Any]) -> None:
        def put(doc: Any) -> dict:
            return {**(doc or {}), batch_name: lease}

        self.store.update(leases_path(project, group), put, default={})

    def clear_lease(self, project: str, group: ItemType | str, batch_name: str) -> None:
        def drop(doc: Any) -> Any:
            if not doc or batch_name not in doc:
                return NO_CHANGE
            return {k: v for k, v in doc.items() if k != batch_name}

        self.store.update(leases_path(project, group), drop, default={})

    # -- tracking journals -----------------------------------------------

    def tracking_entries(self, project: str, tracking_file: str) -> list[TrackingEntry]:
        raw = self.store.read_json(tracking_path(project, tracking_file)) or []
        return [TrackingEntry.from_dict(e) for e in raw]

    def tracking_state(self, project: str, tracking_file: str) -> dict[str, TrackingEntry]:
        return fold_tracking(self.tracking_entries(project, tracking_file))

    def append_tracking(self, project: str, tracking_file: str, entries: Iterable[TrackingEntry]) -> int:
        return self.store.append(tracking_path(project, tracking_file), *[e.to_dict() for e in entries])

    # -- audit log -------------------------------------------------------

    def audit_rows(self, project: str) -> list[list[Any]]:
        return self.store.read_json(audit_log_path(project)) or []
