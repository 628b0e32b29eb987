"""
Trigger surface - creating, pausing and reporting on projects.

A promotion is keyed by ``<gbRootFolder>/<experienceName>``. Initiating a
project that already exists replaces its queue entry and starts it over.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Union
from urllib.parse import urlparse

from promorch.config import validate_trigger_params
from promorch.ledger import RetryLedger
from promorch.records import TRACKING_FILES, ProjectRecords, project_key, status_path
from promorch.schemas import AuditEntry, ItemType, PreviewStatus, ProjectRecord, ProjectStatus
from promorch.store import NO_CHANGE
from promorch.utils import utcnow

logger = logging.getLogger(__name__)

PAGE_HOSTS = ("aem.page", "hlx.page")
DRAFTS_SEGMENT = "/drafts/"

SourceEntry = Union[str, dict[str, Any]]


def project_path_for(params: dict[str, Any]) -> str:
    return f"{params['gbRootFolder'].rstrip('/')}/{params['experienceName']}"


def to_source_entry(path: str) -> SourceEntry:
    """
    Normalize one requested source.

    A page URL (``https://main--site--org.aem.page/a/b``) becomes an entry
    with the document path (``/a/b.docx``) and the URL it was published at;
    anything else is taken as a content path.
    """
    path = path.strip()
    parsed = urlparse(path)
    if parsed.scheme in ("http", "https") and parsed.netloc.endswith(PAGE_HOSTS):
        source = parsed.path or "/"
        if "." not in source.rsplit("/", 1)[-1]:
            source = f"{source}.docx"
        return {"sourcePath": source, "originalUrl": path}
    return path


def _entry_path(entry: SourceEntry) -> str:
    return entry if isinstance(entry, str) else entry["sourcePath"]


def initiate_project(records: ProjectRecords, params: dict[str, Any], now: Optional[datetime] = None) -> ProjectRecord:
    """
    Register a promotion and queue it for discovery.

    Args:
        records: Project records
        params: Trigger parameters (rootFolder, gbRootFolder, experienceName,
            projectExcelPath, adminPageUri, and sourcePaths and/or draftsOnly)
        now: Creation time (defaults to now)

    Returns:
        The new queue entry

    Raises:
        ConfigError: If required parameters are missing
    """
    validate_trigger_params(params)
    now = now or utcnow()
    project = project_path_for(params)

    entries = [to_source_entry(p) if isinstance(p, str) else p for p in params.get("sourcePaths") or []]
    if params.get("draftsOnly"):
        entries = [e for e in entries if DRAFTS_SEGMENT in _entry_path(e)]

    stored_params = {k: v for k, v in params.items() if k != "sourcePaths"}
    record = ProjectRecord(
        project_path=project,
        status=ProjectStatus.INITIATED,
        created_time=now,
        updated_time=now,
        originating_params=stored_params,
    )

    _clear_project(records, project)
    records.write_source_paths(project, entries)
    records.store.write_json(status_path(project), {
        "status": ProjectStatus.INITIATED.value,
        "params": stored_params,
        "statuses": [AuditEntry(
            step_name=f"Project initiated with {len(entries)} source paths",
            step=ProjectStatus.INITIATED.value,
            timestamp=now,
        ).to_dict()],
    })
    records.put_project(record)
    logger.info(
        f"Initiated {project} with {len(entries)} source paths",
        extra={"project": project, "event": "project_initiated"},
    )
    return record


def _clear_project(records: ProjectRecords, project: str) -> None:
    # A re-initiated project starts from an empty tree
    prefix = project_key(project)
    for path in records.store.list(prefix):
        records.store.delete(path)


def pause_project(records: ProjectRecords, project: str) -> bool:
    """
    Pause a project. Paused projects are never scheduled or advanced again.

    Returns:
        True if the project was paused by this call, False if it is unknown
        or already finished
    """
    paused = []
    entry = AuditEntry(step_name="Project paused", step=ProjectStatus.PAUSED.value)

    def pause(doc: Any) -> Any:
        paused.clear()
        current = (doc or {}).get("status")
        if not current or ProjectStatus(current).is_terminal:
            return NO_CHANGE
        paused.append(ProjectStatus(current))
        return {**doc, "status": ProjectStatus.PAUSED.value, "statuses": list(doc.get("statuses", [])) + [entry.to_dict()]}

    records.store.update(status_path(project), pause, default={})
    if not paused:
        logger.warning(f"Cannot pause {project}: unknown or already finished")
        return False
    records.set_queue_status(project, paused[0], ProjectStatus.PAUSED)
    logger.info(f"Paused {project}", extra={"project": project, "event": "project_paused"})
    return True


def project_report(records: ProjectRecords, project: str) -> Optional[dict[str, Any]]:
    """
    Summarize a project's state.

    Returns:
        None if the project is unknown, otherwise::

            {"project", "status", "createdTime", "discovery",
             "batches": {group: {batch: status}},
             "retries": {stage: {failed, pending, recovered, terminal}},
             "tracking": {file: {pending, completed, failed}},
             "statuses": [audit entries]}
    """
    queued = records.get_project(project)
    status = records.status(project)
    if queued is None and status is None:
        return None

    tracking = {}
    for tracking_file in TRACKING_FILES:
        state = records.tracking_state(project, tracking_file)
        tracking[tracking_file] = {
            s.value: sum(1 for e in state.values() if e.preview_status == s) for s in PreviewStatus
        }

    return {
        "project": queued.project_path if queued else project,
        "status": (status or queued.status).value,
        "createdTime": queued.created_time.isoformat() if queued else None,
        "discovery": records.discovery_summary(project),
        "batches": {
            group.value: {name: s.value for name, s in records.batch_statuses(project, group).items()}
            for group in ItemType
        },
        "retries": RetryLedger(records, project).summary(),
        "tracking": tracking,
        "statuses": [e.to_dict() for e in records.audit_entries(project)],
    }
