"""
Claims - atomic ownership of batches and project-level stages.

A claim is a compare-and-swap of one status table entry from the stage's
claimable status to its in-progress status. Of several racing schedulers
exactly one sees the swap applied; the others observe the in-progress
status and skip. A lease recording the claim time lets a configured
timeout reclaim batches whose worker never reported back.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from promorch.records import ProjectRecords, batch_status_path, status_path
from promorch.schemas import AuditEntry, BatchStatus, ProjectStatus
from promorch.sequencer import advance_project
from promorch.stages import StageDefinition
from promorch.store import NO_CHANGE
from promorch.utils import batch_number, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


def find_in_progress(table: Mapping[str, Any], statuses: Iterable[BatchStatus | str]) -> list[str]:
    """Batches of ``table`` whose status is one of ``statuses``."""
    wanted = {BatchStatus(s).value for s in statuses}
    return [name for name, status in table.items() if BatchStatus(status).value in wanted]


def oldest_claimable(table: Mapping[str, Any], status: BatchStatus | str) -> Optional[str]:
    """Lowest-numbered batch in ``status`` (FIFO by creation order)."""
    status = BatchStatus(status).value
    candidates = [name for name, s in table.items() if BatchStatus(s).value == status]
    if not candidates:
        return None
    return min(candidates, key=batch_number)


def claim_batch(
    records: ProjectRecords,
    project: str,
    stage: StageDefinition,
    batch_name: str,
    owner: str = "scheduler",
    now: Optional[datetime] = None,
) -> bool:
    """
    Claim a batch for ``stage``.

    Returns:
        True if this caller owns the batch, False if another writer already
        moved it out of the claimable status
    """
    if not records.set_batch_status(project, stage.group, batch_name, stage.in_progress, expected=stage.claimable):
        logger.debug(f"Lost claim on {batch_name} of {project}")
        return False
    records.write_lease(project, stage.group, batch_name, {
        "claimedAt": (now or utcnow()).isoformat(),
        "owner": owner,
        "stage": stage.name,
    })
    return True


def release_claim(records: ProjectRecords, project: str, stage: StageDefinition, batch_name: str) -> bool:
    """Undo a claim (dispatch failed or lease expired). Returns True if rolled back."""
    released = records.set_batch_status(project, stage.group, batch_name, stage.claimable, expected=stage.in_progress)
    records.clear_lease(project, stage.group, batch_name)
    return released


def reclaim_stale(
    records: ProjectRecords,
    project: str,
    stage: StageDefinition,
    timeout_seconds: Optional[float],
    now: Optional[datetime] = None,
) -> list[str]:
    """
    Return expired in-progress batches of ``stage`` to the claimable status.

    A batch is expired when its lease (or, without a lease, the status
    table's last write) is older than ``timeout_seconds``. A timeout of
    None disables reclaiming.

    Returns:
        Names of the batches reclaimed
    """
    if timeout_seconds is None:
        return []
    now = now or utcnow()
    table = records.batch_statuses(project, stage.group)
    stuck = find_in_progress(table, [stage.in_progress])
    if not stuck:
        return []

    leases = records.leases(project, stage.group)
    table_record = records.store.read_record(batch_status_path(project, stage.group))
    reclaimed = []
    for name in stuck:
        claimed_at = parse_timestamp((leases.get(name) or {}).get("claimedAt"))
        if claimed_at is None and table_record is not None:
            claimed_at = table_record.updated_at
        if claimed_at is None or (now - claimed_at).total_seconds() <= timeout_seconds:
            continue
        if release_claim(records, project, stage, name):
            reclaimed.append(name)
            logger.warning(
                f"Reclaimed {name} of {project}: {stage.in_progress.value} since {claimed_at.isoformat()}",
                extra={"project": project, "stage": stage.name, "batch": name, "event": "claim_reclaimed"},
            )
            records.add_audit_entry(project, AuditEntry(
                step_name=f"Reclaimed {name} after {int(timeout_seconds)}s without progress",
                step=stage.in_progress.value,
                timestamp=now,
            ))
    return reclaimed


def claim_project(
    records: ProjectRecords,
    project: str,
    expected: ProjectStatus,
    claimed: ProjectStatus,
    audit_entry: Optional[AuditEntry] = None,
) -> bool:
    """Claim a project-level stage by moving the project ``expected -> claimed``."""
    return advance_project(records, project, expected, claimed, audit_entry)


def release_project_claim(
    records: ProjectRecords,
    project: str,
    stage: StageDefinition,
    reason: str,
    now: Optional[datetime] = None,
) -> bool:
    """
    Rewind a project-level claim: ``project_in_progress -> predecessor``.

    Used when dispatch of the claimed stage failed or its worker never
    reported back. Returns True if this call rewound the project.
    """
    if stage.project_in_progress is None:
        return False
    audit = AuditEntry(step_name=reason, step=stage.predecessor.value, timestamp=now or utcnow())
    rewound = []

    def rewind(doc: Any) -> Any:
        rewound.clear()
        if (doc or {}).get("status") != stage.project_in_progress.value:
            return NO_CHANGE
        rewound.append(True)
        return {**doc, "status": stage.predecessor.value, "statuses": list(doc.get("statuses", [])) + [audit.to_dict()]}

    records.store.update(status_path(project), rewind, default={})
    if not rewound:
        return False
    records.set_queue_status(project, stage.project_in_progress, stage.predecessor)
    return True


def reclaim_stale_project(
    records: ProjectRecords,
    project: str,
    stage: StageDefinition,
    timeout_seconds: Optional[float],
    now: Optional[datetime] = None,
) -> bool:
    """
    Return a project stuck in a project-level in-progress status to the
    stage's predecessor status once the status document is older than
    ``timeout_seconds``.
    """
    if timeout_seconds is None or stage.project_in_progress is None:
        return False
    now = now or utcnow()
    record = records.store.read_record(status_path(project))
    if record is None or (record.doc or {}).get("status") != stage.project_in_progress.value:
        return False
    if (now - record.updated_at).total_seconds() <= timeout_seconds:
        return False

    reason = f"Reclaimed {stage.name} after {int(timeout_seconds)}s without progress"
    if not release_project_claim(records, project, stage, reason, now):
        return False
    logger.warning(
        f"Reclaimed {stage.name} of {project}",
        extra={"project": project, "stage": stage.name, "event": "claim_reclaimed"},
    )
    return True
