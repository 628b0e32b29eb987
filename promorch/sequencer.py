"""
Sequencer - countdown barriers and the idempotent project advance.

Each batch stage of a project has a barrier armed with the names of the
batches it waits for. A worker arrives when it has written its batch's final
status; the arrival that removes the last name is the only one that returns
True, and that worker performs the boundary retry and the project advance.

The barrier document of a group holds one entry per stage:

    {"transform": {"expected": 3, "remaining": ["processing_batch_3"]},
     "promote":   {"expected": 3, "remaining": [...]}}

Once empty, an entry records ``closedAt``/``closedBy`` and later
``released`` after the closing worker has advanced the project. A closing
worker whose boundary work failed marks the entry ``abandoned`` so that the
scheduler takes it over on its next tick.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from promorch.records import ProjectRecords, barrier_path, status_path
from promorch.schemas import AuditEntry, ItemType, ProjectStatus
from promorch.stages import StageDefinition
from promorch.store import NO_CHANGE
from promorch.utils import parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class Barrier:
    """Countdown barrier over a project's batches for one stage."""

    def __init__(self, records: ProjectRecords):
        self.records = records

    def arm(self, project: str, group: ItemType, stage_names: Iterable[str], batch_names: list[str]) -> None:
        """(Re)arm the barrier of every named stage over ``batch_names``."""
        doc = {
            name: {"expected": len(batch_names), "remaining": list(batch_names)}
            for name in stage_names
        }
        self.records.store.write_json(barrier_path(project, group), doc)

    def state(self, project: str, stage: StageDefinition) -> Optional[dict[str, Any]]:
        doc = self.records.store.read_json(barrier_path(project, stage.group)) or {}
        return doc.get(stage.name)

    def arrive(self, project: str, stage: StageDefinition, batch_name: str, now: Optional[datetime] = None) -> bool:
        """
        Remove ``batch_name`` from the stage's remaining set.

        Returns:
            True only for the single arrival that empties the barrier
        """
        closed = []
        when = (now or utcnow()).isoformat()

        def remove(doc: Any) -> Any:
            closed.clear()
            entry = (doc or {}).get(stage.name)
            if entry is None or batch_name not in entry.get("remaining", []):
                return NO_CHANGE
            remaining = [b for b in entry["remaining"] if b != batch_name]
            new_entry = {**entry, "remaining": remaining}
            if not remaining:
                new_entry.update(closedAt=when, closedBy=batch_name)
                closed.append(True)
            return {**doc, stage.name: new_entry}

        self.records.store.update(barrier_path(project, stage.group), remove, default={})
        if closed:
            logger.info(
                f"Barrier for {stage.name} closed by {batch_name}",
                extra={"project": project, "stage": stage.name, "batch": batch_name, "event": "barrier_closed"},
            )
        return bool(closed)

    def release(self, project: str, stage: StageDefinition) -> None:
        """Mark a closed barrier as fully handled by its closing worker."""

        def mark(doc: Any) -> Any:
            entry = (doc or {}).get(stage.name)
            if entry is None or entry.get("released"):
                return NO_CHANGE
            return {**doc, stage.name: {**entry, "released": True}}

        self.records.store.update(barrier_path(project, stage.group), mark, default={})

    def abandon(self, project: str, stage: StageDefinition) -> None:
        """Hand a closed, unreleased barrier back to the scheduler."""
        marked = []

        def mark(doc: Any) -> Any:
            marked.clear()
            entry = (doc or {}).get(stage.name)
            if entry is None or entry.get("remaining") or entry.get("released"):
                return NO_CHANGE
            marked.append(True)
            return {**doc, stage.name: {**entry, "abandoned": True}}

        self.records.store.update(barrier_path(project, stage.group), mark, default={})
        if marked:
            logger.warning(
                f"Barrier for {stage.name} of {project} abandoned by its closing worker",
                extra={"project": project, "stage": stage.name, "event": "barrier_abandoned"},
            )

    def is_settled(
        self,
        project: str,
        stage: StageDefinition,
        stale_after_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Whether nothing is left for the stage to wait on.

        True for an empty barrier that was never armed with batches, one
        whose closing worker released or abandoned it, or (when
        ``stale_after_seconds`` is set) one closed longer ago than that
        without a release.
        """
        return _settled(self.state(project, stage), stale_after_seconds, now or utcnow()) is not None

    def take_over(
        self,
        project: str,
        stage: StageDefinition,
        owner: str,
        stale_after_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Take over the boundary work of a settled barrier.

        A stale or abandoned barrier is re-closed in ``owner``'s name, so of
        several racing callers only one takes it over until it goes stale
        again.

        Returns:
            True if the caller should run the boundary work
        """
        now = now or utcnow()
        taken = []

        def claim(doc: Any) -> Any:
            taken.clear()
            entry = (doc or {}).get(stage.name)
            reason = _settled(entry, stale_after_seconds, now)
            if reason is None:
                return NO_CHANGE
            taken.append(reason)
            if reason not in ("stale", "abandoned"):
                return NO_CHANGE
            new_entry = {**entry, "closedAt": now.isoformat(), "closedBy": owner}
            new_entry.pop("abandoned", None)
            return {**doc, stage.name: new_entry}

        self.records.store.update(barrier_path(project, stage.group), claim, default={})
        if taken and taken[0] in ("stale", "abandoned"):
            logger.warning(
                f"Barrier for {stage.name} of {project} was {taken[0]}; taken over by {owner}",
                extra={"project": project, "stage": stage.name, "event": "barrier_taken_over"},
            )
        return bool(taken)


def _settled(entry: Optional[dict[str, Any]], stale_after_seconds: Optional[float], now: datetime) -> Optional[str]:
    """Why an empty barrier entry can be finalized (``empty``, ``released``, ``abandoned``, ``stale``), or None."""
    if entry is None or entry.get("remaining"):
        return None
    if entry.get("expected", 0) == 0:
        return "empty"
    if entry.get("released"):
        return "released"
    if entry.get("abandoned"):
        return "abandoned"
    closed_at = parse_timestamp(entry.get("closedAt"))
    if stale_after_seconds is None or closed_at is None:
        return None
    if (now - closed_at).total_seconds() > stale_after_seconds:
        return "stale"
    return None


def advance_project(
    records: ProjectRecords,
    project: str,
    expected: ProjectStatus,
    target: ProjectStatus,
    audit_entry: Optional[AuditEntry] = None,
) -> bool:
    """
    Move a project from ``expected`` to ``target`` exactly once.

    The status document is changed with compare-and-swap, then the queue
    entry follows. Re-applying an advance that already happened is a no-op
    and does not add a second audit entry. Paused and failed projects are
    never advanced.

    Returns:
        True if this call performed the transition
    """
    expected, target = ProjectStatus(expected), ProjectStatus(target)
    outcome = {}

    def transition(doc: Any) -> Any:
        outcome.clear()
        doc = dict(doc or {})
        current = doc.get("status")
        if current == target.value:
            outcome["already"] = True
            return NO_CHANGE
        if current != expected.value:
            outcome["current"] = current
            return NO_CHANGE
        if not ProjectStatus.can_advance(expected, target):
            outcome["illegal"] = True
            return NO_CHANGE
        doc["status"] = target.value
        if audit_entry is not None:
            doc["statuses"] = list(doc.get("statuses", [])) + [audit_entry.to_dict()]
        outcome["applied"] = True
        return doc

    records.store.update(status_path(project), transition, default={})

    if outcome.get("illegal"):
        logger.warning(f"Refusing illegal transition {expected.value} -> {target.value} for {project}")
        return False
    if "current" in outcome:
        logger.warning(
            f"Not advancing {project} to {target.value}: status is {outcome['current']}, expected {expected.value}",
            extra={"project": project, "event": "advance_skipped"},
        )
        return False

    # Queue follows the status document; also repairs a queue left behind by a crash
    records.set_queue_status(project, expected, target)

    if outcome.get("already"):
        logger.debug(f"{project} already at {target.value}")
        return False

    logger.info(
        f"Project {project} advanced {expected.value} -> {target.value}",
        extra={"project": project, "event": "project_advanced", "metadata": {"from": expected.value, "to": target.value}},
    )
    return True
