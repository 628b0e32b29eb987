"""
Scheduler - one periodic tick per stage.

A tick reads the project queue, keeps the projects whose status document
shows the stage's predecessor status and handles them in parallel. Per
project, at most one unit of work is dispatched:

Batch stages:
    1. Reclaim batches whose lease expired (only with a claim timeout)
    2. Single-flight: any batch of the stage in progress -> skip the project
    3. Claim the oldest claimable batch with compare-and-swap and dispatch
       its worker; a failed dispatch rolls the claim back
    4. Nothing claimable: sweep the barrier. Batches that will never be
       claimed for this stage (errored earlier, or finished by a worker
       that died before arriving) arrive on their behalf; a barrier that
       is then settled gets a ``finalize`` dispatch, which retries pending
       failures and advances the project

Project-level stages (discovery, verify):
    The project itself is claimed (``predecessor -> in progress``) and the
    worker dispatched; a failed dispatch rewinds the claim.

Dispatch is fire-and-forget: a tick never waits for a worker.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from promorch.claims import (
    claim_batch,
    claim_project,
    find_in_progress,
    oldest_claimable,
    reclaim_stale,
    reclaim_stale_project,
    release_claim,
    release_project_claim,
)
from promorch.clients.base import Dispatcher
from promorch.records import ProjectRecords
from promorch.schemas import AuditEntry
from promorch.sequencer import Barrier
from promorch.stages import StageDefinition
from promorch.utils import sanitize_error_message, utcnow

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """What one scheduler tick did, as ``project`` or ``project:batch`` labels."""
    stage: str
    dispatched: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "dispatched": list(self.dispatched),
            "skipped": list(self.skipped),
            "errors": list(self.errors),
        }


class Scheduler:
    """
    Periodic dispatcher for one stage.

    Args:
        stage: Stage to schedule
        records: Project records over the shared store
        dispatcher: Fire-and-forget worker invocation
        claim_timeout_seconds: Reclaim work claimed longer ago than this (None disables)
        max_workers: Projects handled in parallel within a tick
        owner: Name written into leases
        clock: Current UTC time
    """

    def __init__(
        self,
        stage: StageDefinition,
        records: ProjectRecords,
        dispatcher: Dispatcher,
        claim_timeout_seconds: Optional[float] = None,
        max_workers: int = 8,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.stage = stage
        self.records = records
        self.dispatcher = dispatcher
        self.claim_timeout_seconds = claim_timeout_seconds
        self.max_workers = max_workers
        self.owner = owner or f"scheduler:{stage.name}"
        self._clock = clock

    def eligible_projects(self) -> list[str]:
        """
        Queue entries this stage may act on, oldest first.

        The status document is authoritative. A queue entry that lags behind
        it (a writer stopped between the two writes) is brought in line here.
        """
        watched = {self.stage.predecessor}
        if self.stage.project_in_progress is not None:
            watched.add(self.stage.project_in_progress)
        eligible = []
        for entry in self.records.queue():
            status = self.records.status(entry.project_path) or entry.status
            if status != entry.status:
                logger.warning(
                    f"Queue entry of {entry.project_path} shows {entry.status.value}, status is {status.value}; repairing",
                    extra={"project": entry.project_path, "stage": self.stage.name, "event": "queue_repaired"},
                )
                self.records.set_queue_status(entry.project_path, entry.status, status)
            if status in watched:
                eligible.append(entry.project_path)
        return eligible

    def tick(self) -> TickResult:
        """Run one scheduling pass over all eligible projects."""
        result = TickResult(stage=self.stage.name)
        projects = self.eligible_projects()
        if not projects:
            logger.debug(f"{self.stage.name} tick: no eligible projects")
            return result

        handle = self._tick_batch_stage if self.stage.is_batch_stage else self._tick_project_stage
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"tick-{self.stage.name}") as pool:
            outcomes = list(pool.map(lambda p: self._guarded(handle, p), projects))

        for kind, label in outcomes:
            getattr(result, kind).append(label)
        logger.info(
            f"{self.stage.name} tick: dispatched={len(result.dispatched)} "
            f"skipped={len(result.skipped)} errors={len(result.errors)}",
            extra={"stage": self.stage.name, "event": "tick_completed", "metadata": result.to_dict()},
        )
        return result

    def _guarded(self, handle: Callable[[str], tuple[str, str]], project: str) -> tuple[str, str]:
        try:
            return handle(project)
        except Exception as e:
            logger.error(f"{self.stage.name} tick failed for {project}: {e}", exc_info=True,
                         extra={"project": project, "stage": self.stage.name, "event": "tick_error"})
            return "errors", f"{project}: {sanitize_error_message(e)}"

    def _dispatch(self, params: dict[str, Any]) -> Optional[str]:
        """Invoke the stage worker. Returns the error message if dispatch failed."""
        try:
            self.dispatcher.invoke_async(self.stage.name, params)
        except Exception as e:
            logger.error(f"Dispatch of {self.stage.name} for {params} failed: {e}",
                         extra={"project": params.get("project"), "stage": self.stage.name, "event": "dispatch_failed"})
            return sanitize_error_message(e)
        return None

    # -- batch stages ----------------------------------------------------

    def _tick_batch_stage(self, project: str) -> tuple[str, str]:
        stage = self.stage
        records = self.records
        if records.status(project) != stage.predecessor:
            return "skipped", project

        now = self._clock()
        reclaim_stale(records, project, stage, self.claim_timeout_seconds, now)

        table = records.batch_statuses(project, stage.group)
        in_progress = find_in_progress(table, [stage.in_progress])
        if in_progress:
            logger.debug(f"{project}: {in_progress[0]} still in {stage.in_progress.value}; single-flight skip")
            return "skipped", f"{project}:{in_progress[0]}"

        batch_name = oldest_claimable(table, stage.claimable)
        if batch_name is None:
            return self._sweep(project, table, now)

        if not claim_batch(records, project, stage, batch_name, owner=self.owner, now=now):
            return "skipped", f"{project}:{batch_name}"

        error = self._dispatch({"project": project, "batch": batch_name})
        if error is not None:
            release_claim(records, project, stage, batch_name)
            return "errors", f"{project}:{batch_name}: {error}"
        logger.info(
            f"Dispatched {stage.name} of {batch_name} for {project}",
            extra={"project": project, "stage": stage.name, "batch": batch_name, "event": "batch_dispatched"},
        )
        return "dispatched", f"{project}:{batch_name}"

    def _sweep(self, project: str, table: dict, now: datetime) -> tuple[str, str]:
        stage = self.stage
        barrier = Barrier(self.records)
        entry = barrier.state(project, stage)
        if entry is None:
            logger.warning(f"{project} has no {stage.name} barrier; batches were never written")
            return "skipped", project

        closed_here = False
        for name in list(entry.get("remaining", [])):
            status = table.get(name)
            if status in (stage.claimable, stage.in_progress):
                continue
            logger.warning(
                f"{name} of {project} is {status.value if status else 'missing'} and will not run {stage.name}; "
                f"arriving on its behalf",
                extra={"project": project, "stage": stage.name, "batch": name, "event": "barrier_swept"},
            )
            closed_here = barrier.arrive(project, stage, name, now) or closed_here

        if not closed_here and not barrier.take_over(project, stage, self.owner, self.claim_timeout_seconds, now):
            return "skipped", project

        error = self._dispatch({"project": project, "finalize": True})
        if error is not None:
            return "errors", f"{project}: {error}"
        logger.info(f"Dispatched {stage.name} finalize for {project}",
                    extra={"project": project, "stage": stage.name, "event": "finalize_dispatched"})
        return "dispatched", f"{project}:finalize"

    # -- project-level stages --------------------------------------------

    def _tick_project_stage(self, project: str) -> tuple[str, str]:
        stage = self.stage
        records = self.records
        now = self._clock()

        if records.status(project) == stage.project_in_progress:
            if not reclaim_stale_project(records, project, stage, self.claim_timeout_seconds, now):
                return "skipped", project
        if records.status(project) != stage.predecessor:
            return "skipped", project

        claimed = claim_project(
            records, project, stage.predecessor, stage.project_in_progress,
            AuditEntry(step_name=f"{stage.name.capitalize()} started", step=stage.project_in_progress.value, timestamp=now),
        )
        if not claimed:
            return "skipped", project

        error = self._dispatch({"project": project})
        if error is not None:
            release_project_claim(records, project, stage, f"{stage.name.capitalize()} dispatch failed: {error}")
            return "errors", f"{project}: {error}"
        logger.info(f"Dispatched {stage.name} for {project}",
                    extra={"project": project, "stage": stage.name, "event": "project_dispatched"})
        return "dispatched", project

    # -- loop ------------------------------------------------------------

    def run_forever(self, interval_seconds: float, stop_event: Optional[threading.Event] = None) -> int:
        """
        Tick every ``interval_seconds`` until ``stop_event`` is set.

        Returns:
            Number of ticks run
        """
        stop_event = stop_event or threading.Event()
        ticks = 0
        while not stop_event.is_set():
            self.tick()
            ticks += 1
            stop_event.wait(interval_seconds)
        return ticks
