"""Base types for stage workers.

This module defines the core abstractions:
- WorkerContext: shared clients and settings handed to every worker run
- WorkerResult: what a worker run did (for logs, the CLI and tests)
- Worker: protocol for stage workers
- WorkerRegistry: dispatch mechanism for worker name -> worker
- BatchStageWorker: the per-batch flow shared by transform, copy and promote
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from promorch.clients.base import AuditSink, ContentClient, CopyClient, TransformClient
from promorch.clients.local import LOCKED_MESSAGE, StoreAuditSink
from promorch.errors import RecordNotFoundError, ResourceLockedError
from promorch.ledger import PRIMARY_ATTEMPT, RETRY_ATTEMPT, RetryLedger
from promorch.poller import BulkJobPoller
from promorch.records import ProjectRecords
from promorch.schemas import (
    AuditEntry,
    BatchRecord,
    BatchStatus,
    ItemOutcome,
    OutcomeKind,
    RetryEntry,
    RetryOutcome,
    TrackingEntry,
    WorkItem,
)
from promorch.sequencer import Barrier, advance_project
from promorch.stages import StageDefinition
from promorch.utils import retry_with_backoff, sanitize_error_message, to_utc_str

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Context passed to workers during execution.

    Contains shared clients and runtime configuration. Workers hold no
    state between invocations; everything they coordinate on lives in
    ``records``.
    """

    records: ProjectRecords
    copy_client: Optional[CopyClient] = None
    transform_client: Optional[TransformClient] = None
    content_client: Optional[ContentClient] = None
    poller: Optional[BulkJobPoller] = None
    audit: Optional[AuditSink] = None
    chunk_size: int = 200
    staging_root: str = "/.promorch-staging"
    item_retry_attempts: int = 3
    item_retry_delay_seconds: float = 1.0
    claim_timeout_seconds: Optional[float] = None
    sleep: Callable[[float], Any] = time.sleep

    def __post_init__(self):
        if self.audit is None:
            self.audit = StoreAuditSink(self.records)

    def call(self, fn: Callable[[], Any]) -> Any:
        """Call a collaborator, retrying transient errors a bounded number of times."""
        return retry_with_backoff(
            fn,
            max_attempts=self.item_retry_attempts,
            backoff_seconds=self.item_retry_delay_seconds,
            logger=logger,
            sleep=self.sleep,
        )

    def audit_row(self, project: str, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.audit.append_rows(project, [[message, to_utc_str(), details or {}]])


@dataclass
class WorkerResult:
    """Outcome of one worker invocation."""

    worker: str
    project: str
    batch: Optional[str] = None
    status: str = "completed"  # completed, failed, skipped
    succeeded: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    advanced: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker": self.worker,
            "project": self.project,
            "batch": self.batch,
            "status": self.status,
            "succeeded": len(self.succeeded),
            "failures": list(self.failures),
            "advanced": self.advanced,
            "error": self.error,
        }


@runtime_checkable
class Worker(Protocol):
    """Protocol for stage workers.

    Each worker handles one stage (discovery, transform, copy, promote, verify).
    """

    name: str

    def run(self, ctx: WorkerContext, params: dict[str, Any]) -> WorkerResult:
        """Execute the stage for ``params["project"]`` (and ``params["batch"]``).

        Never raises for pipeline errors: they are converted into status,
        ledger and audit writes and reported in the result.
        """
        ...


class WorkerRegistry:
    """Registry for dispatching worker invocations by name."""

    def __init__(self) -> None:
        self._workers: dict[str, Worker] = {}

    def register(self, name: str, worker: Worker) -> None:
        """Register a worker under a name."""
        self._workers[name] = worker

    def get(self, name: str) -> Worker:
        """Get a worker by name.

        Raises:
            KeyError: If the name is not registered
        """
        if name not in self._workers:
            raise KeyError(f"Unknown worker: {name}. Registered: {list(self._workers.keys())}")
        return self._workers[name]

    def list_names(self) -> list[str]:
        """List registered worker names."""
        return list(self._workers.keys())


# Global registry instance
registry = WorkerRegistry()


def classify(path: str, fn: Callable[[], Any]) -> ItemOutcome:
    """
    Run one item's side effect and classify the result.

    A locked destination is a soft failure; any other exception is a hard
    failure. Exceptions never escape.
    """
    try:
        fn()
    except ResourceLockedError:
        return ItemOutcome(path, OutcomeKind.SOFT, "locked file")
    except Exception as e:
        return ItemOutcome(path, OutcomeKind.HARD, sanitize_error_message(e))
    return ItemOutcome(path, OutcomeKind.SUCCESS)


def upload_or_raise(ctx: WorkerContext, content: bytes, dest_path: str) -> None:
    """Upload through the copy client, raising on an unsuccessful result."""
    result = ctx.call(lambda: ctx.copy_client.upload(content, dest_path))
    if result.success:
        return
    if result.locked_file or LOCKED_MESSAGE in (result.error_msg or ""):
        raise ResourceLockedError(f"{dest_path} is locked")
    raise RuntimeError(result.error_msg or f"Upload of {dest_path} failed")


class BatchStageWorker:
    """
    Shared flow of the batch stages.

    For a claimed batch: process every item, never aborting on a single
    item's failure; record hard failures in the retry ledger; append
    successes to the stage's tracking journal; write the batch's final
    status and an audit row; arrive at the stage barrier. The arrival that
    empties the barrier retries the stage's pending ledger entries once and
    advances the project.

    Subclasses implement ``process_item`` and ``tracking_path``.
    """

    stage: StageDefinition

    @property
    def name(self) -> str:
        return self.stage.name

    def process_item(self, ctx: WorkerContext, item: WorkItem, params: dict[str, Any]) -> None:
        """Perform the stage's side effect for one item. Raise on failure."""
        raise NotImplementedError

    def tracking_path(self, item: WorkItem) -> Optional[str]:
        """Path to append to the stage's tracking journal on success."""
        return None

    def run(self, ctx: WorkerContext, params: dict[str, Any]) -> WorkerResult:
        if params.get("finalize"):
            return self.finalize(ctx, params["project"])

        project = params["project"]
        batch_name = params["batch"]
        result = WorkerResult(worker=self.name, project=project, batch=batch_name)
        records = ctx.records
        stage = self.stage

        owned = records.batch_statuses(project, stage.group).get(batch_name)
        if owned != stage.in_progress:
            logger.warning(
                f"{self.name}: {batch_name} of {project} is {owned.value if owned else 'missing'}, not claimed; skipping",
                extra={"project": project, "stage": self.name, "batch": batch_name, "event": "worker_skipped"},
            )
            result.status = "skipped"
            return result

        logger.info(f"Starting {self.name} of {batch_name} for {project}",
                    extra={"project": project, "stage": self.name, "batch": batch_name, "event": "worker_started"})
        final_status = stage.done
        try:
            batch = records.batch(project, stage.group, batch_name)
            if batch is None:
                raise RecordNotFoundError(f"{project}/{stage.group.value}/{batch_name}")
            project_params = records.status_doc(project).get("params") or {}
            outcomes = self._process_batch(ctx, project, batch, project_params, PRIMARY_ATTEMPT)
            result.succeeded = [o.path for o in outcomes if not o.failed]
            result.failures = [o.describe() for o in outcomes if o.failed]
            ctx.audit_row(project, f"{self.name.capitalize()} of {batch_name} completed", {
                "batch": batch_name,
                "total": len(outcomes),
                "succeeded": len(result.succeeded),
                "failed": len(result.failures),
                "failures": result.failures,
            })
        except Exception as e:
            logger.error(f"{self.name} of {batch_name} for {project} failed: {e}", exc_info=True,
                         extra={"project": project, "stage": self.name, "batch": batch_name, "event": "worker_failed"})
            final_status = BatchStatus.ERROR
            result.status = "failed"
            result.error = sanitize_error_message(e)
            ctx.audit_row(project, f"{self.name.capitalize()} of {batch_name} failed", {"batch": batch_name, "error": result.error})

        try:
            if not records.set_batch_status(project, stage.group, batch_name, final_status, expected=stage.in_progress):
                logger.warning(f"{batch_name} of {project} was reclaimed during {self.name}; not arriving at barrier")
                return result
            records.clear_lease(project, stage.group, batch_name)
            closed = Barrier(records).arrive(project, stage, batch_name)
        except Exception as e:
            # The scheduler's sweep or lease reclaim picks the batch up again
            logger.error(f"Could not record {final_status.value} for {batch_name} of {project}: {e}", exc_info=True,
                         extra={"project": project, "stage": self.name, "batch": batch_name, "event": "worker_failed"})
            result.status = "failed"
            result.error = sanitize_error_message(e)
            return result

        if closed:
            self._close_stage(ctx, project, batch_name, result)
        return result

    def _process_batch(
        self,
        ctx: WorkerContext,
        project: str,
        batch: BatchRecord,
        project_params: dict[str, Any],
        attempt: int,
    ) -> list[ItemOutcome]:
        outcomes = []
        for item in batch.files:
            outcome = classify(item.source_path, lambda item=item: self.process_item(ctx, item, project_params))
            if outcome.kind == OutcomeKind.SOFT:
                outcome = ItemOutcome(item.destination_path, OutcomeKind.SOFT, outcome.message)
            outcomes.append(outcome)
            if outcome.kind == OutcomeKind.HARD:
                logger.warning(f"{self.name} failed for {item.source_path}: {outcome.message}")

        ledger = RetryLedger(ctx.records, project)
        ledger.record(
            RetryEntry(o.path, self.name, o.message, attempt, RetryOutcome.FAILED, batch.batch_name)
            for o in outcomes if o.kind == OutcomeKind.HARD
        )
        self._track(ctx, project, batch.batch_name, [
            item for item, o in zip(batch.files, outcomes) if o.kind == OutcomeKind.SUCCESS
        ])
        return outcomes

    def _track(self, ctx: WorkerContext, project: str, batch_name: str, items: list[WorkItem]) -> None:
        if self.stage.tracking_file is None or not items:
            return
        entries = []
        for item in items:
            path = self.tracking_path(item)
            if path:
                entries.append(TrackingEntry(file_path=path, batch_name=batch_name))
        ctx.records.append_tracking(project, self.stage.tracking_file, entries)

    def retry_pending(self, ctx: WorkerContext, project: str) -> dict[str, list[str]]:
        """
        Retry every path whose latest ledger entry is a primary-pass failure.

        Returns:
            {"recovered": [...], "terminal": [...]}
        """
        ledger = RetryLedger(ctx.records, project)
        pending = ledger.pending(self.name)
        summary: dict[str, list[str]] = {"recovered": [], "terminal": []}
        if not pending:
            return summary

        project_params = ctx.records.status_doc(project).get("params") or {}
        batches: dict[str, Optional[BatchRecord]] = {}
        entries = []
        recovered_items: dict[str, list[WorkItem]] = {}
        for entry in pending:
            if entry.batch_name not in batches:
                batches[entry.batch_name] = ctx.records.batch(project, self.stage.group, entry.batch_name)
            batch = batches[entry.batch_name]
            item = next((f for f in batch.files if f.source_path == entry.path), None) if batch else None
            if item is None:
                outcome = ItemOutcome(entry.path, OutcomeKind.HARD, "work item no longer available")
            else:
                outcome = classify(entry.path, lambda item=item: self.process_item(ctx, item, project_params))

            if outcome.kind == OutcomeKind.SUCCESS:
                entries.append(RetryEntry(entry.path, self.name, "", RETRY_ATTEMPT, RetryOutcome.SUCCEEDED, entry.batch_name))
                recovered_items.setdefault(entry.batch_name, []).append(item)
                summary["recovered"].append(entry.path)
            else:
                message = outcome.message or entry.error_message
                entries.append(RetryEntry(entry.path, self.name, message, RETRY_ATTEMPT, RetryOutcome.TERMINAL, entry.batch_name))
                summary["terminal"].append(entry.path)

        ledger.record(entries)
        for batch_name, items in recovered_items.items():
            self._track(ctx, project, batch_name, items)
        return summary

    def finalize(self, ctx: WorkerContext, project: str) -> WorkerResult:
        """Boundary work dispatched by the scheduler for a barrier no worker will close."""
        result = WorkerResult(worker=self.name, project=project, status="skipped")
        status = ctx.records.status(project)
        if status != self.stage.predecessor:
            logger.info(f"{self.name}: {project} is {status.value if status else 'missing'}; nothing to finalize")
            return result
        result.status = "completed"
        self._close_stage(ctx, project, "scheduler", result)
        return result

    def _close_stage(self, ctx: WorkerContext, project: str, closed_by: str, result: WorkerResult) -> None:
        """Run finish_stage; on failure hand the barrier back to the scheduler."""
        try:
            result.advanced = self.finish_stage(ctx, project, closed_by=closed_by)
            return
        except Exception as e:
            logger.error(f"{self.name} boundary work for {project} failed: {e}", exc_info=True,
                         extra={"project": project, "stage": self.name, "event": "finish_failed"})
            result.status = "failed"
            result.error = sanitize_error_message(e)

        try:
            Barrier(ctx.records).abandon(project, self.stage)
            ctx.audit_row(project, f"{self.name.capitalize()} boundary work failed", {
                "closedBy": closed_by,
                "error": result.error,
            })
        except Exception as e:
            logger.error(f"Could not hand {self.name} barrier of {project} back to the scheduler: {e}",
                         extra={"project": project, "stage": self.name, "event": "finish_failed"})

    def finish_stage(self, ctx: WorkerContext, project: str, closed_by: str) -> bool:
        """
        Boundary work of the last worker out: one retry pass, then advance.

        Partial success never blocks the advance.
        """
        stage = self.stage
        retry = self.retry_pending(ctx, project)
        if retry["recovered"] or retry["terminal"]:
            ctx.audit_row(project, f"{self.name.capitalize()} retry pass", {
                "recovered": retry["recovered"],
                "terminal": retry["terminal"],
            })

        terminal = RetryLedger(ctx.records, project).terminal_failures(self.name)
        advanced = advance_project(
            ctx.records,
            project,
            stage.predecessor,
            stage.target,
            AuditEntry(
                step_name=f"{self.name.capitalize()} completed for all batches",
                step=stage.target.value,
                details={"closedBy": closed_by, "terminalFailures": terminal},
            ),
        )
        Barrier(ctx.records).release(project, stage)
        if advanced:
            ctx.audit_row(project, f"Project moved to {stage.target.value}", {"terminalFailures": terminal})
        return advanced
