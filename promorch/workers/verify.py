"""
Verify worker.

Submits every produced file that is still pending verification through the
bulk-job poller, in chunks of ``chunk_size``. Paths the poller reports as
failed get exactly one more bulk job; whatever still fails is recorded as a
terminal failure. The tracking journals receive one resolved entry per
path, then the project is completed. Terminal failures never block
completion.
"""

import logging
from typing import Any

from promorch.ledger import PRIMARY_ATTEMPT, RETRY_ATTEMPT, RetryLedger
from promorch.partitioner import partition
from promorch.records import TRACKING_FILES
from promorch.schemas import AuditEntry, PreviewStatus, ProjectStatus, RetryEntry, RetryOutcome
from promorch.sequencer import advance_project
from promorch.stages import VERIFY
from promorch.utils import sanitize_error_message
from promorch.workers.base import WorkerContext, WorkerResult, registry

logger = logging.getLogger(__name__)

PREVIEW_OPERATION = "preview"
NOT_VERIFIED = "not reported successful by bulk preview"


class VerifyWorker:
    """Project-level worker that verifies produced files in bulk."""

    name = VERIFY.name
    stage = VERIFY

    def run(self, ctx: WorkerContext, params: dict[str, Any]) -> WorkerResult:
        project = params["project"]
        result = WorkerResult(worker=self.name, project=project)
        records = ctx.records

        status = records.status(project)
        if status != VERIFY.project_in_progress:
            logger.warning(f"verify: {project} is {status.value if status else 'missing'}, not claimed; skipping")
            result.status = "skipped"
            return result

        try:
            if ctx.poller is None:
                ctx.audit_row(project, "Verification skipped", {"reason": "no bulk operation client configured"})
            else:
                completed = self.verify(ctx, project, params, result)
                if not completed:
                    result.status = "skipped"
                    return result
        except Exception as e:
            logger.error(f"Verification of {project} failed: {e}", exc_info=True,
                         extra={"project": project, "stage": self.name, "event": "worker_failed"})
            result.status = "failed"
            result.error = sanitize_error_message(e)
            ctx.audit_row(project, "Verification failed", {"error": result.error})
            advance_project(
                records, project, VERIFY.project_in_progress, ProjectStatus.FAILED,
                AuditEntry(step_name=f"Verification failed: {result.error}", step=ProjectStatus.FAILED.value),
            )
            return result

        result.advanced = advance_project(
            records, project, VERIFY.project_in_progress, VERIFY.target,
            AuditEntry(
                step_name="Promotion completed",
                step=VERIFY.target.value,
                details={"verified": len(result.succeeded), "terminalFailures": result.failures},
            ),
        )
        return result

    def verify(self, ctx: WorkerContext, project: str, params: dict[str, Any], result: WorkerResult) -> bool:
        """
        Verify pending tracking entries of both journals.

        Returns:
            False if the poller was cancelled before every chunk was verified
        """
        records = ctx.records
        ledger = RetryLedger(records, project)
        context = {"experienceName": (records.status_doc(project).get("params") or {}).get("experienceName")}

        for tracking_file in TRACKING_FILES:
            pending = [
                e for e in records.tracking_state(project, tracking_file).values()
                if e.preview_status == PreviewStatus.PENDING
            ]
            for _, chunk in partition(pending, ctx.chunk_size):
                by_path = {e.file_path: e for e in chunk}
                run = ctx.poller.submit_with_retry(list(by_path), PREVIEW_OPERATION, context)
                if ctx.poller.cancelled:
                    logger.warning(f"Verification of {project} cancelled; leaving entries pending")
                    return False

                ledger.record(
                    [RetryEntry(p, self.name, NOT_VERIFIED, PRIMARY_ATTEMPT, RetryOutcome.FAILED, by_path[p].batch_name)
                     for p in run.retried]
                    + [RetryEntry(p, self.name, "", RETRY_ATTEMPT, RetryOutcome.SUCCEEDED, by_path[p].batch_name)
                       for p in run.retried if p not in run.terminal]
                    + [RetryEntry(p, self.name, NOT_VERIFIED, RETRY_ATTEMPT, RetryOutcome.TERMINAL, by_path[p].batch_name)
                       for p in run.terminal]
                )
                records.append_tracking(project, tracking_file, [
                    by_path[o.path].resolved(o.success, o.resource_path) for o in run.outcomes
                ])
                result.succeeded.extend(o.path for o in run.outcomes if o.success)
                result.failures.extend(run.terminal)

        ctx.audit_row(project, "Verification completed", {
            "verified": len(result.succeeded),
            "failed": len(result.failures),
            "failures": result.failures,
        })
        return True


registry.register(VERIFY.name, VerifyWorker())
