"""
Bulk-job poller.

Drives a remote asynchronous bulk operation to completion:

1. Submit the path set; transient submission failures are retried a
   bounded number of times with a fixed delay, auth and other permanent
   failures abort immediately (every path failed, no polling).
2. Poll the job on a fixed interval until it reports a terminal state or
   the attempt budget is spent. Responses are merged monotonically: a path
   once reported successful stays successful.
3. Return one outcome per submitted path; paths the remote never reported
   are failed.

Sleeps wait on a ``threading.Event`` so ``cancel()`` (e.g. on shutdown)
interrupts a poll loop immediately.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from promorch.clients.base import BulkOperationClient
from promorch.errors import AuthError, PermanentError, TransientError
from promorch.schemas import PathOutcome

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_POLL_ATTEMPTS = 30
DEFAULT_MAX_SUBMIT_RETRIES = 5
DEFAULT_SUBMIT_RETRY_DELAY_SECONDS = 5.0


@dataclass
class PollRun:
    """Observability of the most recent poller invocation."""
    job_handle: Optional[str] = None
    submit_attempts: int = 0
    poll_count: int = 0
    elapsed_seconds: float = 0.0
    cancelled: bool = False
    aborted: Optional[str] = None
    terminal_state: Optional[str] = None
    progress: Optional[dict[str, Any]] = field(default=None, repr=False)


def merge_outcomes(accumulated: dict[str, PathOutcome], update: list[PathOutcome]) -> dict[str, PathOutcome]:
    """
    Merge one poll response into the accumulator.

    A success is never overwritten by a later failure.
    """
    for outcome in update:
        previous = accumulated.get(outcome.path)
        if previous is not None and previous.success and not outcome.success:
            continue
        accumulated[outcome.path] = outcome
    return accumulated


class BulkJobPoller:
    """
    Submits paths to a BulkOperationClient and polls the job to completion.

    Args:
        client: Bulk operation client
        poll_interval_seconds: Delay between polls
        max_poll_attempts: Poll budget per job
        max_submit_retries: Retries of a transiently failing submission
        submit_retry_delay_seconds: Fixed delay between submission retries
        stop_event: Shared cancellation event (a private one by default)
        clock: Monotonic clock for elapsed time
    """

    def __init__(
        self,
        client: BulkOperationClient,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        max_submit_retries: int = DEFAULT_MAX_SUBMIT_RETRIES,
        submit_retry_delay_seconds: float = DEFAULT_SUBMIT_RETRY_DELAY_SECONDS,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_poll_attempts < 1:
            raise ValueError("max_poll_attempts must be >= 1")
        self.client = client
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self.max_submit_retries = max_submit_retries
        self.submit_retry_delay_seconds = submit_retry_delay_seconds
        self._stop = stop_event or threading.Event()
        self._clock = clock
        self.last_run = PollRun()

    def cancel(self) -> None:
        """Interrupt any sleep and stop polling."""
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def _sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled. Returns False if cancelled."""
        if seconds <= 0:
            return not self._stop.is_set()
        return not self._stop.wait(seconds)

    def _submit_job(self, paths: list[str], operation: str, context: dict[str, Any], run: PollRun) -> Optional[str]:
        attempt = 0
        while True:
            attempt += 1
            run.submit_attempts = attempt
            try:
                return self.client.submit(paths, operation, context)
            except AuthError as e:
                logger.error(f"Bulk {operation} rejected, not retrying: {e}")
                run.aborted = "auth"
                return None
            except PermanentError as e:
                logger.error(f"Bulk {operation} submission failed permanently: {e}")
                run.aborted = "permanent"
                return None
            except TransientError as e:
                if attempt > self.max_submit_retries:
                    logger.error(f"Bulk {operation} submission failed after {attempt} attempts: {e}")
                    run.aborted = "retries_exhausted"
                    return None
                logger.warning(
                    f"Bulk {operation} submission attempt {attempt} failed: {e}. "
                    f"Retrying in {self.submit_retry_delay_seconds}s..."
                )
                if not self._sleep(self.submit_retry_delay_seconds):
                    run.cancelled = True
                    return None

    def _poll(self, job_handle: str, operation: str, run: PollRun) -> dict[str, PathOutcome]:
        accumulated: dict[str, PathOutcome] = {}
        while run.poll_count < self.max_poll_attempts:
            if self._stop.is_set() or (run.poll_count and not self._sleep(self.poll_interval_seconds)):
                run.cancelled = True
                break
            run.poll_count += 1
            try:
                status = self.client.poll_status(job_handle, operation)
            except TransientError as e:
                logger.warning(f"Poll {run.poll_count}/{self.max_poll_attempts} of {job_handle} failed: {e}")
                continue
            except PermanentError as e:
                logger.error(f"Polling {job_handle} failed permanently: {e}")
                run.aborted = "poll_permanent"
                break

            merge_outcomes(accumulated, status.resources)
            run.progress = status.progress
            logger.info(
                f"Job {job_handle} poll {run.poll_count}: state={status.state} "
                f"resolved={sum(1 for o in accumulated.values() if o.success)}/{len(accumulated)}"
            )
            if status.terminal:
                run.terminal_state = status.state or "terminal"
                break
        return accumulated

    def submit(self, paths: list[str], operation: str, context: Optional[dict[str, Any]] = None) -> list[PathOutcome]:
        """
        Run one bulk job over ``paths``.

        Empty or falsy paths are dropped; an empty path set returns [].

        Returns:
            One PathOutcome per (kept) input path, in input order
        """
        paths = [p for p in paths if p]
        run = PollRun()
        self.last_run = run
        if not paths:
            return []

        started = self._clock()
        accumulated: dict[str, PathOutcome] = {}
        try:
            job_handle = self._submit_job(paths, operation, context or {}, run)
            if job_handle is not None:
                run.job_handle = job_handle
                accumulated = self._poll(job_handle, operation, run)
        finally:
            run.elapsed_seconds = self._clock() - started

        outcomes = []
        for path in paths:
            reported = accumulated.get(path)
            if reported is not None and reported.success:
                outcomes.append(reported)
            else:
                outcomes.append(PathOutcome(path=path, success=False))
        logger.info(
            f"Bulk {operation}: {sum(o.success for o in outcomes)}/{len(outcomes)} succeeded "
            f"(job={run.job_handle}, polls={run.poll_count}, elapsed={run.elapsed_seconds:.1f}s)",
            extra={"event": "bulk_job_done", "metadata": {"operation": operation, "job": run.job_handle}},
        )
        return outcomes

    def submit_with_retry(
        self,
        paths: list[str],
        operation: str,
        context: Optional[dict[str, Any]] = None,
    ) -> "BulkPassResult":
        """
        Run a bulk job, then exactly one more job over the paths that failed.

        Second-pass outcomes replace the first-pass ones. There is no third
        pass.
        """
        first = self.submit(paths, operation, context)
        retried = [o.path for o in first if not o.success]
        if not retried or self.cancelled:
            return BulkPassResult(outcomes=first, retried=retried, terminal=retried)

        logger.info(f"Retrying bulk {operation} for {len(retried)} failed paths")
        second = {o.path: o for o in self.submit(retried, operation, context)}
        final = [second.get(o.path, o) for o in first]
        return BulkPassResult(
            outcomes=final,
            retried=retried,
            terminal=[o.path for o in final if not o.success],
        )


@dataclass
class BulkPassResult:
    """
    Result of a two-pass bulk run.

    Attributes:
        outcomes: Final outcome per path, in input order
        retried: Paths that failed the first pass
        terminal: Paths still failing after the second pass
    """
    outcomes: list[PathOutcome]
    retried: list[str]
    terminal: list[str]
