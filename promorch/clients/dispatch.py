"""
Worker dispatch.

A dispatcher hands a worker name and its parameters to a handler without
the caller waiting for the result. Failures to enqueue are raised to the
caller (the scheduler rolls its claim back); failures inside the worker
are the worker's concern.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

logger = logging.getLogger(__name__)

WorkerHandler = Callable[[str, dict[str, Any]], Any]


class ThreadPoolDispatcher:
    """Fire-and-forget dispatch onto a thread pool."""

    def __init__(self, handler: WorkerHandler, max_workers: int = 8):
        self._handler = handler
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="promorch-worker")
        self._futures: set[Future] = set()

    def invoke_async(self, worker_name: str, params: dict[str, Any]) -> None:
        # Raises RuntimeError once shut down
        future = self._executor.submit(self._handler, worker_name, dict(params))
        self._futures.add(future)
        future.add_done_callback(self._on_done)

    def _on_done(self, future: Future) -> None:
        self._futures.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Worker invocation raised", exc_info=error)

    @property
    def pending(self) -> int:
        return len(self._futures)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


class InlineDispatcher:
    """Runs the worker synchronously in the caller's thread (CLI ``--inline``, tests)."""

    def __init__(self, handler: WorkerHandler):
        self._handler = handler
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def invoke_async(self, worker_name: str, params: dict[str, Any]) -> None:
        self.calls.append((worker_name, dict(params)))
        self._handler(worker_name, dict(params))

    def shutdown(self, wait: bool = True) -> None:
        pass
