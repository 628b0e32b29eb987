"""Runtime - wiring configuration to stores, clients and workers.

This module provides the entry points the CLI (and any other host) uses:
1. Builds the record store and collaborator clients from PromorchConfig
2. Creates the WorkerContext shared by every worker invocation
3. Runs workers by stage name via the registry
4. Builds schedulers with a dispatcher bound to the same runtime

Usage:
    from promorch.runtime import Runtime

    runtime = Runtime.from_config(config)
    runtime.run_worker("copy", {"project": "/gb/summit", "batch": "non_processing_batch_1"})
    runtime.scheduler("copy").tick()
"""

import logging
import threading
from pathlib import Path
from typing import Any, Optional

from promorch.clients import (
    FilesystemCopyClient,
    GrayboxTransformClient,
    HelixBulkClient,
    HttpContentClient,
    InlineDispatcher,
    ThreadPoolDispatcher,
)
from promorch.clients.base import Dispatcher
from promorch.config import PromorchConfig
from promorch.poller import BulkJobPoller
from promorch.records import ProjectRecords
from promorch.scheduler import Scheduler
from promorch.stages import get_stage
from promorch.store import RecordStore, create_store
from promorch.workers import WorkerContext, WorkerResult, registry

logger = logging.getLogger(__name__)


def build_store(config: PromorchConfig) -> RecordStore:
    path = None if config.store_backend == "memory" else Path(config.store_path).expanduser()
    return create_store(config.store_backend, path)


def build_poller(config: PromorchConfig, stop_event: threading.Event) -> Optional[BulkJobPoller]:
    """Bulk preview poller, or None when no content repository is configured."""
    if not config.owner or not config.repo:
        logger.info("No owner/repo configured; verification will be skipped")
        return None
    client = HelixBulkClient(
        config.owner,
        config.repo,
        config.branch,
        api_base=config.bulk_api_base,
        api_key=config.admin_api_key,
        enable_preview=config.enable_preview or None,
    )
    return BulkJobPoller(
        client,
        poll_interval_seconds=config.poll_interval_seconds,
        max_poll_attempts=config.max_poll_attempts,
        max_submit_retries=config.max_submit_retries,
        submit_retry_delay_seconds=config.submit_retry_delay_seconds,
        stop_event=stop_event,
    )


class Runtime:
    """Everything a worker or scheduler needs, built once per process."""

    def __init__(self, config: PromorchConfig, ctx: WorkerContext, stop_event: Optional[threading.Event] = None):
        self.config = config
        self.ctx = ctx
        self.stop_event = stop_event or threading.Event()

    @classmethod
    def from_config(cls, config: PromorchConfig, store: Optional[RecordStore] = None) -> "Runtime":
        stop_event = threading.Event()
        records = ProjectRecords(store or build_store(config))
        ctx = WorkerContext(
            records=records,
            copy_client=FilesystemCopyClient(Path(config.copy_root).expanduser()),
            transform_client=GrayboxTransformClient(),
            content_client=HttpContentClient(config.content_base_url) if config.content_base_url else None,
            poller=build_poller(config, stop_event),
            chunk_size=config.chunk_size,
            staging_root=config.staging_root,
            item_retry_attempts=config.item_retry_attempts,
            item_retry_delay_seconds=config.item_retry_delay_seconds,
            claim_timeout_seconds=config.claim_timeout_seconds,
        )
        return cls(config, ctx, stop_event)

    @property
    def records(self) -> ProjectRecords:
        return self.ctx.records

    def run_worker(self, worker_name: str, params: dict[str, Any]) -> WorkerResult:
        """Run one worker invocation synchronously.

        Raises:
            KeyError: If no worker is registered under ``worker_name``
        """
        worker = registry.get(worker_name)
        logger.info(f"Running {worker_name} worker: {params}")
        result = worker.run(self.ctx, params)
        logger.info(
            f"{worker_name} worker {result.status} for {result.project}",
            extra={"project": result.project, "stage": worker_name, "batch": result.batch,
                   "event": "worker_finished", "metadata": result.to_dict()},
        )
        return result

    def dispatcher(self, inline: bool = False) -> Dispatcher:
        if inline:
            return InlineDispatcher(self.run_worker)
        return ThreadPoolDispatcher(self.run_worker, max_workers=self.config.dispatch_workers)

    def scheduler(self, stage_name: str, dispatcher: Optional[Dispatcher] = None) -> Scheduler:
        """
        Build the scheduler of a stage.

        Raises:
            KeyError: If the stage is unknown
        """
        return Scheduler(
            get_stage(stage_name),
            self.records,
            dispatcher or self.dispatcher(),
            claim_timeout_seconds=self.config.claim_timeout_seconds,
            max_workers=self.config.dispatch_workers,
        )

    def shutdown(self) -> None:
        """Cancel in-flight polling."""
        self.stop_event.set()
