"""
Batch stage workers.

- TransformWorker: processing batches; source -> transform -> staging area
- CopyWorker: non-processing batches; source -> destination verbatim
- PromoteWorker: processed batches; staged artifact -> destination
"""

import logging
from typing import Any, Optional

from promorch.schemas import WorkItem
from promorch.stages import COPY, PROMOTE, TRANSFORM
from promorch.utils import handle_extension
from promorch.workers.base import BatchStageWorker, WorkerContext, registry, upload_or_raise

logger = logging.getLogger(__name__)


def staged_path(ctx: WorkerContext, item: WorkItem) -> str:
    """Where the transformed artifact of ``item`` is kept until promotion."""
    return f"{ctx.staging_root.rstrip('/')}/{item.destination_path.lstrip('/')}"


def read_source(ctx: WorkerContext, path: str) -> bytes:
    meta = ctx.call(lambda: ctx.copy_client.fetch_metadata(path))
    return ctx.call(lambda: ctx.copy_client.download(meta.download_url))


class TransformWorker(BatchStageWorker):
    """Rewrites processing items and stages the result."""

    stage = TRANSFORM

    def process_item(self, ctx: WorkerContext, item: WorkItem, params: dict[str, Any]) -> None:
        content = read_source(ctx, item.source_path)
        context = {
            "experienceName": params.get("experienceName"),
            "sourcePath": item.source_path,
            "destinationPath": item.destination_path,
            **item.metadata,
        }
        transformed = ctx.call(lambda: ctx.transform_client.transform(content, context))
        upload_or_raise(ctx, transformed, staged_path(ctx, item))


class CopyWorker(BatchStageWorker):
    """Copies non-processing items to their destination unchanged."""

    stage = COPY

    def process_item(self, ctx: WorkerContext, item: WorkItem, params: dict[str, Any]) -> None:
        content = read_source(ctx, item.source_path)
        upload_or_raise(ctx, content, item.destination_path)

    def tracking_path(self, item: WorkItem) -> Optional[str]:
        return handle_extension(item.destination_path)


class PromoteWorker(BatchStageWorker):
    """Moves staged artifacts of processed items to their destination."""

    stage = PROMOTE

    def process_item(self, ctx: WorkerContext, item: WorkItem, params: dict[str, Any]) -> None:
        content = read_source(ctx, staged_path(ctx, item))
        upload_or_raise(ctx, content, item.destination_path)

    def tracking_path(self, item: WorkItem) -> Optional[str]:
        return handle_extension(item.destination_path)


registry.register(TRANSFORM.name, TransformWorker())
registry.register(COPY.name, CopyWorker())
registry.register(PROMOTE.name, PromoteWorker())
