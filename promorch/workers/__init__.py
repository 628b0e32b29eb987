"""promorch workers package.

Provides one stateless worker per pipeline stage:
- DiscoveryWorker: builds work items and batches for a project
- TransformWorker: rewrites processing items into the staging area
- CopyWorker: copies non-processing items verbatim
- PromoteWorker: moves staged artifacts to their destination
- VerifyWorker: bulk-previews produced files

All workers implement the Worker protocol and are registered with the
global registry for dispatch by stage name.
"""

from promorch.workers.base import (
    BatchStageWorker,
    Worker,
    WorkerContext,
    WorkerRegistry,
    WorkerResult,
    registry,
)
from promorch.workers.batch import CopyWorker, PromoteWorker, TransformWorker
from promorch.workers.discovery import DiscoveryWorker
from promorch.workers.verify import VerifyWorker

__all__ = [
    "BatchStageWorker",
    "Worker",
    "WorkerContext",
    "WorkerRegistry",
    "WorkerResult",
    "registry",
    "CopyWorker",
    "DiscoveryWorker",
    "PromoteWorker",
    "TransformWorker",
    "VerifyWorker",
]
