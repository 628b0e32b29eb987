"""
Batch partitioner.

Splits an ordered list of work items into fixed-size chunks with
deterministic 1-indexed names and persists them: one document per batch,
the group's status table (every batch ``initiated``) and the completion
barrier of every stage that runs over the group.
"""

import logging
import math
from typing import Sequence, TypeVar

from promorch.records import ProjectRecords, batch_status_path, leases_path
from promorch.schemas import BatchRecord, BatchStatus, ItemType, WorkItem
from promorch.sequencer import Barrier
from promorch.stages import stages_for_group

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 200

T = TypeVar("T")


def partition(items: Sequence[T], chunk_size: int = DEFAULT_CHUNK_SIZE, prefix: str = "batch") -> list[tuple[str, list[T]]]:
    """
    Split ``items`` into ``ceil(len(items) / chunk_size)`` named chunks.

    Args:
        items: Ordered work items
        chunk_size: Maximum items per chunk
        prefix: Batch name prefix (``batch`` -> ``batch_1``, ``batch_2``, ...)

    Returns:
        List of (batch_name, chunk) in input order

    Raises:
        ValueError: If chunk_size < 1
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got: {chunk_size}")
    items = list(items)
    count = math.ceil(len(items) / chunk_size)
    return [
        (f"{prefix}_{n + 1}", items[n * chunk_size:(n + 1) * chunk_size])
        for n in range(count)
    ]


def write_batches(
    records: ProjectRecords,
    project: str,
    group: ItemType,
    items: Sequence[WorkItem],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> list[str]:
    """
    Partition a group's items and persist batches, status table and barrier.

    Re-running for the same input yields the same batch names. Any previous
    leases of the group are discarded.

    Returns:
        Batch names written, in order
    """
    group = ItemType(group)
    chunks = partition(items, chunk_size, prefix=group.batch_prefix)

    for name, chunk in chunks:
        records.write_batch(project, BatchRecord(batch_name=name, item_type=group, files=tuple(chunk)))

    names = [name for name, _ in chunks]
    store = records.store
    store.write_json(batch_status_path(project, group), {name: BatchStatus.INITIATED.value for name in names})
    Barrier(records).arm(project, group, [s.name for s in stages_for_group(group)], names)
    store.write_json(leases_path(project, group), {})

    logger.info(
        f"Wrote {len(names)} {group.value} batches for {len(items)} items",
        extra={"project": project, "event": "batches_written", "metadata": {"group": group.value, "batches": len(names)}},
    )
    return names
