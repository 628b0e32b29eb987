"""
Batch schemas - work items and the batches that group them.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class BatchStatus(str, Enum):
    """Status of a batch within its group's status table."""
    INITIATED = "initiated"
    TRANSFORM_IN_PROGRESS = "transform_in_progress"
    PROCESSED = "processed"
    COPY_IN_PROGRESS = "copy_in_progress"
    COPIED = "copied"
    PROMOTE_IN_PROGRESS = "promote_in_progress"
    PROMOTED = "promoted"
    ERROR = "error"

    @property
    def is_in_progress(self) -> bool:
        return self.value.endswith("_in_progress")


class ItemType(str, Enum):
    """Which partition a work item belongs to."""
    PROCESSING = "processing"
    NON_PROCESSING = "non_processing"

    @property
    def batch_prefix(self) -> str:
        return f"{self.value}_batch"


@dataclass(frozen=True)
class WorkItem:
    """
    A single source item to move through the pipeline.

    Immutable once assigned to a batch. Discovered sub-items are recorded
    with ``annotate`` and folded into new batches, never appended to the
    owning batch.
    """
    source_path: str
    destination_path: str
    metadata: dict[str, Any] = field(default_factory=dict)
    md_path: Optional[str] = None

    def annotate(self, **meta: Any) -> "WorkItem":
        """Return a copy with ``meta`` merged into the metadata."""
        return replace(self, metadata={**self.metadata, **meta})

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "sourcePath": self.source_path,
            "destinationPath": self.destination_path,
        }
        if self.metadata:
            result["metadata"] = self.metadata
        if self.md_path is not None:
            result["mdPath"] = self.md_path
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkItem":
        return cls(
            source_path=data["sourcePath"],
            destination_path=data.get("destinationPath", data["sourcePath"]),
            metadata=data.get("metadata") or {},
            md_path=data.get("mdPath"),
        )


@dataclass(frozen=True)
class BatchRecord:
    """
    One partition of a group's work items.

    Attributes:
        batch_name: Unique within the project (``processing_batch_1``)
        item_type: Group the batch belongs to
        status: Status at the time the batch document was written
        files: Work items of the batch
    """
    batch_name: str
    item_type: ItemType
    status: BatchStatus = BatchStatus.INITIATED
    files: tuple[WorkItem, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "batchName": self.batch_name,
            "itemType": self.item_type.value,
            "status": self.status.value,
            "files": [item.to_dict() for item in self.files],
        }

    @classmethod
    def from_dict(cls, data: Any, batch_name: str = "", item_type: ItemType = ItemType.PROCESSING) -> "BatchRecord":
        """Deserialize; a bare list is accepted as the file list."""
        if isinstance(data, list):
            data = {"files": data}
        return cls(
            batch_name=data.get("batchName", batch_name),
            item_type=ItemType(data.get("itemType", item_type)),
            status=BatchStatus(data.get("status", BatchStatus.INITIATED)),
            files=tuple(WorkItem.from_dict(f) for f in data.get("files", [])),
        )
