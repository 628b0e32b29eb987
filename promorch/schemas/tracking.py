"""
Tracking schemas - append-only journal entries.

TrackingEntry rows are appended by copy/promote workers and flipped by the
verify worker. RetryEntry rows make up the retry ledger. In both journals
the current state of a path is the last entry appended for it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from promorch.utils import parse_timestamp, utcnow


class PreviewStatus(str, Enum):
    """Verification state of a produced file."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RetryOutcome(str, Enum):
    """Outcome recorded by a retry ledger entry."""
    FAILED = "failed"
    SUCCEEDED = "succeeded"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class TrackingEntry:
    """
    A produced file awaiting (or done with) verification.

    Attributes:
        file_path: Destination path of the produced file
        preview_status: pending until verified, then completed or failed
        produced_at: When the entry was appended
        batch_name: Batch that produced the file
        resource_path: Resource path reported by the bulk operation
    """
    file_path: str
    preview_status: PreviewStatus = PreviewStatus.PENDING
    produced_at: datetime = field(default_factory=utcnow)
    batch_name: Optional[str] = None
    resource_path: Optional[str] = None

    def resolved(self, success: bool, resource_path: Optional[str] = None) -> "TrackingEntry":
        """Return a new entry carrying the verification result."""
        return TrackingEntry(
            file_path=self.file_path,
            preview_status=PreviewStatus.COMPLETED if success else PreviewStatus.FAILED,
            produced_at=utcnow(),
            batch_name=self.batch_name,
            resource_path=resource_path or self.resource_path,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "filePath": self.file_path,
            "previewStatus": self.preview_status.value,
            "producedAt": self.produced_at.isoformat(),
        }
        if self.batch_name is not None:
            result["batchName"] = self.batch_name
        if self.resource_path is not None:
            result["resourcePath"] = self.resource_path
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackingEntry":
        return cls(
            file_path=data["filePath"],
            preview_status=PreviewStatus(data.get("previewStatus", PreviewStatus.PENDING)),
            produced_at=parse_timestamp(data.get("producedAt")) or utcnow(),
            batch_name=data.get("batchName"),
            resource_path=data.get("resourcePath"),
        )


@dataclass(frozen=True)
class RetryEntry:
    """
    One retry ledger row.

    Attributes:
        path: Item path the row is about
        stage: Stage name (transform, copy, promote, verify)
        error_message: Failure description (empty for successes)
        attempt: 1 for the primary pass, 2 for the boundary retry
        outcome: failed, succeeded or terminal
        batch_name: Batch the item belongs to, if any
        recorded_at: When the row was appended
    """
    path: str
    stage: str
    error_message: str = ""
    attempt: int = 1
    outcome: RetryOutcome = RetryOutcome.FAILED
    batch_name: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.attempt < 1:
            raise ValueError("attempt must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "path": self.path,
            "stage": self.stage,
            "errorMessage": self.error_message,
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "recordedAt": self.recorded_at.isoformat(),
        }
        if self.batch_name is not None:
            result["batchName"] = self.batch_name
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryEntry":
        return cls(
            path=data["path"],
            stage=data["stage"],
            error_message=data.get("errorMessage", ""),
            attempt=int(data.get("attempt", 1)),
            outcome=RetryOutcome(data.get("outcome", RetryOutcome.FAILED)),
            batch_name=data.get("batchName"),
            recorded_at=parse_timestamp(data.get("recordedAt")) or utcnow(),
        )
