"""
Project schemas - the project registry entry and its status log.

ProjectRecord is one entry of the ``project_queue`` document.
AuditEntry is one row of the per-project ``statuses`` log.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from promorch.utils import parse_timestamp, to_epoch_ms, utcnow


class ProjectStatus(str, Enum):
    """Pipeline phase of a project.

    Forward-only in declaration order; PAUSED and FAILED are absorbing.
    """
    INITIATED = "initiated"
    DISCOVERY_IN_PROGRESS = "discovery_in_progress"
    DISCOVERED = "discovered"
    TRANSFORMED = "transformed"
    COPIED = "copied"
    PROMOTED = "promoted"
    VERIFY_IN_PROGRESS = "verify_in_progress"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"

    @property
    def is_absorbing(self) -> bool:
        return self in (ProjectStatus.PAUSED, ProjectStatus.FAILED)

    @property
    def is_terminal(self) -> bool:
        return self.is_absorbing or self == ProjectStatus.COMPLETED

    @classmethod
    def can_advance(cls, src: "ProjectStatus", dst: "ProjectStatus") -> bool:
        """Whether ``src -> dst`` is a legal transition."""
        src, dst = cls(src), cls(dst)
        if src.is_absorbing:
            return False
        if dst.is_absorbing:
            return src != ProjectStatus.COMPLETED
        return _PIPELINE.index(dst) > _PIPELINE.index(src)


_PIPELINE = [s for s in ProjectStatus if not s.is_absorbing]


@dataclass(frozen=True)
class AuditEntry:
    """
    One row of a project's status log.

    Attributes:
        step_name: Human-readable description of what happened
        step: Status the project is in (or moved to) when the row was written
        timestamp: When the row was written
        details: Optional structured details (counts, failures)
    """
    step_name: str
    step: str
    timestamp: datetime = field(default_factory=utcnow)
    details: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "stepName": self.step_name,
            "step": self.step,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.details is not None:
            result["details"] = self.details
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        return cls(
            step_name=data["stepName"],
            step=data["step"],
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
            details=data.get("details"),
        )


@dataclass(frozen=True)
class ProjectRecord:
    """
    A project registry entry.

    Attributes:
        project_path: Unique key of the project (``<gbRootFolder>/<experienceName>``)
        status: Current pipeline phase
        created_time: When the project was initiated (queue ordering key)
        updated_time: Last status change
        originating_params: Opaque trigger parameters
    """
    project_path: str
    status: ProjectStatus
    created_time: datetime
    updated_time: datetime
    originating_params: dict[str, Any] = field(default_factory=dict)

    def with_status(self, status: ProjectStatus, when: Optional[datetime] = None) -> "ProjectRecord":
        """Return a copy moved to ``status``."""
        return ProjectRecord(
            project_path=self.project_path,
            status=ProjectStatus(status),
            created_time=self.created_time,
            updated_time=when or utcnow(),
            originating_params=self.originating_params,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the queue wire format (epoch milliseconds)."""
        return {
            "projectPath": self.project_path,
            "status": self.status.value,
            "createdTime": to_epoch_ms(self.created_time),
            "updatedTime": to_epoch_ms(self.updated_time),
            "originatingParams": self.originating_params,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectRecord":
        created = parse_timestamp(data.get("createdTime")) or utcnow()
        return cls(
            project_path=data["projectPath"],
            status=ProjectStatus(data["status"]),
            created_time=created,
            updated_time=parse_timestamp(data.get("updatedTime")) or created,
            originating_params=data.get("originatingParams") or {},
        )
