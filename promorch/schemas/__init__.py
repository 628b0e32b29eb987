"""
promorch.schemas - Record definitions for the promotion pipeline.

ProjectRecord -> BatchRecord -> WorkItem -> TrackingEntry / RetryEntry

Lifecycle:
1. ProjectRecord: created by the trigger, advanced by workers, never deleted
2. BatchRecord: written once per group by the partitioner, retained for audit
3. WorkItem: immutable once assigned to a batch
4. TrackingEntry: appended at copy/promote time, flipped at verification
5. RetryEntry: appended on failure and on retry, never rewritten
"""

from .project import (
    AuditEntry,
    ProjectRecord,
    ProjectStatus,
)
from .batch import (
    BatchRecord,
    BatchStatus,
    ItemType,
    WorkItem,
)
from .tracking import (
    PreviewStatus,
    RetryEntry,
    RetryOutcome,
    TrackingEntry,
)
from .outcomes import (
    ItemOutcome,
    OutcomeKind,
    PathOutcome,
)

__all__ = [
    # Project
    "AuditEntry",
    "ProjectRecord",
    "ProjectStatus",
    # Batch
    "BatchRecord",
    "BatchStatus",
    "ItemType",
    "WorkItem",
    # Journals
    "PreviewStatus",
    "RetryEntry",
    "RetryOutcome",
    "TrackingEntry",
    # Outcomes
    "ItemOutcome",
    "OutcomeKind",
    "PathOutcome",
]
