"""
Outcome schemas - per-item results produced inside a worker run.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class OutcomeKind(str, Enum):
    """Classification of a single item's stage side effect."""
    SUCCESS = "success"
    SOFT = "soft"
    HARD = "hard"


@dataclass(frozen=True)
class ItemOutcome:
    """Result of processing one work item.

    ``message`` carries the failure marker for soft failures and the error
    text for hard failures.
    """
    path: str
    kind: OutcomeKind
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.kind != OutcomeKind.SUCCESS

    def describe(self) -> str:
        """Audit-friendly one-liner."""
        if self.kind == OutcomeKind.SOFT:
            return f"{self.path} ({self.message})"
        if self.kind == OutcomeKind.HARD:
            return f"{self.path}: {self.message}"
        return self.path


@dataclass(frozen=True)
class PathOutcome:
    """Bulk operation result for one submitted path."""
    path: str
    success: bool
    resource_path: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "success": self.success, "resourcePath": self.resource_path}
