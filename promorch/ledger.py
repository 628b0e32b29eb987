"""
Retry ledger.

Append-only journal of item failures and retry results per project. Entries
are never rewritten: a successful retry is a new ``succeeded`` entry, a
retry that fails again is a new ``terminal`` entry. The current state of a
path for a stage is its last entry, so a path that was retried once is
either recovered or listed exactly once among the terminal failures.
"""

import logging
from typing import Iterable, Optional

from promorch.records import ProjectRecords, retry_errors_path
from promorch.schemas import RetryEntry, RetryOutcome

logger = logging.getLogger(__name__)

PRIMARY_ATTEMPT = 1
RETRY_ATTEMPT = 2


class RetryLedger:
    """Retry ledger of one project."""

    def __init__(self, records: ProjectRecords, project: str):
        self.records = records
        self.project = project

    @property
    def path(self) -> str:
        return retry_errors_path(self.project)

    def record(self, entries: Iterable[RetryEntry]) -> int:
        """Append entries in a single journal write."""
        entries = list(entries)
        if not entries:
            return len(self.entries())
        return self.records.store.append(self.path, *[e.to_dict() for e in entries])

    def record_failure(self, path: str, stage: str, message: str, attempt: int = PRIMARY_ATTEMPT, batch_name: Optional[str] = None) -> None:
        self.record([RetryEntry(path, stage, message, attempt, RetryOutcome.FAILED, batch_name)])

    def record_success(self, path: str, stage: str, attempt: int = RETRY_ATTEMPT, batch_name: Optional[str] = None) -> None:
        self.record([RetryEntry(path, stage, "", attempt, RetryOutcome.SUCCEEDED, batch_name)])

    def record_terminal(self, path: str, stage: str, message: str, attempt: int = RETRY_ATTEMPT, batch_name: Optional[str] = None) -> None:
        self.record([RetryEntry(path, stage, message, attempt, RetryOutcome.TERMINAL, batch_name)])

    def entries(self, stage: Optional[str] = None) -> list[RetryEntry]:
        raw = self.records.store.read_json(self.path) or []
        entries = [RetryEntry.from_dict(e) for e in raw]
        if stage is not None:
            entries = [e for e in entries if e.stage == stage]
        return entries

    def latest(self, stage: str) -> dict[str, RetryEntry]:
        """Fold the journal: last entry per path for ``stage``."""
        current: dict[str, RetryEntry] = {}
        for entry in self.entries(stage):
            current[entry.path] = entry
        return current

    def pending(self, stage: str) -> list[RetryEntry]:
        """Paths whose last entry is a primary-pass failure (due one retry)."""
        return [
            e for e in self.latest(stage).values()
            if e.outcome == RetryOutcome.FAILED and e.attempt == PRIMARY_ATTEMPT
        ]

    def terminal_failures(self, stage: str) -> list[str]:
        """Unique paths whose last entry is terminal."""
        return [p for p, e in self.latest(stage).items() if e.outcome == RetryOutcome.TERMINAL]

    def summary(self, stage: Optional[str] = None) -> dict[str, dict[str, int]]:
        """
        Per-stage counts.

        Returns:
            {stage: {"failed": n, "pending": n, "recovered": n, "terminal": n}}
        """
        stages = [stage] if stage else sorted({e.stage for e in self.entries()})
        result = {}
        for name in stages:
            latest = self.latest(name)
            result[name] = {
                "failed": len(latest),
                "pending": sum(1 for e in latest.values() if e.outcome == RetryOutcome.FAILED),
                "recovered": sum(1 for e in latest.values() if e.outcome == RetryOutcome.SUCCEEDED),
                "terminal": sum(1 for e in latest.values() if e.outcome == RetryOutcome.TERMINAL),
            }
        return result
