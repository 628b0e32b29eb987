"""Tests for promorch.ledger - append-only retry ledger."""

import pytest

from promorch.ledger import PRIMARY_ATTEMPT, RETRY_ATTEMPT, RetryLedger
from promorch.schemas import RetryEntry, RetryOutcome

PROJECT = "/gb/summit"


@pytest.fixture
def ledger(records):
    return RetryLedger(records, PROJECT)


class TestRetryLedger:

    def test_records_are_appended(self, ledger):
        ledger.record_failure("/a.docx", "copy", "TimeoutError: slow")
        ledger.record_success("/a.docx", "copy")
        entries = ledger.entries("copy")
        assert [e.outcome for e in entries] == [RetryOutcome.FAILED, RetryOutcome.SUCCEEDED]
        assert entries[0].attempt == PRIMARY_ATTEMPT
        assert entries[1].attempt == RETRY_ATTEMPT

    def test_pending_is_first_attempt_failures(self, ledger):
        ledger.record_failure("/a.docx", "copy", "boom")
        ledger.record_failure("/b.docx", "copy", "boom")
        ledger.record_terminal("/b.docx", "copy", "boom")
        ledger.record_failure("/c.docx", "promote", "boom")
        assert [e.path for e in ledger.pending("copy")] == ["/a.docx"]

    def test_convergence(self, ledger):
        """Every path retried once is either recovered or terminal exactly once."""
        for path in ("/a.docx", "/b.docx", "/c.docx"):
            ledger.record_failure(path, "promote", "boom", batch_name="processing_batch_1")
        ledger.record_success("/a.docx", "promote")
        ledger.record_terminal("/b.docx", "promote", "still failing")
        ledger.record_terminal("/c.docx", "promote", "still failing")

        assert ledger.pending("promote") == []
        assert sorted(ledger.terminal_failures("promote")) == ["/b.docx", "/c.docx"]
        assert ledger.summary("promote") == {
            "promote": {"failed": 3, "pending": 0, "recovered": 1, "terminal": 2},
        }

    def test_terminal_listed_once(self, ledger):
        ledger.record_terminal("/a.docx", "verify", "x")
        ledger.record_terminal("/a.docx", "verify", "x")
        assert ledger.terminal_failures("verify") == ["/a.docx"]

    def test_summary_all_stages(self, ledger):
        ledger.record_failure("/a.docx", "copy", "x")
        ledger.record_failure("/b.docx", "transform", "x")
        assert set(ledger.summary()) == {"copy", "transform"}

    def test_record_batch_in_one_write(self, ledger, store):
        count = ledger.record([
            RetryEntry("/a.docx", "copy", "x"),
            RetryEntry("/b.docx", "copy", "x"),
        ])
        assert count == 2
        assert store.read_record(ledger.path).version == 1

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryEntry("/a.docx", "copy", attempt=0)
