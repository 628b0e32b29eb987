"""Tests for promorch.initiate - trigger, pause and report."""

from datetime import datetime, timezone

import pytest

from promorch.errors import ConfigError
from promorch.initiate import (
    initiate_project,
    pause_project,
    project_path_for,
    project_report,
    to_source_entry,
)
from promorch.ledger import RetryLedger
from promorch.records import PROMOTED_TRACKING
from promorch.schemas import ItemType, ProjectStatus, TrackingEntry

PROJECT = "/gb/summit"


class TestSourceEntries:

    def test_project_path(self, trigger_params):
        assert project_path_for(trigger_params) == "/gb/summit"
        assert project_path_for({**trigger_params, "gbRootFolder": "/gb/"}) == "/gb/summit"

    def test_page_url(self):
        url = "https://main--cc--adobecom.aem.page/gb/summit/page"
        assert to_source_entry(url) == {"sourcePath": "/gb/summit/page.docx", "originalUrl": url}

    def test_content_path(self):
        assert to_source_entry(" /gb/summit/data.xlsx ") == "/gb/summit/data.xlsx"


class TestInitiateProject:

    def test_creates_records(self, records, trigger_params):
        created = datetime(2026, 3, 1, tzinfo=timezone.utc)
        params = {**trigger_params, "sourcePaths": ["/gb/summit/a.docx", "/gb/summit/b.docx"]}

        record = initiate_project(records, params, now=created)

        assert record.project_path == PROJECT
        assert record.status == ProjectStatus.INITIATED
        assert [p.project_path for p in records.queue()] == [PROJECT]
        assert records.source_paths(PROJECT) == ["/gb/summit/a.docx", "/gb/summit/b.docx"]
        doc = records.status_doc(PROJECT)
        assert doc["status"] == "initiated"
        assert "sourcePaths" not in doc["params"]
        assert doc["params"]["experienceName"] == "summit"
        assert records.audit_entries(PROJECT)[0].step_name == "Project initiated with 2 source paths"

    def test_missing_params(self, records):
        with pytest.raises(ConfigError, match="experienceName") as exc_info:
            initiate_project(records, {"rootFolder": "/site", "sourcePaths": ["/a.docx"]})
        assert "adminPageUri" in str(exc_info.value)
        assert records.queue() == []

    def test_requires_sources_or_drafts(self, records, trigger_params):
        with pytest.raises(ConfigError, match="sourcePaths"):
            initiate_project(records, trigger_params)

    def test_drafts_only(self, records, trigger_params):
        params = {
            **trigger_params,
            "draftsOnly": True,
            "sourcePaths": ["/gb/summit/drafts/a.docx", "/gb/summit/b.docx"],
        }
        initiate_project(records, params)
        assert records.source_paths(PROJECT) == ["/gb/summit/drafts/a.docx"]

    def test_reinitiate_starts_over(self, records, seed_project, trigger_params):
        seed_project(ProjectStatus.COPIED, non_processing=2)

        initiate_project(records, {**trigger_params, "sourcePaths": ["/gb/summit/c.docx"]})

        assert len(records.queue()) == 1
        assert records.status(PROJECT) == ProjectStatus.INITIATED
        assert records.batch_statuses(PROJECT, ItemType.NON_PROCESSING) == {}
        assert records.source_paths(PROJECT) == ["/gb/summit/c.docx"]


class TestPauseProject:

    def test_pause(self, records, seed_project):
        seed_project(ProjectStatus.TRANSFORMED)

        assert pause_project(records, PROJECT) is True
        assert records.status(PROJECT) == ProjectStatus.PAUSED
        assert records.get_project(PROJECT).status == ProjectStatus.PAUSED
        assert pause_project(records, PROJECT) is False

    def test_unknown_or_finished(self, records, seed_project):
        assert pause_project(records, "/gb/nothing") is False
        seed_project(ProjectStatus.COMPLETED)
        assert pause_project(records, PROJECT) is False


class TestProjectReport:

    def test_unknown(self, records):
        assert project_report(records, "/gb/nothing") is None

    def test_report(self, records, seed_project):
        seed_project(ProjectStatus.PROMOTED, processing=2, chunk_size=1)
        RetryLedger(records, PROJECT).record_failure("/gb/summit/processing/f1.docx", "promote", "boom")
        records.append_tracking(PROJECT, PROMOTED_TRACKING, [TrackingEntry("/gb/processing/f0")])

        report = project_report(records, PROJECT)

        assert report["project"] == PROJECT
        assert report["status"] == "promoted"
        assert report["batches"]["processing"] == {
            "processing_batch_1": "initiated",
            "processing_batch_2": "initiated",
        }
        assert report["batches"]["non_processing"] == {}
        assert report["retries"]["promote"]["pending"] == 1
        assert report["tracking"][PROMOTED_TRACKING] == {"pending": 1, "completed": 0, "failed": 0}
        assert report["statuses"][0]["stepName"] == "Project initiated with 1 source paths"
