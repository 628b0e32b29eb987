"""Tests for promorch.scheduler."""

import threading
from datetime import timedelta

import pytest

from promorch.claims import claim_batch
from promorch.clients.dispatch import InlineDispatcher
from promorch.clients.local import GrayboxTransformClient
from promorch.records import status_path
from promorch.schemas import BatchStatus, ItemType, ProjectStatus
from promorch.scheduler import Scheduler
from promorch.sequencer import Barrier
from promorch.stages import COPY, DISCOVERY, STAGES, TRANSFORM, VERIFY
from promorch.utils import utcnow
from promorch.workers import registry

PROJECT = "/gb/summit"


class RecordingDispatcher:
    """Accepts invocations without running them."""

    def __init__(self):
        self.calls = []

    def invoke_async(self, worker_name, params):
        self.calls.append((worker_name, dict(params)))


class BrokenDispatcher:

    def invoke_async(self, worker_name, params):
        raise RuntimeError("queue unavailable")


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def inline(ctx):
    return InlineDispatcher(lambda name, params: registry.get(name).run(ctx, params))


class TestBatchStageTick:

    def test_dispatches_oldest_batch_then_waits(self, records, seed_project, dispatcher):
        seed_project(ProjectStatus.TRANSFORMED, non_processing=3)
        scheduler = Scheduler(COPY, records, dispatcher)

        first = scheduler.tick()
        second = scheduler.tick()

        assert first.dispatched == [f"{PROJECT}:non_processing_batch_1"]
        assert dispatcher.calls == [("copy", {"project": PROJECT, "batch": "non_processing_batch_1"})]
        # Single-flight: the claimed batch blocks further dispatch for this project
        assert second.dispatched == []
        assert second.skipped == [f"{PROJECT}:non_processing_batch_1"]

    def test_ignores_projects_at_other_statuses(self, records, seed_project, dispatcher):
        seed_project(ProjectStatus.DISCOVERED, non_processing=1)
        result = Scheduler(COPY, records, dispatcher).tick()
        assert result.to_dict() == {"stage": "copy", "dispatched": [], "skipped": [], "errors": []}

    @pytest.mark.parametrize("status", [ProjectStatus.PAUSED, ProjectStatus.FAILED])
    def test_absorbing_projects_are_not_scheduled(self, records, seed_project, dispatcher, status):
        seed_project(status, non_processing=1)
        Scheduler(COPY, records, dispatcher).tick()
        assert dispatcher.calls == []

    def test_dispatch_failure_rolls_claim_back(self, records, seed_project):
        seed_project(ProjectStatus.TRANSFORMED, non_processing=1)

        result = Scheduler(COPY, records, BrokenDispatcher()).tick()

        assert len(result.errors) == 1
        assert "queue unavailable" in result.errors[0]
        assert records.batch_statuses(PROJECT, ItemType.NON_PROCESSING)["non_processing_batch_1"] == BatchStatus.INITIATED
        assert records.leases(PROJECT, ItemType.NON_PROCESSING) == {}

    def test_racing_ticks_dispatch_once(self, records, seed_project):
        seed_project(ProjectStatus.TRANSFORMED, non_processing=1)
        dispatchers = [RecordingDispatcher() for _ in range(6)]
        start = threading.Barrier(len(dispatchers))

        def tick(d):
            start.wait()
            Scheduler(COPY, records, d).tick()

        threads = [threading.Thread(target=tick, args=(d,)) for d in dispatchers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(len(d.calls) for d in dispatchers) == 1

    def test_reclaims_expired_claim(self, records, seed_project, dispatcher):
        seed_project(ProjectStatus.TRANSFORMED, non_processing=1)
        claimed_at = utcnow()
        claim_batch(records, PROJECT, COPY, "non_processing_batch_1", now=claimed_at)
        scheduler = Scheduler(COPY, records, dispatcher, claim_timeout_seconds=300,
                              clock=lambda: claimed_at + timedelta(seconds=600))

        result = scheduler.tick()

        assert result.dispatched == [f"{PROJECT}:non_processing_batch_1"]

    def test_empty_group_advances_vacuously(self, records, seed_project, inline):
        seed_project(ProjectStatus.DISCOVERED, non_processing=1)

        result = Scheduler(TRANSFORM, records, inline).tick()

        assert result.dispatched == [f"{PROJECT}:finalize"]
        assert inline.calls == [("transform", {"project": PROJECT, "finalize": True})]
        assert records.status(PROJECT) == ProjectStatus.TRANSFORMED

    def test_sweeps_errored_batches(self, records, seed_project, inline):
        seed_project(ProjectStatus.TRANSFORMED, non_processing=2)
        records.set_batch_status(PROJECT, ItemType.NON_PROCESSING, "non_processing_batch_1", BatchStatus.ERROR)
        records.set_batch_status(PROJECT, ItemType.NON_PROCESSING, "non_processing_batch_2", BatchStatus.COPIED)

        result = Scheduler(COPY, records, inline).tick()

        assert result.dispatched == [f"{PROJECT}:finalize"]
        assert records.status(PROJECT) == ProjectStatus.COPIED

    def test_waits_for_closing_worker(self, records, seed_project, dispatcher):
        seed_project(ProjectStatus.TRANSFORMED, non_processing=1)
        claim_batch(records, PROJECT, COPY, "non_processing_batch_1")
        records.set_batch_status(PROJECT, ItemType.NON_PROCESSING, "non_processing_batch_1", BatchStatus.COPIED)
        Barrier(records).arrive(PROJECT, COPY, "non_processing_batch_1")

        result = Scheduler(COPY, records, dispatcher).tick()

        assert result.skipped == [PROJECT]
        assert dispatcher.calls == []


class TestQueueRepair:

    def test_lagging_queue_entry_follows_status(self, records, seed_project, dispatcher):
        seed_project(ProjectStatus.DISCOVERED, non_processing=1)
        # Status document moved on, queue entry was never updated
        records.store.update(status_path(PROJECT), lambda doc: {**doc, "status": "transformed"})

        assert Scheduler(TRANSFORM, records, dispatcher).tick().dispatched == []
        result = Scheduler(COPY, records, dispatcher).tick()

        assert result.dispatched == [f"{PROJECT}:non_processing_batch_1"]
        assert records.get_project(PROJECT).status == ProjectStatus.TRANSFORMED


class TestProjectStageTick:

    def test_claims_and_dispatches(self, records, seed_project, dispatcher):
        seed_project(ProjectStatus.INITIATED)
        scheduler = Scheduler(DISCOVERY, records, dispatcher)

        first = scheduler.tick()
        second = scheduler.tick()

        assert first.dispatched == [PROJECT]
        assert dispatcher.calls == [("discovery", {"project": PROJECT})]
        assert records.status(PROJECT) == ProjectStatus.DISCOVERY_IN_PROGRESS
        assert records.audit_entries(PROJECT)[-1].step_name == "Discovery started"
        assert second.skipped == [PROJECT]

    def test_dispatch_failure_rewinds(self, records, seed_project):
        seed_project(ProjectStatus.PROMOTED)

        result = Scheduler(VERIFY, records, BrokenDispatcher()).tick()

        assert len(result.errors) == 1
        assert records.status(PROJECT) == ProjectStatus.PROMOTED
        assert records.get_project(PROJECT).status == ProjectStatus.PROMOTED
        assert records.audit_entries(PROJECT)[-1].step_name.startswith("Verify dispatch failed")

    def test_reclaims_stuck_project(self, records, seed_project, dispatcher):
        seed_project(ProjectStatus.INITIATED)
        Scheduler(DISCOVERY, records, dispatcher).tick()
        later = Scheduler(DISCOVERY, records, dispatcher, claim_timeout_seconds=60,
                          clock=lambda: utcnow() + timedelta(seconds=600))

        result = later.tick()

        assert result.dispatched == [PROJECT]
        assert len(dispatcher.calls) == 2


class TestRunForever:

    def test_stops_when_event_set(self, records, dispatcher):
        stop = threading.Event()
        stop.set()
        assert Scheduler(COPY, records, dispatcher).run_forever(0, stop) == 0

    def test_ticks_until_stopped(self, records, seed_project):
        seed_project(ProjectStatus.TRANSFORMED, non_processing=3)
        stop = threading.Event()
        calls = []

        class StopAfterTwo:
            def invoke_async(self, worker_name, params):
                records.set_batch_status(PROJECT, ItemType.NON_PROCESSING, params["batch"], BatchStatus.COPIED)
                calls.append(params)
                if len(calls) == 2:
                    stop.set()

        scheduler = Scheduler(COPY, records, StopAfterTwo())
        assert scheduler.run_forever(0, stop) == 2
        assert [c["batch"] for c in calls] == ["non_processing_batch_1", "non_processing_batch_2"]


class TestEndToEnd:

    def test_project_runs_to_completion(self, ctx, records, copy_client, bulk_client, seed_project, inline):
        sources = ["/gb/summit/a.docx", "/gb/summit/b.docx", "/gb/summit/index.docx"]
        seed_project(ProjectStatus.INITIATED, source_paths=sources)
        for path in sources:
            copy_client.files[path] = path.encode()
        ctx.transform_client = GrayboxTransformClient()
        schedulers = [Scheduler(stage, records, inline, max_workers=1) for stage in STAGES.values()]

        for _ in range(10):
            for scheduler in schedulers:
                scheduler.tick()
            if records.status(PROJECT) == ProjectStatus.COMPLETED:
                break

        assert records.status(PROJECT) == ProjectStatus.COMPLETED
        assert copy_client.files["/gb/a.docx"] == b"/gb/summit/a.docx"
        assert copy_client.files["/gb/index.docx"] == b"/gb/summit/index.docx"
        verified = sorted(p for _, paths, _ in bulk_client.submitted for p in paths)
        assert verified == ["/gb/", "/gb/a", "/gb/b"]

        steps = [e.step for e in records.audit_entries(PROJECT)]
        for status in ("discovered", "transformed", "copied", "promoted", "completed"):
            assert steps.count(status) == 1
