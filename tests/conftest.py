import pytest

from promorch.clients.base import FileMetadata, JobStatus, UploadResult
from promorch.errors import ItemNotFoundError
from promorch.poller import BulkJobPoller
from promorch.records import ProjectRecords
from promorch.schemas import PathOutcome
from promorch.store import InMemoryRecordStore
from promorch.workers import WorkerContext


PROJECT = "/gb/summit"

TRIGGER_PARAMS = {
    "rootFolder": "/site",
    "gbRootFolder": "/gb",
    "experienceName": "summit",
    "projectExcelPath": "/gb/summit/promote.xlsx",
    "adminPageUri": "https://admin.example.com/tools/promote",
}


class MemoryCopyClient:
    """CopyClient over a dict; paths in ``locked`` refuse uploads, ``fail`` raise."""

    def __init__(self, files=None):
        self.files = dict(files or {})
        self.locked = set()
        self.fail = {}
        self.uploads = []

    def fetch_metadata(self, path):
        if path not in self.files:
            raise ItemNotFoundError(f"Source not found: {path}")
        return FileMetadata(download_url=path, size=len(self.files[path]))

    def download(self, url):
        return self.files[url]

    def upload(self, content, dest_path):
        if dest_path in self.fail:
            error = self.fail[dest_path]
            if isinstance(error, list):
                error = error.pop(0) if error else None
            if error is not None:
                raise error
        if dest_path in self.locked:
            return UploadResult(success=False, locked_file=True, error_msg="File is locked")
        self.files[dest_path] = content
        self.uploads.append(dest_path)
        return UploadResult(success=True)


class ScriptedBulkClient:
    """
    BulkOperationClient answering from scripts.

    ``submit_errors`` are raised by successive submits before a handle is
    returned. ``polls[handle]`` is a list of JobStatus (or exceptions)
    returned by successive polls; unscripted jobs succeed for every path.
    """

    def __init__(self):
        self.submit_errors = []
        self.submitted = []
        self.polls = {}
        self.poll_calls = []
        self.fail_paths = set()

    def submit(self, paths, operation, context):
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        handle = f"job-{len(self.submitted) + 1}"
        self.submitted.append((handle, list(paths), operation))
        if handle not in self.polls:
            self.polls[handle] = [JobStatus(
                terminal=True,
                state="stopped",
                resources=[PathOutcome(p, p not in self.fail_paths) for p in paths],
            )]
        return handle

    def poll_status(self, job_handle, operation):
        self.poll_calls.append(job_handle)
        script = self.polls[job_handle]
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        return step


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def records(store):
    return ProjectRecords(store)


@pytest.fixture
def copy_client():
    return MemoryCopyClient()


@pytest.fixture
def bulk_client():
    return ScriptedBulkClient()


@pytest.fixture
def poller(bulk_client):
    return BulkJobPoller(bulk_client, poll_interval_seconds=0, max_poll_attempts=5,
                         max_submit_retries=2, submit_retry_delay_seconds=0)


@pytest.fixture
def ctx(records, copy_client, poller):
    return WorkerContext(
        records=records,
        copy_client=copy_client,
        transform_client=None,
        poller=poller,
        chunk_size=2,
        staging_root="/staging",
        item_retry_attempts=2,
        item_retry_delay_seconds=0,
        sleep=lambda s: None,
    )


@pytest.fixture
def trigger_params():
    return dict(TRIGGER_PARAMS)


@pytest.fixture
def seed_project(records, trigger_params):
    """
    Create PROJECT at ``status`` with ``processing``/``non_processing``
    items partitioned into batches of ``chunk_size``.
    """
    from promorch.initiate import initiate_project
    from promorch.partitioner import write_batches
    from promorch.records import status_path
    from promorch.schemas import ItemType, ProjectStatus, WorkItem

    def seed(status=ProjectStatus.DISCOVERED, processing=0, non_processing=0, chunk_size=1, source_paths=None):
        initiate_project(records, {**trigger_params, "sourcePaths": source_paths or ["/gb/summit/index.docx"]})
        if status != ProjectStatus.INITIATED:
            records.store.update(status_path(PROJECT), lambda doc: {**doc, "status": ProjectStatus(status).value})
            records.set_queue_status(PROJECT, ProjectStatus.INITIATED, status)
        for group, count in ((ItemType.PROCESSING, processing), (ItemType.NON_PROCESSING, non_processing)):
            items = [
                WorkItem(f"/gb/summit/{group.value}/f{i}.docx", f"/gb/{group.value}/f{i}.docx")
                for i in range(count)
            ]
            write_batches(records, PROJECT, group, items, chunk_size)
        return PROJECT

    return seed
