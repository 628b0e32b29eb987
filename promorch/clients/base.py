"""
Collaborator interfaces consumed by workers and the poller.

These protocols decouple the orchestration layer from the systems it drives,
so that:
1. Workers never import an HTTP library directly
2. Storage, transform and bulk backends can be swapped (remote API,
   local filesystem, mock)
3. Testing is simplified via in-memory implementations

Error contract: results are success-only. Failures are raised as
TransientError (safe to retry) or PermanentError (do not retry); the one
exception is ``CopyClient.upload``, which reports a locked destination in
its result so the caller can treat it as a soft failure.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from promorch.schemas import PathOutcome


@dataclass(frozen=True)
class FileMetadata:
    """Location and size of a source file."""
    download_url: str
    size: int = 0


@dataclass(frozen=True)
class UploadResult:
    """Outcome of an upload."""
    success: bool
    locked_file: bool = False
    error_msg: Optional[str] = None


@dataclass(frozen=True)
class JobStatus:
    """One poll of a bulk job."""
    terminal: bool
    resources: list[PathOutcome] = field(default_factory=list)
    state: Optional[str] = None
    progress: Optional[dict[str, Any]] = None


@runtime_checkable
class TransformClient(Protocol):
    def transform(self, content: bytes, context: dict[str, Any]) -> bytes:
        """
        Rewrite a source artifact for promotion.

        Args:
            content: Source bytes
            context: Project context (experience name, paths)

        Returns:
            Transformed bytes
        """
        ...


@runtime_checkable
class CopyClient(Protocol):
    def fetch_metadata(self, path: str) -> FileMetadata:
        """
        Resolve a source path.

        Raises:
            ItemNotFoundError: If the source does not exist
        """
        ...

    def download(self, url: str) -> bytes:
        ...

    def upload(self, content: bytes, dest_path: str) -> UploadResult:
        ...


@runtime_checkable
class BulkOperationClient(Protocol):
    def submit(self, paths: list[str], operation: str, context: dict[str, Any]) -> str:
        """
        Start a bulk job.

        Returns:
            The job handle

        Raises:
            AuthError: Credentials rejected (never retried)
            TransientError: Submission may be retried
        """
        ...

    def poll_status(self, job_handle: str, operation: str) -> JobStatus:
        ...


@runtime_checkable
class ContentClient(Protocol):
    def fetch_content(self, path: str) -> Optional[str]:
        """Published markdown content of a page, or None if unavailable."""
        ...


@runtime_checkable
class Dispatcher(Protocol):
    def invoke_async(self, worker_name: str, params: dict[str, Any]) -> None:
        """
        Start a worker invocation without waiting for it.

        Raises:
            Exception: If the invocation could not be enqueued
        """
        ...


@runtime_checkable
class AuditSink(Protocol):
    def append_rows(self, project: str, rows: list[list[Any]]) -> None:
        """Append human-readable audit rows ``[message, timestamp, details]``."""
        ...
