"""
promorch.clients - Collaborators driven by the pipeline.

Protocols live in ``base``; concrete implementations:
- HelixBulkClient: bulk preview/publish over httpx
- HttpContentClient: published page content over httpx
- FilesystemCopyClient: local directory copy
- PassthroughTransformClient, GrayboxTransformClient: text transforms
- ThreadPoolDispatcher, InlineDispatcher: worker dispatch
- StoreAuditSink: audit rows in the record store
"""

from .base import (
    AuditSink,
    BulkOperationClient,
    ContentClient,
    CopyClient,
    Dispatcher,
    FileMetadata,
    JobStatus,
    TransformClient,
    UploadResult,
)
from .content import HttpContentClient
from .dispatch import InlineDispatcher, ThreadPoolDispatcher
from .helix import HelixBulkClient
from .local import (
    FilesystemCopyClient,
    GrayboxTransformClient,
    PassthroughTransformClient,
    StoreAuditSink,
)

__all__ = [
    "AuditSink",
    "BulkOperationClient",
    "ContentClient",
    "CopyClient",
    "Dispatcher",
    "FileMetadata",
    "JobStatus",
    "TransformClient",
    "UploadResult",
    "HttpContentClient",
    "InlineDispatcher",
    "ThreadPoolDispatcher",
    "HelixBulkClient",
    "FilesystemCopyClient",
    "GrayboxTransformClient",
    "PassthroughTransformClient",
    "StoreAuditSink",
]
