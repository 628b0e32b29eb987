"""
Local collaborators.

Filesystem-backed copy client, text transforms and the store-backed audit
sink. Used by the CLI for single-host runs and by tests.
"""

import io
import logging
import re
import zipfile
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

from promorch.clients.base import FileMetadata, UploadResult
from promorch.errors import ItemNotFoundError, PermanentError
from promorch.records import ProjectRecords, audit_log_path

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
LOCKED_MESSAGE = "File is locked"

# Graybox style markers (``gb-bold``, ``gb-hide, gb-x``)
GRAYBOX_STYLES = re.compile(r"gb-[a-zA-Z0-9,._-]*")
GRAYBOX_DOMAIN_SUFFIX = "-graybox"


class FilesystemCopyClient:
    """
    CopyClient over a local directory tree.

    Paths are resolved under ``root``. A destination with a sibling
    ``<name>.lock`` file is reported as locked.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        resolved = (self.root / path.lstrip("/")).resolve()
        if self.root.resolve() not in resolved.parents and resolved != self.root.resolve():
            raise PermanentError(f"Path escapes copy root: {path}")
        return resolved

    def fetch_metadata(self, path: str) -> FileMetadata:
        target = self._resolve(path)
        if not target.is_file():
            raise ItemNotFoundError(f"Source not found: {path}")
        return FileMetadata(download_url=target.as_uri(), size=target.stat().st_size)

    def download(self, url: str) -> bytes:
        path = Path(unquote(urlparse(url).path)) if url.startswith("file://") else self._resolve(url)
        if not path.is_file():
            raise ItemNotFoundError(f"Download source missing: {url}")
        return path.read_bytes()

    def upload(self, content: bytes, dest_path: str) -> UploadResult:
        target = self._resolve(dest_path)
        if target.with_name(target.name + LOCK_SUFFIX).exists():
            return UploadResult(success=False, locked_file=True, error_msg=LOCKED_MESSAGE)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return UploadResult(success=True)


class PassthroughTransformClient:
    """Returns content unchanged."""

    def transform(self, content: bytes, context: dict[str, Any]) -> bytes:
        return content


class GrayboxTransformClient:
    """
    Strips graybox markers from text content and Word documents.

    Removes the ``/<experience>/`` segment and the ``-graybox`` domain
    suffix from links, and ``gb-*`` style names from block headers. For a
    ``.docx`` archive the same rewrite is applied to its ``word/*.xml``
    parts. Other binary content is returned unchanged.
    """

    def transform(self, content: bytes, context: dict[str, Any]) -> bytes:
        experience = (context or {}).get("experienceName")
        if zipfile.is_zipfile(io.BytesIO(content)):
            return self._transform_docx(content, experience)
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Binary content left untouched by graybox transform")
            return content
        return self._strip(text, experience).encode("utf-8")

    @staticmethod
    def _strip(text: str, experience: Optional[str]) -> str:
        if experience:
            text = text.replace(f"/{experience}/", "/")
        text = text.replace(GRAYBOX_DOMAIN_SUFFIX, "")
        return GRAYBOX_STYLES.sub("", text).replace("()", "").replace(", )", ")")

    def _transform_docx(self, content: bytes, experience: Optional[str]) -> bytes:
        out = io.BytesIO()
        with zipfile.ZipFile(io.BytesIO(content)) as source, zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as target:
            for info in source.infolist():
                data = source.read(info)
                if info.filename.startswith("word/") and info.filename.endswith(".xml"):
                    data = self._strip(data.decode("utf-8"), experience).encode("utf-8")
                target.writestr(info, data)
        return out.getvalue()


class StoreAuditSink:
    """AuditSink appending rows to ``<project>/audit_log`` in the record store."""

    def __init__(self, records: ProjectRecords):
        self.records = records

    def append_rows(self, project: str, rows: list[list[Any]]) -> None:
        if rows:
            self.records.store.append(audit_log_path(project), *rows)
