"""Tests for local collaborators, the content client and dispatchers."""

import io
import threading
import zipfile

import httpx
import pytest

from promorch.clients.content import HttpContentClient
from promorch.clients.dispatch import InlineDispatcher, ThreadPoolDispatcher
from promorch.clients.local import (
    FilesystemCopyClient,
    GrayboxTransformClient,
    PassthroughTransformClient,
    StoreAuditSink,
)
from promorch.errors import ItemNotFoundError, PermanentError, TransientError
from promorch.rate_limit import RateLimiter


class TestFilesystemCopyClient:

    def test_metadata_download_upload(self, tmp_path):
        client = FilesystemCopyClient(tmp_path)
        (tmp_path / "gb" / "summit").mkdir(parents=True)
        (tmp_path / "gb" / "summit" / "my page.docx").write_bytes(b"hello")

        meta = client.fetch_metadata("/gb/summit/my page.docx")
        assert meta.size == 5
        content = client.download(meta.download_url)
        assert content == b"hello"

        result = client.upload(content, "/site/my page.docx")
        assert result.success is True
        assert (tmp_path / "site" / "my page.docx").read_bytes() == b"hello"

    def test_missing_source(self, tmp_path):
        with pytest.raises(ItemNotFoundError):
            FilesystemCopyClient(tmp_path).fetch_metadata("/nope.docx")

    def test_locked_destination(self, tmp_path):
        client = FilesystemCopyClient(tmp_path)
        (tmp_path / "site").mkdir()
        (tmp_path / "site" / "page.docx.lock").touch()

        result = client.upload(b"x", "/site/page.docx")

        assert result.success is False
        assert result.locked_file is True
        assert not (tmp_path / "site" / "page.docx").exists()

    def test_rejects_escaping_paths(self, tmp_path):
        client = FilesystemCopyClient(tmp_path / "root")
        with pytest.raises(PermanentError):
            client.upload(b"x", "/../outside.docx")


class TestTransforms:

    def test_passthrough(self):
        assert PassthroughTransformClient().transform(b"abc", {}) == b"abc"

    def test_graybox_markers_removed(self):
        source = (
            "| Marquee (gb-dark) |\n"
            "[Link](https://main--cc-graybox--adobecom.hlx.page/summit/products/)\n"
        ).encode()

        text = GrayboxTransformClient().transform(source, {"experienceName": "summit"}).decode()

        assert "gb-" not in text
        assert "-graybox" not in text
        assert "https://main--cc--adobecom.hlx.page/products/" in text

    def test_graybox_docx_parts_rewritten(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as docx:
            docx.writestr("word/document.xml", "<w:t>https://main--cc-graybox--adobecom.hlx.page/summit/offers</w:t>")
            docx.writestr("word/media/image1.png", b"\x89PNG\xff\xfe")

        result = GrayboxTransformClient().transform(buffer.getvalue(), {"experienceName": "summit"})

        with zipfile.ZipFile(io.BytesIO(result)) as docx:
            assert docx.read("word/document.xml").decode() == "<w:t>https://main--cc--adobecom.hlx.page/offers</w:t>"
            assert docx.read("word/media/image1.png") == b"\x89PNG\xff\xfe"

    def test_graybox_leaves_binary_content(self):
        content = b"\x89PNG\r\n\x1a\n\xff\xfe"
        assert GrayboxTransformClient().transform(content, {"experienceName": "summit"}) == content


class TestStoreAuditSink:

    def test_appends_rows(self, records):
        sink = StoreAuditSink(records)
        sink.append_rows("/gb/summit", [["Copy completed", "2026-01-01T00:00:00+00:00", ""]])
        sink.append_rows("/gb/summit", [])
        assert records.audit_rows("/gb/summit") == [["Copy completed", "2026-01-01T00:00:00+00:00", ""]]


class TestHttpContentClient:

    def _client(self, handler):
        return HttpContentClient(
            "https://main--cc--adobecom.hlx.page",
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            rate_limiter=RateLimiter(sleep=lambda s: None),
        )

    def test_fetches_markdown_rendition(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, text="# Summit")

        assert self._client(handler).fetch_content("/gb/summit/index") == "# Summit"
        assert seen == ["https://main--cc--adobecom.hlx.page/gb/summit/index.md"]

    def test_unavailable_page(self):
        client = self._client(lambda request: httpx.Response(404))
        assert client.fetch_content("https://other.hlx.page/missing.md") is None

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow")

        with pytest.raises(TransientError):
            self._client(handler).fetch_content("/page")


class TestDispatchers:

    def test_inline_runs_immediately(self):
        ran = []
        dispatcher = InlineDispatcher(lambda name, params: ran.append((name, params)))
        dispatcher.invoke_async("copy", {"project": "/gb/summit"})
        assert ran == [("copy", {"project": "/gb/summit"})]
        assert dispatcher.calls == ran

    def test_thread_pool_runs_handler(self):
        done = threading.Event()
        dispatcher = ThreadPoolDispatcher(lambda name, params: done.set(), max_workers=1)
        dispatcher.invoke_async("copy", {})
        assert done.wait(5)
        dispatcher.shutdown()

    def test_thread_pool_refuses_after_shutdown(self):
        dispatcher = ThreadPoolDispatcher(lambda name, params: None)
        dispatcher.shutdown()
        with pytest.raises(RuntimeError):
            dispatcher.invoke_async("copy", {})
