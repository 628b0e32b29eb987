"""Tests for promorch.clients.helix against a mocked transport."""

import json

import httpx
import pytest

from promorch.clients.helix import HelixBulkClient
from promorch.errors import AuthError, PermanentError, TransientError
from promorch.poller import BulkJobPoller
from promorch.rate_limit import RateLimiter


class Recorder:
    """MockTransport handler returning queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_client(handler, **kwargs):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return HelixBulkClient(
        "adobecom", "cc", "main",
        api_base="https://admin.test",
        api_key="secret",
        http_client=http,
        rate_limiter=RateLimiter(sleep=lambda s: None),
        **kwargs,
    )


class TestSubmit:

    def test_posts_paths_and_returns_job(self):
        handler = Recorder(httpx.Response(202, json={"job": {"name": "job-42", "state": "created"}}))
        client = make_client(handler)

        handle = client.submit(["/a", "/b"], "preview", {"experienceName": "summit"})

        assert handle == "job-42"
        request = handler.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://admin.test/preview/adobecom/cc/main/summit/*"
        assert json.loads(request.content) == {"forceUpdate": True, "paths": ["/a", "/b"]}
        assert request.headers["Authorization"] == "token secret"

    def test_missing_job_name(self):
        client = make_client(Recorder(httpx.Response(200, json={"job": {}})))
        with pytest.raises(PermanentError, match="No job handle"):
            client.submit(["/a"], "preview", {})

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_errors(self, status):
        client = make_client(Recorder(httpx.Response(status)))
        with pytest.raises(AuthError) as exc_info:
            client.submit(["/a"], "preview", {})
        assert exc_info.value.status_code == status

    def test_rate_limited_defers(self):
        client = make_client(Recorder(httpx.Response(429, headers={"retry-after": "7"})))
        with pytest.raises(TransientError):
            client.submit(["/a"], "preview", {})
        assert client.rate_limiter.delay_remaining() > 5

    def test_server_error_is_transient(self):
        client = make_client(Recorder(httpx.Response(503)))
        with pytest.raises(TransientError):
            client.submit(["/a"], "live", {})

    def test_transport_error_is_transient(self):
        client = make_client(Recorder(httpx.ConnectError("refused")))
        with pytest.raises(TransientError):
            client.submit(["/a"], "live", {})

    @pytest.mark.parametrize("status", [400, 404, 409])
    def test_client_error_is_transient(self, status):
        client = make_client(Recorder(httpx.Response(status)))
        with pytest.raises(TransientError, match=str(status)):
            client.submit(["/a"], "live", {})

    def test_preview_gate(self):
        handler = Recorder()
        client = make_client(handler, enable_preview=["bacom.*"])
        assert client.can_bulk_preview() is False
        with pytest.raises(PermanentError, match="not enabled"):
            client.submit(["/a"], "preview", {})
        assert handler.requests == []

    def test_preview_gate_matches(self):
        client = make_client(Recorder(), enable_preview=["c+"])
        assert client.can_bulk_preview() is True


class TestPollStatus:

    def test_parses_resources(self):
        handler = Recorder(httpx.Response(200, json={
            "state": "stopped",
            "progress": {"processed": 3, "total": 3},
            "data": {"resources": [
                {"path": "/a", "status": 200},
                {"path": "/b", "status": 304, "resourcePath": "/b.md"},
                {"path": "/c", "status": 404},
                {"status": 200},
            ]},
        }))
        client = make_client(handler)

        status = client.poll_status("job-42", "preview")

        assert str(handler.requests[0].url) == "https://admin.test/job/adobecom/cc/main/preview/job-42/details"
        assert status.terminal is True
        assert [(r.path, r.success) for r in status.resources] == [("/a", True), ("/b", True), ("/c", False)]
        assert status.resources[1].resource_path == "/b.md"
        assert status.progress == {"processed": 3, "total": 3}

    def test_running_is_not_terminal(self):
        client = make_client(Recorder(httpx.Response(200, json={"state": "running"})))
        status = client.poll_status("job-1", "preview")
        assert status.terminal is False
        assert status.resources == []

    def test_cancelled_is_terminal(self):
        client = make_client(Recorder(httpx.Response(200, json={"state": "running", "cancelled": True})))
        assert client.poll_status("job-1", "preview").terminal is True

    def test_live_jobs_are_read_from_publish(self):
        handler = Recorder(httpx.Response(200, json={"state": "stopped"}))
        make_client(handler).poll_status("job-7", "live")
        assert "/publish/job-7/details" in str(handler.requests[0].url)

    def test_malformed_payload(self):
        client = make_client(Recorder(httpx.Response(200, content=b"not json")))
        with pytest.raises(PermanentError):
            client.poll_status("job-1", "preview")


def test_requires_owner_and_repo():
    with pytest.raises(ValueError):
        HelixBulkClient("", "cc")


class TestWithPoller:

    def make_poller(self, handler):
        return BulkJobPoller(
            make_client(handler),
            poll_interval_seconds=0,
            max_poll_attempts=3,
            max_submit_retries=3,
            submit_retry_delay_seconds=0,
        )

    def test_rejected_submission_is_resubmitted(self):
        handler = Recorder(
            httpx.Response(404),
            httpx.Response(202, json={"job": {"name": "J1"}}),
            httpx.Response(200, json={"state": "stopped", "data": {"resources": [{"path": "/a", "status": 200}]}}),
        )
        poller = self.make_poller(handler)

        outcomes = poller.submit(["/a"], "preview", {})

        assert [r.method for r in handler.requests] == ["POST", "POST", "GET"]
        assert [(o.path, o.success) for o in outcomes] == [("/a", True)]
        assert poller.last_run.aborted is None
        assert poller.last_run.submit_attempts == 2

    def test_failed_poll_uses_an_attempt(self):
        handler = Recorder(
            httpx.Response(202, json={"job": {"name": "J1"}}),
            httpx.Response(404),
            httpx.Response(200, json={"state": "stopped", "data": {"resources": [{"path": "/a", "status": 304}]}}),
        )
        poller = self.make_poller(handler)

        outcomes = poller.submit(["/a"], "preview", {})

        assert [(o.path, o.success) for o in outcomes] == [("/a", True)]
        assert poller.last_run.poll_count == 2
