"""
Bulk preview/publish client for the Helix admin API.

Submits a path set as a bulk job and reads the job's details endpoint:

    POST {base}/{operation}/{owner}/{repo}/{branch}/{experience}/*
         {"forceUpdate": true, "paths": [...]}          -> {"job": {"name": ...}}
    GET  {base}/job/{owner}/{repo}/{branch}/{operation}/{job}/details
                                                        -> {"state", "cancelled",
                                                            "data": {"resources": [...]}}

A resource succeeded when its status is 200 or 304. The job is terminal
once its state is ``stopped`` or it is cancelled.

Error classification:
- 401/403 -> AuthError (never retried)
- 429 -> TransientError, and the rate limiter is deferred by the
  ``ratelimit-reset``/``retry-after`` headers
- Any other non-2xx status, timeouts and transport errors -> TransientError
- Malformed payloads or a missing job handle -> PermanentError
"""

import logging
import re
from typing import Any, Optional

import httpx

from promorch.clients.base import JobStatus
from promorch.errors import AuthError, PermanentError, TransientError
from promorch.rate_limit import RateLimiter
from promorch.schemas import PathOutcome

logger = logging.getLogger(__name__)

PREVIEW = "preview"
LIVE = "live"
PUBLISH = "publish"
JOB_SUCCESS_CODES = (200, 304)
AUTH_ERRORS = (401, 403)
TOO_MANY_REQUESTS = 429


class HelixBulkClient:
    """Client for the bulk preview/publish admin endpoints."""

    def __init__(
        self,
        owner: str,
        repo: str,
        branch: str = "main",
        *,
        api_base: str = "https://admin.hlx.page",
        api_key: Optional[str] = None,
        enable_preview: Optional[list[str]] = None,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        if not owner or not repo:
            raise ValueError("owner and repo are required")
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self._api_base = api_base.rstrip("/")
        self._api_key = api_key
        self._enable_preview = enable_preview
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None
        self.rate_limiter = rate_limiter or RateLimiter()

    def can_bulk_preview(self) -> bool:
        """Whether the repo matches one of the configured preview patterns."""
        if self._enable_preview is None:
            return True
        return any(re.fullmatch(pattern, self.repo) for pattern in self._enable_preview)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"token {self._api_key}"
        return headers

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        self.rate_limiter.wait()
        try:
            response = self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"{method} {url} failed: {e}") from e

        self.rate_limiter.defer_from_headers(response.headers)
        status = response.status_code
        logger.debug(f"{method} {url} -> {status}")
        if status in AUTH_ERRORS:
            raise AuthError(f"{method} {url} rejected with {status}", status_code=status)
        if status == TOO_MANY_REQUESTS:
            raise TransientError(f"{method} {url} rate limited")
        if not response.is_success:
            raise TransientError(f"{method} {url} returned {status}")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise PermanentError(f"Invalid JSON from {response.request.url}") from e
        if not isinstance(payload, dict):
            raise PermanentError(f"Unexpected payload from {response.request.url}")
        return payload

    def submit(self, paths: list[str], operation: str, context: dict[str, Any]) -> str:
        if operation == PREVIEW and not self.can_bulk_preview():
            raise PermanentError(f"Bulk preview is not enabled for {self.repo}")
        experience = (context or {}).get("experienceName") or ""
        experience = f"{experience}/" if experience else ""
        url = f"{self._api_base}/{operation}/{self.owner}/{self.repo}/{self.branch}/{experience}*"
        response = self._request("POST", url, json={"forceUpdate": True, "paths": list(paths)})
        payload = self._json(response)
        job = payload.get("job") or {}
        job_name = job.get("name")
        if not job_name:
            raise PermanentError(f"No job handle in {operation} response for {len(paths)} paths")
        logger.info(f"Submitted {operation} job {job_name} for {len(paths)} paths (state: {job.get('state')})")
        return job_name

    def poll_status(self, job_handle: str, operation: str) -> JobStatus:
        job_operation = PUBLISH if operation == LIVE else operation
        url = f"{self._api_base}/job/{self.owner}/{self.repo}/{self.branch}/{job_operation}/{job_handle}/details"
        payload = self._json(self._request("GET", url))
        resources = [
            PathOutcome(
                path=rs["path"],
                success=rs.get("status") in JOB_SUCCESS_CODES,
                resource_path=rs.get("resourcePath"),
            )
            for rs in (payload.get("data") or {}).get("resources") or []
            if rs.get("path")
        ]
        state = payload.get("state")
        return JobStatus(
            terminal=state == "stopped" or bool(payload.get("cancelled")),
            resources=resources,
            state=state,
            progress=payload.get("progress"),
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HelixBulkClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
