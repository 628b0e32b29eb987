"""Published page content client (used for fragment discovery)."""

import logging
from typing import Optional

import httpx

from promorch.errors import TransientError
from promorch.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class HttpContentClient:
    """
    Fetches the markdown rendition (``<url>.md``) of published pages.

    Relative paths are resolved against ``base_url``. Unavailable pages
    yield None; only transport failures raise.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._owns_client = http_client is None
        self.rate_limiter = rate_limiter or RateLimiter()

    def _url(self, path: str) -> str:
        url = path if path.startswith(("http://", "https://")) else f"{self._base_url}/{path.lstrip('/')}"
        return url if url.endswith(".md") else f"{url}.md"

    def fetch_content(self, path: str) -> Optional[str]:
        url = self._url(path)
        self.rate_limiter.wait()
        try:
            response = self._client.get(url)
        except httpx.TimeoutException as e:
            raise TransientError(f"GET {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"GET {url} failed: {e}") from e

        self.rate_limiter.defer_from_headers(response.headers)
        if not response.is_success:
            logger.info(f"Content unavailable for {url}: {response.status_code}")
            return None
        return response.text

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
