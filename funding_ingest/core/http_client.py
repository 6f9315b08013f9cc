"""
Async source client for detail pages and attachment binaries.

Built on httpx with:
- Per-domain rate limiting
- Exponential backoff retry on timeouts and network errors
- Local-file shortcut for attachments already downloaded by discovery
"""

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx
import structlog
from tenacity import (
    RetryError,
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from .errors import SourceUnavailableError
from .models import Attachment

logger = structlog.get_logger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass
class RateLimiter:
    """Per-domain rate limiter."""
    requests_per_second: float = 2.0
    last_request: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def acquire(self) -> None:
        """Wait for rate limit slot."""
        async with self.lock:
            now = time.monotonic()
            min_interval = 1.0 / self.requests_per_second
            elapsed = now - self.last_request

            if elapsed < min_interval:
                await asyncio.sleep(min_interval - elapsed)

            self.last_request = time.monotonic()


class HttpClient:
    """
    Pull-based source collaborator.

    Every failure to fetch surfaces as SourceUnavailableError so the state
    machine can treat it as transient.

    Usage:
        async with HttpClient() as client:
            html = await client.get_text(job.source_url)
    """

    def __init__(
        self,
        requests_per_second: float = 2.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize HTTP client.

        Args:
            requests_per_second: Rate limit per domain
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.requests_per_second = requests_per_second
        self.timeout = timeout
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._rate_limiters: dict[str, RateLimiter] = {}

    async def __aenter__(self) -> "HttpClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
            headers={"Accept-Language": "ko-KR,ko;q=0.9,en;q=0.5", "User-Agent": USER_AGENT},
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context."""
        await self.close()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_rate_limiter(self, url: str) -> RateLimiter:
        """Get or create rate limiter for domain."""
        domain = urlparse(url).netloc
        if domain not in self._rate_limiters:
            self._rate_limiters[domain] = RateLimiter(
                requests_per_second=self.requests_per_second
            )
        return self._rate_limiters[domain]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
    )
    async def _do_request(self, url: str) -> httpx.Response:
        """Execute GET with retry."""
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context.")

        response = await self._client.get(url)
        response.raise_for_status()
        return response

    async def get(self, url: str) -> httpx.Response:
        """
        GET request with rate limiting.

        Args:
            url: URL to fetch

        Returns:
            httpx.Response object

        Raises:
            SourceUnavailableError: On timeout, network or HTTP status error
        """
        limiter = self._get_rate_limiter(url)
        await limiter.acquire()

        logger.debug("http_get", url=url)

        try:
            return await self._do_request(url)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.warning("source_unreachable", url=url, error=str(cause))
            raise SourceUnavailableError(f"{url}: {cause}") from cause
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("source_fetch_failed", url=url, error=str(e))
            raise SourceUnavailableError(f"{url}: {e}") from e

    async def get_text(self, url: str) -> str:
        """GET request returning decoded text."""
        response = await self.get(url)
        return response.text

    async def get_bytes(self, url: str) -> bytes:
        """GET request returning raw bytes."""
        response = await self.get(url)
        return response.content

    async def fetch_attachment(self, attachment: Attachment) -> bytes:
        """
        Load attachment bytes, preferring a local copy.

        Args:
            attachment: Attachment with url and optional local_path

        Returns:
            File content
        """
        if attachment.local_path:
            path = Path(attachment.local_path)
            if path.exists():
                return await asyncio.to_thread(path.read_bytes)
            logger.warning("attachment_local_missing", path=attachment.local_path)

        if not attachment.url:
            raise SourceUnavailableError(f"No location for attachment {attachment.filename}")

        return await self.get_bytes(attachment.url)
