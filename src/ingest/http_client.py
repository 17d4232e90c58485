"""Fetch-only transport: plain HTTP through the proxy pool with status-aware retries."""

import logging
import time
from typing import Callable, Optional

import httpx

from src import metrics
from src.config import settings
from src.errors import NotFoundError, ProxyError, RateLimitError
from src.ingest.base import BaseProxyClient, RequestLogger, RequestOutcome
from src.proxy.pool_manager import PoolManager
from src.proxy.types import NetworkIdentity
from src.utils.retry import (
    RETRYABLE_EXC,
    RETRYABLE_STATUS,
    RetryableStatusError,
    RetryPolicy,
    retry_with_backoff,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[NetworkIdentity], httpx.AsyncClient]


def default_headers() -> dict[str, str]:
    """Get default browser-like headers."""
    return {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
        "Accept-Encoding": "gzip, deflate, br",
        "DNT": "1",
        "Connection": "keep-alive",
        "Upgrade-Insecure-Requests": "1",
    }


def proxied_client_factory(timeout: float) -> ClientFactory:
    """Build httpx clients that route through a network identity."""

    def factory(identity: NetworkIdentity) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            proxy=identity.url,
            timeout=httpx.Timeout(timeout),
            headers=default_headers(),
            follow_redirects=True,
            max_redirects=10,
        )

    return factory


class HttpFetchClient(BaseProxyClient):
    """
    HTTP client bound to one sticky proxy session.

    Retries transport errors and 429/502/503 with exponential backoff. A 403 is
    taken as the exit IP being flagged: the identity is dropped and the call
    fails with RateLimitError so the caller can retry on a fresh identity.
    """

    client_name = "http"

    def __init__(
        self,
        pool: PoolManager,
        *,
        policy: Optional[RetryPolicy] = None,
        ip_check_url: Optional[str] = None,
        request_logger: Optional[RequestLogger] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        super().__init__(pool, request_logger)
        self.policy = policy or RetryPolicy.for_http()
        self.ip_check_url = ip_check_url or settings.ip_check_url
        self._client_factory = client_factory or proxied_client_factory(settings.http_timeout)
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            identity = await self.acquire_identity()
            self._client = self._client_factory(identity)
            logger.info(
                f"HTTP client created with proxy {identity.endpoint}:{identity.port} "
                f"(session: {self.session_id})"
            )
        return self._client

    async def _discard(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.reset_session()

    async def reset(self) -> None:
        async with self._lock:
            await self._discard()
        logger.info("HTTP client reset, next request uses a new proxy session")

    async def close(self) -> None:
        await self.reset()

    async def _attempt(self, method: str, url: str, kwargs: dict) -> str:
        client = await self._get_client()
        credential_id = self._identity.credential_id if self._identity else None
        start = time.monotonic()

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            elapsed = time.monotonic() - start
            metrics.record_fetch_error(self.client_name, type(e).__name__, elapsed)
            await self._log_request(
                RequestOutcome(url, method, None, int(elapsed * 1000), str(e) or type(e).__name__, credential_id)
            )
            if isinstance(e, RETRYABLE_EXC):
                raise
            raise ProxyError(f"HTTP {method} failed for {url}: {e}") from e

        elapsed = time.monotonic() - start
        status = response.status_code
        error = None if status < 400 else f"HTTP {status}"
        await self._log_request(
            RequestOutcome(url, method, status, int(elapsed * 1000), error, credential_id)
        )

        if status < 400:
            metrics.record_fetch_success(self.client_name, elapsed)
            return response.text

        metrics.record_fetch_error(self.client_name, f"http_{status}", elapsed)

        if status == 403:
            logger.warning(f"Received 403 for {url}, possible IP block; rotating identity")
            await self._discard()
            raise RateLimitError("Access forbidden - rotating proxy")
        if status in RETRYABLE_STATUS:
            raise RetryableStatusError(status, url)
        if status == 404:
            raise NotFoundError(f"Page not found: {url}")
        raise ProxyError(f"HTTP {method} {url} returned {status}")

    async def request(self, url: str, method: str = "GET", **kwargs) -> str:
        """
        Perform a request through the proxy.

        Args:
            url: Target URL
            method: HTTP method
            **kwargs: Passed to httpx (params, data, json, headers...)

        Returns:
            Response body text

        Raises:
            RateLimitError: On 403, or when 429 persists past the retry budget
            NotFoundError: On 404
            ProxyError: On other failures, after retries where applicable
            NoCredentialAvailableError: If the pool has nothing usable
        """
        async with self._lock:
            try:
                return await retry_with_backoff(
                    lambda: self._attempt(method, url, kwargs),
                    self.policy,
                    description=f"HTTP {method} {url}",
                )
            except RetryableStatusError as e:
                if e.status_code == 429:
                    await self._discard()
                    raise RateLimitError(f"Rate limited fetching {url}") from e
                raise ProxyError(f"HTTP {method} {url} returned {e.status_code} after retries") from e
            except RETRYABLE_EXC as e:
                raise ProxyError(f"HTTP {method} failed for {url}: {e}") from e

    async def get(self, url: str, **kwargs) -> str:
        return await self.request(url, "GET", **kwargs)

    async def post(self, url: str, **kwargs) -> str:
        return await self.request(url, "POST", **kwargs)

    async def test_connection(self) -> bool:
        try:
            body = await self.get(self.ip_check_url)
        except (ProxyError, RateLimitError, NotFoundError) as e:
            logger.error(f"Proxy test failed: {e}")
            return False
        logger.info(f"Proxy test successful, exit IP info: {body[:200]}")
        return True
