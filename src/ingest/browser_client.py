"""Rendered transport: Playwright pages routed through the proxy pool."""

import asyncio
import logging
import time
from typing import Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)
from selectolax.parser import HTMLParser

from src import metrics
from src.config import settings
from src.errors import (
    ChallengeNotBypassedError,
    ContentMismatchError,
    NotFoundError,
    ProxyError,
    RateLimitError,
    ScraperError,
)
from src.ingest.base import BaseProxyClient, RequestLogger, RequestOutcome
from src.ingest.stealth_browser import LAUNCH_ARGS, apply_stealth, context_options
from src.proxy.pool_manager import PoolManager
from src.proxy.types import NetworkIdentity
from src.scrape.url_processor import is_valid_perfume_url, page_identity
from src.utils.retry import RETRYABLE_STATUS, RetryableStatusError, RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

CHALLENGE_TITLES = ("Just a moment", "Attention Required")
CHALLENGE_MARKERS = ("cf-browser-verification", "Checking your browser before accessing")

CHALLENGE_CLEARED_JS = (
    "() => !document.title.includes('Just a moment') "
    "&& !document.title.includes('Attention Required')"
)


def is_challenge_page(title: str, html: str = "") -> bool:
    """Heuristic for anti-bot interstitials."""
    if any(marker in title for marker in CHALLENGE_TITLES):
        return True
    return any(marker in html for marker in CHALLENGE_MARKERS)


def canonical_url(html: str) -> Optional[str]:
    node = HTMLParser(html).css_first('meta[property="og:url"]')
    if node is None:
        return None
    return node.attributes.get("content") or None


def check_page_identity(requested_url: str, html: str) -> None:
    """
    Compare the page's og:url brand/name with the requested URL.

    Only perfume URLs are checked, and a page without a parseable og:url
    passes.

    Raises:
        ContentMismatchError: If the page belongs to a different fragrance
    """
    if not is_valid_perfume_url(requested_url):
        return
    actual_url = canonical_url(html)
    if not actual_url:
        logger.warning(f"No og:url on {requested_url}, cannot validate page identity")
        return

    requested = page_identity(requested_url)
    actual = page_identity(actual_url)
    if requested is None or actual is None:
        return
    if requested != actual:
        raise ContentMismatchError("/".join(requested), "/".join(actual))


def _is_retryable_browser_error(exc: BaseException) -> bool:
    if isinstance(exc, RetryableStatusError):
        return exc.status_code in RETRYABLE_STATUS
    return isinstance(exc, PlaywrightError)


class BrowserClient(BaseProxyClient):
    """
    Headless Chromium client bound to one sticky proxy session.

    Proxy credentials are set on the browser context, and the context and its
    single page are reused across fetches until ``reset()``. Requests are
    serialized, so one page never serves two fetches at once.
    """

    client_name = "browser"

    def __init__(
        self,
        pool: PoolManager,
        *,
        policy: Optional[RetryPolicy] = None,
        ip_check_url: Optional[str] = None,
        request_logger: Optional[RequestLogger] = None,
        headless: Optional[bool] = None,
        navigation_timeout: Optional[float] = None,
        selector_timeout: Optional[float] = None,
        challenge_timeout: Optional[float] = None,
        settle_delay: float = 2.0,
    ):
        super().__init__(pool, request_logger)
        self.policy = policy or RetryPolicy.for_browser()
        self.ip_check_url = ip_check_url or settings.ip_check_url
        self.headless = settings.headless if headless is None else headless
        self.navigation_timeout = navigation_timeout or settings.browser_navigation_timeout
        self.selector_timeout = selector_timeout or settings.browser_selector_timeout
        self.challenge_timeout = challenge_timeout or settings.challenge_timeout
        self.settle_delay = settle_delay

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def _open_context(self, identity: NetworkIdentity) -> BrowserContext:
        """Start the browser if needed and open a context authenticated to the proxy."""
        if self._playwright is None:
            self._playwright = await async_playwright().start()

        if self._browser is None or not self._browser.is_connected():
            launch_kwargs = {"headless": self.headless, "args": LAUNCH_ARGS}
            if settings.browser_executable_path:
                launch_kwargs["executable_path"] = settings.browser_executable_path
            self._browser = await self._playwright.chromium.launch(**launch_kwargs)
            logger.info("Browser launched")

        context = await self._browser.new_context(**context_options(identity.playwright_config))
        await apply_stealth(context)
        return context

    async def _get_page(self) -> Page:
        if self._context is None:
            identity = await self.acquire_identity()
            logger.info(
                f"Opening browser context via {identity.endpoint}:{identity.port} "
                f"(session: {self.session_id})"
            )
            self._context = await self._open_context(identity)

        if self._page is None or self._page.is_closed():
            self._page = await self._context.new_page()
            logger.debug("New page created")
        return self._page

    async def _discard(self) -> None:
        """Close page, context and browser, and forget the session."""
        for resource in (self._page, self._context, self._browser):
            if resource is None:
                continue
            try:
                await resource.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing browser resource: {e}")
        self._page = None
        self._context = None
        self._browser = None
        self.reset_session()

    async def reset(self) -> None:
        async with self._lock:
            await self._discard()
        logger.info("Browser client reset, next request uses a new proxy session")

    async def close(self) -> None:
        await self.reset()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def _wait_for_challenge(self, page: Page, url: str) -> str:
        logger.warning(f"Challenge page detected on {url}, waiting for it to clear")
        # Both waits share one budget; a zero timeout would disable Playwright's limit
        deadline = time.monotonic() + self.challenge_timeout
        try:
            await page.wait_for_function(CHALLENGE_CLEARED_JS, timeout=self.challenge_timeout * 1000)
            remaining = deadline - time.monotonic()
            if remaining > 0:
                await page.wait_for_load_state("networkidle", timeout=remaining * 1000)
        except PlaywrightTimeoutError:
            logger.debug("Challenge wait timed out, checking page state")

        html = await page.content()
        if is_challenge_page(await page.title(), html):
            raise ChallengeNotBypassedError(url)
        logger.info(f"Challenge cleared for {url}")
        return html

    async def _attempt(self, url: str, wait_for_selector: Optional[str]) -> str:
        page = await self._get_page()
        credential_id = self._identity.credential_id if self._identity else None
        start = time.monotonic()

        try:
            response = await page.goto(
                url, wait_until="networkidle", timeout=self.navigation_timeout * 1000
            )
        except PlaywrightError as e:
            elapsed = time.monotonic() - start
            metrics.record_fetch_error(self.client_name, type(e).__name__, elapsed)
            await self._log_request(
                RequestOutcome(url, "GET", None, int(elapsed * 1000), str(e), credential_id)
            )
            raise

        status = response.status if response is not None else None
        elapsed = time.monotonic() - start
        await self._log_request(
            RequestOutcome(
                url,
                "GET",
                status,
                int(elapsed * 1000),
                f"HTTP {status}" if status and status >= 400 else None,
                credential_id,
            )
        )

        # Challenge interstitials are served with 403/503, so they are
        # recognised before the status code is interpreted
        if status is not None and status >= 400 and not is_challenge_page(await page.title()):
            metrics.record_fetch_error(self.client_name, f"http_{status}", elapsed)
            if status == 403:
                logger.warning(f"Received 403 for {url}, possible IP block; rotating identity")
                await self._discard()
                raise RateLimitError("Access forbidden - rotating proxy")
            if status in RETRYABLE_STATUS:
                raise RetryableStatusError(status, url)
            if status == 404:
                raise NotFoundError(f"Page not found: {url}")
            raise ProxyError(f"GET {url} returned {status}")

        if wait_for_selector:
            try:
                await page.wait_for_selector(wait_for_selector, timeout=self.selector_timeout * 1000)
            except PlaywrightTimeoutError:
                logger.warning(f"Selector {wait_for_selector!r} not found within timeout, continuing")
            if self.settle_delay:
                await asyncio.sleep(self.settle_delay)

        html = await page.content()
        try:
            if is_challenge_page(await page.title(), html):
                html = await self._wait_for_challenge(page, url)
            check_page_identity(url, html)
        except ScraperError as e:
            logger.error(f"{e.message}; resetting browser context")
            metrics.record_fetch_error(self.client_name, type(e).__name__, time.monotonic() - start)
            await self._discard()
            raise

        metrics.record_fetch_success(self.client_name, time.monotonic() - start)
        logger.debug(f"Retrieved {len(html)} bytes from {url}")
        return html

    async def get_page_content(self, url: str, wait_for_selector: Optional[str] = None) -> str:
        """
        Render a page and return its HTML.

        Args:
            url: Page to load
            wait_for_selector: Optional selector signalling that client-side
                rendering finished; a miss only logs a warning

        Raises:
            RateLimitError: On 403, or when 429 persists past the retry budget
            ChallengeNotBypassedError: If an interstitial did not clear in time
            ContentMismatchError: If the page is not the requested fragrance
            NotFoundError: On 404
            ProxyError: On navigation failures after retries
        """
        async with self._lock:
            try:
                return await retry_with_backoff(
                    lambda: self._attempt(url, wait_for_selector),
                    self.policy,
                    classifier=_is_retryable_browser_error,
                    description=f"Browser GET {url}",
                )
            except RetryableStatusError as e:
                if e.status_code == 429:
                    await self._discard()
                    raise RateLimitError(f"Rate limited fetching {url}") from e
                raise ProxyError(f"GET {url} returned {e.status_code} after retries") from e
            except PlaywrightError as e:
                raise ProxyError(f"Browser navigation failed for {url}: {e}") from e

    async def request(self, url: str, wait_for_selector: Optional[str] = None) -> str:
        return await self.get_page_content(url, wait_for_selector)

    async def test_connection(self) -> bool:
        try:
            html = await self.get_page_content(self.ip_check_url)
        except (ProxyError, RateLimitError, ScraperError, NotFoundError) as e:
            logger.error(f"Browser proxy test failed: {e}")
            return False
        logger.info(f"Browser proxy test successful, response length: {len(html)}")
        return True
