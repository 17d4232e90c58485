"""Exponential backoff for async operations."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from src.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
    httpx.ProxyError,
)

RETRYABLE_STATUS = frozenset({429, 502, 503})


class RetryableStatusError(Exception):
    """An HTTP status worth retrying (429/502/503)."""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"HTTP {status_code} for {url}")
        self.status_code = status_code
        self.url = url


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters. ``max_retries`` counts retries after the first attempt."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    @classmethod
    def for_http(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.http_max_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_backoff_multiplier,
        )

    @classmethod
    def for_browser(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.browser_max_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped at max_delay."""
        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        # Small jitter so parallel clients do not retry in lockstep
        return min(delay + random.random() * 0.1 * delay, self.max_delay)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, RetryableStatusError):
        return exc.status_code in RETRYABLE_STATUS
    return isinstance(exc, RETRYABLE_EXC)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    classifier: Callable[[BaseException], bool] = is_retryable,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or the retry budget is spent.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Backoff parameters
        classifier: Decides whether an exception is worth another attempt
        description: Used in log messages

    Returns:
        The operation's result

    Raises:
        The last exception when it is not retryable or attempts ran out
    """
    total = policy.max_retries + 1
    for attempt in range(1, total + 1):
        try:
            return await operation()
        except Exception as e:
            if not classifier(e):
                raise
            if attempt == total:
                logger.error(f"{description}: all {total} attempts failed: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description}: attempt {attempt}/{total} failed: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")
