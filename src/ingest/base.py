"""Base class for proxy-backed transport clients."""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from src.proxy.pool_manager import PoolManager
from src.proxy.types import NetworkIdentity

logger = logging.getLogger(__name__)


@dataclass
class RequestOutcome:
    """One fetch attempt, as recorded in the request log."""

    url: str
    method: str
    status_code: Optional[int]
    response_time_ms: int
    error: Optional[str] = None
    credential_id: Optional[int] = None


RequestLogger = Callable[[RequestOutcome], Awaitable[None]]


class BaseProxyClient(ABC):
    """
    Shared plumbing for the fetch-only and rendered clients.

    A client holds one sticky session token for its lifetime and serializes
    its requests, so a cached network identity is never used by two requests
    at once. ``reset()`` drops the token and the identity bound to it.
    """

    client_name = "base"

    def __init__(self, pool: PoolManager, request_logger: Optional[RequestLogger] = None):
        self.pool = pool
        self.request_logger = request_logger
        self._session_id: Optional[str] = None
        self._identity: Optional[NetworkIdentity] = None
        self._lock = asyncio.Lock()

    @staticmethod
    def generate_session_id() -> str:
        return f"session_{uuid.uuid4()}"

    @property
    def session_id(self) -> str:
        """Sticky session token, created on first use."""
        if self._session_id is None:
            self._session_id = self.generate_session_id()
        return self._session_id

    def reset_session(self) -> None:
        self._session_id = None
        self._identity = None
        logger.debug(f"{self.client_name}: session reset, next request uses a new identity")

    async def acquire_identity(self) -> NetworkIdentity:
        """Ask the pool for an identity bound to this client's session token."""
        self._identity = await self.pool.acquire_network_identity(self.session_id)
        return self._identity

    async def _log_request(self, outcome: RequestOutcome) -> None:
        if self.request_logger is None:
            return
        try:
            await self.request_logger(outcome)
        except Exception:
            logger.exception(f"{self.client_name}: failed to record request log")

    async def delay(self, seconds: float) -> None:
        """Pause between requests."""
        await asyncio.sleep(seconds)

    @abstractmethod
    async def reset(self) -> None:
        """Drop the cached identity so the next request acquires a fresh one."""

    @abstractmethod
    async def test_connection(self) -> bool:
        """Fetch an IP-echo endpoint through the proxy and report success."""
