"""Client for the proxy provider's sub-account management API.

Two authentication modes exist and are resolved once, at construction:

- ``ApiKeyAuth``: the key is sent as the ``Authorization`` header on every call,
  sub-accounts live under ``/sub-users`` and their usage is embedded in the
  listing.
- ``LoginPasswordAuth``: ``POST /auth`` exchanges the account login for a bearer
  token and user id; sub-accounts live under ``/users/{user_id}/sub-users`` and
  usage comes from a dedicated ``/traffic`` endpoint.
"""

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx

from src.config import Settings
from src.errors import ConfigurationError, ProxyError

logger = logging.getLogger(__name__)

SECRET_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"
SECRET_LENGTH = 16


@dataclass(frozen=True)
class ApiKeyAuth:
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class LoginPasswordAuth:
    username: str
    password: str = field(repr=False)


AuthMode = Union[ApiKeyAuth, LoginPasswordAuth]


def resolve_auth_mode(config: Settings) -> AuthMode:
    """
    Pick the authentication mode from settings.

    Raises:
        ConfigurationError: If neither an API key nor a username/password pair is set
    """
    if config.decodo_api_key:
        return ApiKeyAuth(api_key=config.decodo_api_key)
    if config.decodo_username and config.decodo_password:
        return LoginPasswordAuth(
            username=config.decodo_username,
            password=config.decodo_password,
        )
    raise ConfigurationError(
        "Either DECODO_API_KEY or DECODO_USERNAME/DECODO_PASSWORD must be configured"
    )


def generate_identity() -> str:
    """Unique sub-account login, e.g. ``fragscrape_1718000000000_a1b2c3``."""
    return f"fragscrape_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def generate_secret(length: int = SECRET_LENGTH) -> str:
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


class ProviderClient:
    """Async wrapper around the provider's sub-account endpoints."""

    def __init__(
        self,
        auth: AuthMode,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.auth = auth
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._token: Optional[str] = None
        self._user_id: Optional[str] = None
        self._auth_lock = asyncio.Lock()

    @property
    def embeds_usage_in_listing(self) -> bool:
        """True when quota usage is read from the listing rather than /traffic."""
        return isinstance(self.auth, ApiKeyAuth)

    async def close(self) -> None:
        await self._client.aclose()

    async def authenticate(self) -> None:
        """Exchange the account login for a bearer token (login mode only)."""
        if not isinstance(self.auth, LoginPasswordAuth):
            return

        try:
            response = await self._client.post(
                "/auth",
                json={"username": self.auth.username, "password": self.auth.password},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to authenticate with proxy provider: {e}")
            raise ProxyError("Proxy provider authentication failed") from e

        self._token = data.get("token")
        self._user_id = str(data.get("userId") or data.get("user_id") or "")
        if not self._token or not self._user_id:
            raise ProxyError("Proxy provider authentication returned no token")
        logger.info("Authenticated with proxy provider")

    async def _ensure_authenticated(self) -> None:
        if isinstance(self.auth, ApiKeyAuth):
            return
        async with self._auth_lock:
            if not self._token or not self._user_id:
                await self.authenticate()

    def _auth_headers(self) -> dict[str, str]:
        if isinstance(self.auth, ApiKeyAuth):
            return {"Authorization": self.auth.api_key}
        return {"Authorization": f"Bearer {self._token}"}

    def _collection_path(self) -> str:
        if isinstance(self.auth, ApiKeyAuth):
            return "/sub-users"
        return f"/users/{self._user_id}/sub-users"

    async def _request(self, method: str, path_suffix: str = "", **kwargs) -> Any:
        """
        Perform an authenticated request against the sub-user collection.

        A 401 in login mode drops the cached token and retries once.

        Raises:
            ProxyError: On transport failure or a non-2xx response
        """
        for attempt in (1, 2):
            await self._ensure_authenticated()
            url = self._collection_path() + path_suffix
            try:
                response = await self._client.request(
                    method, url, headers=self._auth_headers(), **kwargs
                )
            except httpx.HTTPError as e:
                raise ProxyError(f"Proxy provider request failed: {method} {url}: {e}") from e

            if (
                response.status_code == 401
                and isinstance(self.auth, LoginPasswordAuth)
                and attempt == 1
            ):
                logger.info("Proxy provider token rejected, re-authenticating")
                self._token = None
                continue

            if response.status_code >= 400:
                raise ProxyError(
                    f"Proxy provider returned {response.status_code} for {method} {url}"
                )

            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise ProxyError(f"Proxy provider returned invalid JSON for {method} {url}") from e

    async def list_subusers(self) -> list[dict]:
        """
        List sub-accounts. Entries that are not objects are dropped.

        Raises:
            ProxyError: If the listing is not a list
        """
        data = await self._request("GET")
        if isinstance(data, dict):
            # Some API versions wrap the listing
            data = data.get("data") or data.get("sub_users") or []
        if data is None:
            return []
        if not isinstance(data, list):
            raise ProxyError(
                f"Proxy provider returned an unexpected sub-user listing: {type(data).__name__}"
            )

        entries = [entry for entry in data if isinstance(entry, dict)]
        if len(entries) != len(data):
            logger.warning(f"Ignored {len(data) - len(entries)} malformed sub-user entries")
        return entries

    async def find_subuser(self, identity: str) -> Optional[dict]:
        for entry in await self.list_subusers():
            if entry.get("username") == identity:
                return entry
        return None

    async def create_subuser(
        self,
        identity: str,
        secret: str,
        service_type: str,
        quota_bytes: int,
    ) -> dict:
        data = await self._request(
            "POST",
            json={
                "username": identity,
                "password": secret,
                "service_type": service_type,
                "traffic_limit": quota_bytes,
            },
        )
        logger.info(f"Created sub-user {identity[:6]}***")
        return data or {}

    async def update_subuser(
        self,
        subuser_id: str,
        quota_bytes: int,
        secret: Optional[str] = None,
    ) -> None:
        payload: dict[str, Any] = {"traffic_limit": quota_bytes}
        if secret:
            payload["password"] = secret
        await self._request("PUT", f"/{subuser_id}", json=payload)
        logger.info(f"Updated sub-user {subuser_id}")

    async def get_usage(self, identity: str, subuser_id: Optional[str] = None) -> Optional[dict]:
        """
        Fetch the raw usage payload for one sub-account.

        Login mode queries the traffic endpoint (by provider id when known);
        API-key mode returns the matching listing entry, or None when the
        identity is not listed.
        """
        if self.embeds_usage_in_listing:
            return await self.find_subuser(identity)
        return await self._request("GET", f"/{subuser_id or identity}/traffic")

    async def delete_subuser(self, subuser_id: str) -> None:
        await self._request("DELETE", f"/{subuser_id}")
        logger.info(f"Deleted sub-user {subuser_id}")
