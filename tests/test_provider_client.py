"""Tests for the proxy provider's sub-account API client."""

import json
import re

import httpx
import pytest

from src.config import Settings
from src.errors import ConfigurationError, ProxyError
from src.proxy.provider_client import (
    SECRET_LENGTH,
    ApiKeyAuth,
    LoginPasswordAuth,
    ProviderClient,
    generate_identity,
    generate_secret,
    resolve_auth_mode,
)

BASE_URL = "https://api.example.com/v1"

SUBUSERS = [
    {"id": 11, "username": "alpha_user", "traffic": 0.5, "traffic_limit": 1.0},
    {"id": 12, "username": "beta_user", "traffic": 0.1, "traffic_limit": 1.0},
]


def settings_with(**overrides) -> Settings:
    values = {"decodo_api_key": "", "decodo_username": "", "decodo_password": ""}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestAuthMode:
    def test_api_key_preferred(self):
        mode = resolve_auth_mode(
            settings_with(decodo_api_key="key-123", decodo_username="u", decodo_password="p")
        )
        assert mode == ApiKeyAuth(api_key="key-123")

    def test_login_password(self):
        mode = resolve_auth_mode(settings_with(decodo_username="u", decodo_password="p"))
        assert mode == LoginPasswordAuth(username="u", password="p")

    def test_missing_credentials(self):
        with pytest.raises(ConfigurationError):
            resolve_auth_mode(settings_with(decodo_username="u"))

    def test_key_hidden_from_repr(self):
        assert "key-123" not in repr(ApiKeyAuth(api_key="key-123"))


def test_generated_identity_and_secret():
    identity = generate_identity()
    assert re.fullmatch(r"fragscrape_\d{13}_[0-9a-f]{6}", identity)
    assert generate_identity() != identity

    secret = generate_secret()
    assert len(secret) == SECRET_LENGTH
    assert len(generate_secret(24)) == 24


class TestApiKeyMode:
    @pytest.mark.asyncio
    async def test_listing_uses_raw_key(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=SUBUSERS)

        client = ProviderClient(ApiKeyAuth("key-123"), BASE_URL, transport=httpx.MockTransport(handler))
        subusers = await client.list_subusers()
        await client.close()

        assert [s["username"] for s in subusers] == ["alpha_user", "beta_user"]
        assert seen[0].url.path == "/v1/sub-users"
        assert seen[0].headers["Authorization"] == "key-123"

    @pytest.mark.asyncio
    async def test_wrapped_listing_and_usage_lookup(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": SUBUSERS})

        client = ProviderClient(ApiKeyAuth("key-123"), BASE_URL, transport=httpx.MockTransport(handler))

        assert client.embeds_usage_in_listing
        assert (await client.get_usage("beta_user"))["id"] == 12
        assert await client.get_usage("missing_user") is None
        await client.close()

    @pytest.mark.asyncio
    async def test_create_sends_payload(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": 99, "username": "new_user"})

        client = ProviderClient(ApiKeyAuth("key-123"), BASE_URL, transport=httpx.MockTransport(handler))
        created = await client.create_subuser("new_user", "s3cret-value", "residential", 1024)
        await client.close()

        assert created["id"] == 99
        assert bodies == [
            {
                "username": "new_user",
                "password": "s3cret-value",
                "service_type": "residential",
                "traffic_limit": 1024,
            }
        ]

    @pytest.mark.asyncio
    async def test_update_and_delete(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, request.content))
            return httpx.Response(204)

        client = ProviderClient(ApiKeyAuth("key-123"), BASE_URL, transport=httpx.MockTransport(handler))
        await client.update_subuser("11", 2048, secret="new-secret")
        await client.delete_subuser("11")
        await client.close()

        method, path, body = seen[0]
        assert (method, path) == ("PUT", "/v1/sub-users/11")
        assert json.loads(body) == {"traffic_limit": 2048, "password": "new-secret"}
        assert seen[1][:2] == ("DELETE", "/v1/sub-users/11")

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = ProviderClient(
            ApiKeyAuth("bad"),
            BASE_URL,
            transport=httpx.MockTransport(lambda request: httpx.Response(403)),
        )
        with pytest.raises(ProxyError):
            await client.list_subusers()
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_failure_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable")

        client = ProviderClient(ApiKeyAuth("key-123"), BASE_URL, transport=httpx.MockTransport(handler))
        with pytest.raises(ProxyError):
            await client.list_subusers()
        await client.close()

    @pytest.mark.asyncio
    async def test_malformed_listing_entries_are_dropped(self):
        listing = ["alpha_user", None, 7, *SUBUSERS]
        client = ProviderClient(
            ApiKeyAuth("key-123"),
            BASE_URL,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=listing)),
        )

        assert await client.list_subusers() == SUBUSERS
        assert (await client.find_subuser("beta_user"))["id"] == 12
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["sub-users", 42, {"data": "alpha_user"}])
    async def test_listing_that_is_not_a_list_raises(self, payload):
        client = ProviderClient(
            ApiKeyAuth("key-123"),
            BASE_URL,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)),
        )
        with pytest.raises(ProxyError):
            await client.list_subusers()
        await client.close()


class LoginApi:
    """Scripted provider answering /auth and the per-user collection."""

    def __init__(self, reject_first_token: bool = False):
        self.reject_first_token = reject_first_token
        self.auth_calls = 0
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/auth":
            self.auth_calls += 1
            return httpx.Response(200, json={"token": f"token-{self.auth_calls}", "userId": 42})

        if self.reject_first_token and request.headers["Authorization"] == "Bearer token-1":
            return httpx.Response(401)
        if request.url.path.endswith("/traffic"):
            return httpx.Response(200, json={"traffic": 0.25, "traffic_limit": 1.0})
        return httpx.Response(200, json=SUBUSERS)


class TestLoginMode:
    @pytest.mark.asyncio
    async def test_authenticates_once_and_uses_bearer(self):
        api = LoginApi()
        client = ProviderClient(LoginPasswordAuth("acct", "pw"), BASE_URL, transport=httpx.MockTransport(api))

        await client.list_subusers()
        await client.list_subusers()
        await client.close()

        assert api.auth_calls == 1
        auth_request = api.requests[0]
        assert json.loads(auth_request.content) == {"username": "acct", "password": "pw"}
        listing = api.requests[1]
        assert listing.url.path == "/v1/users/42/sub-users"
        assert listing.headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_usage_comes_from_traffic_endpoint(self):
        api = LoginApi()
        client = ProviderClient(LoginPasswordAuth("acct", "pw"), BASE_URL, transport=httpx.MockTransport(api))

        assert not client.embeds_usage_in_listing
        usage = await client.get_usage("alpha_user", subuser_id="11")
        await client.close()

        assert usage == {"traffic": 0.25, "traffic_limit": 1.0}
        assert api.requests[-1].url.path == "/v1/users/42/sub-users/11/traffic"

    @pytest.mark.asyncio
    async def test_expired_token_reauthenticates_once(self):
        api = LoginApi(reject_first_token=True)
        client = ProviderClient(LoginPasswordAuth("acct", "pw"), BASE_URL, transport=httpx.MockTransport(api))

        subusers = await client.list_subusers()
        await client.close()

        assert len(subusers) == 2
        assert api.auth_calls == 2
        assert api.requests[-1].headers["Authorization"] == "Bearer token-2"

    @pytest.mark.asyncio
    async def test_failed_login(self):
        client = ProviderClient(
            LoginPasswordAuth("acct", "wrong"),
            BASE_URL,
            transport=httpx.MockTransport(lambda request: httpx.Response(401)),
        )
        with pytest.raises(ProxyError):
            await client.list_subusers()
        await client.close()
