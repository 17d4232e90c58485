"""In-memory doubles for the proxy pool collaborators."""

from typing import Optional

from src.errors import ProxyError
from src.proxy.pool_manager import PoolManager
from src.proxy.types import Credential, CredentialStatus, QuotaReading

MB = 1024 * 1024
GB = 1024 * MB


class FakeStore:
    """Credential store kept in a list; ids assigned on first save."""

    def __init__(self, credentials: Optional[list[Credential]] = None):
        self.credentials: list[Credential] = list(credentials or [])
        self.usage_updates: list[tuple] = []
        self._next_id = len(self.credentials) + 1

    async def load_all(self) -> list[Credential]:
        return list(self.credentials)

    async def get_by_identity(self, identity: str) -> Optional[Credential]:
        return next((c for c in self.credentials if c.identity == identity), None)

    async def save(self, credential: Credential) -> Credential:
        if credential.id is None:
            credential.id = self._next_id
            self._next_id += 1
            self.credentials.append(credential)
        return credential

    async def update_usage(self, credential_id, used_bytes, quota_bytes, status, checked_at) -> None:
        self.usage_updates.append((credential_id, used_bytes, quota_bytes, status))


class FakeTracker:
    """Returns canned quota readings keyed by identity."""

    def __init__(self, readings: Optional[dict[str, Optional[QuotaReading]]] = None):
        self.readings = dict(readings or {})
        self.reads: list[str] = []

    async def read(self, credential: Credential) -> Optional[QuotaReading]:
        self.reads.append(credential.identity)
        return self.readings.get(credential.identity)


class FakeProvider:
    """Sub-account API double."""

    def __init__(self, subusers: Optional[list[dict]] = None, fail: bool = False):
        self.subusers = list(subusers or [])
        self.fail = fail
        self.created: list[dict] = []

    async def list_subusers(self) -> list[dict]:
        if self.fail:
            raise ProxyError("provider unreachable")
        return list(self.subusers)

    async def find_subuser(self, identity: str) -> Optional[dict]:
        return next((s for s in await self.list_subusers() if s.get("username") == identity), None)

    async def create_subuser(self, identity, secret, service_type, quota_bytes) -> dict:
        if self.fail:
            raise ProxyError("provider refused")
        entry = {
            "id": 100 + len(self.created),
            "username": identity,
            "service_type": service_type,
            "traffic_limit": quota_bytes,
        }
        self.created.append(entry)
        return entry


def make_credential(identity: str, used_mb: int = 0, credential_id: Optional[int] = None) -> Credential:
    return Credential(
        id=credential_id,
        identity=identity,
        secret=f"{identity}-secret",
        quota_bytes=GB,
        used_bytes=used_mb * MB,
        status=CredentialStatus.ACTIVE,
    )


def make_pool(store, tracker, provider=None) -> PoolManager:
    return PoolManager(
        store,
        tracker,
        provider or FakeProvider(),
        endpoint="gate.example.com",
        port=7000,
        country="us",
        quota_bytes=GB,
        warning_bytes=900 * MB,
    )


