"""Value types shared by the proxy credential pool."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from urllib.parse import quote


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    ERROR = "error"


class QuotaLevel(str, Enum):
    OK = "ok"
    NEAR_LIMIT = "near_limit"
    EXHAUSTED = "exhausted"


class PoolEvent(str, Enum):
    NEAR_LIMIT = "near-limit"
    EXHAUSTED = "exhausted"
    REPLENISHMENT_NEEDED = "replenishment-needed"


@dataclass
class Credential:
    """A metered proxy sub-account."""

    id: Optional[int]
    identity: str
    secret: str = field(repr=False)
    quota_bytes: int
    used_bytes: int = 0
    status: CredentialStatus = CredentialStatus.ACTIVE
    service_type: str = "residential"
    external_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None

    @property
    def masked_identity(self) -> str:
        return mask_identity(self.identity)

    @property
    def remaining_bytes(self) -> int:
        return max(0, self.quota_bytes - self.used_bytes)


@dataclass(frozen=True)
class QuotaReading:
    """Usage snapshot returned by the provider."""

    used_bytes: int
    quota_bytes: int


@dataclass(frozen=True)
class NetworkIdentity:
    """Everything a transport needs to route through one proxy credential."""

    endpoint: str
    port: int
    username: str
    password: str = field(repr=False)
    credential_id: Optional[int] = None

    @property
    def server(self) -> str:
        return f"http://{self.endpoint}:{self.port}"

    @property
    def url(self) -> str:
        """Get proxy URL with credentials for httpx."""
        user = quote(self.username, safe="")
        password = quote(self.password, safe="")
        return f"http://{user}:{password}@{self.endpoint}:{self.port}"

    @property
    def playwright_config(self) -> dict:
        """Get proxy configuration for a Playwright browser context."""
        return {
            "server": self.server,
            "username": self.username,
            "password": self.password,
        }


@dataclass
class PoolStatistics:
    total: int
    active: int
    exhausted: int
    used_bytes: int
    quota_bytes: int
    current_identity: Optional[str]


def classify_quota(used_bytes: int, quota_bytes: int, warning_bytes: int) -> QuotaLevel:
    """
    Classify a quota reading.

    Args:
        used_bytes: Bytes consumed so far
        quota_bytes: Credential quota
        warning_bytes: Usage at which the credential counts as near its limit

    Returns:
        EXHAUSTED when usage reached the quota, NEAR_LIMIT when it reached the
        warning threshold, OK otherwise
    """
    if used_bytes >= quota_bytes:
        return QuotaLevel.EXHAUSTED
    if used_bytes >= warning_bytes:
        return QuotaLevel.NEAR_LIMIT
    return QuotaLevel.OK


def mask_identity(identity: str) -> str:
    """Shorten an identity for log output."""
    if len(identity) <= 8:
        return identity[:2] + "***"
    return f"{identity[:6]}***{identity[-3:]}"


def format_bytes(value: int) -> str:
    """Human readable size, e.g. ``1.5 GB``."""
    if value < 1024:
        return f"{value} B"
    size = value / 1024
    for unit in ("KB", "MB"):
        if size < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} GB"
