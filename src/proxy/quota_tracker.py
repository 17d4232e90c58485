"""Reads sub-account usage from the provider and normalizes it."""

import logging
from typing import Any, Optional

from src import metrics
from src.errors import ProxyError
from src.proxy.provider_client import ProviderClient
from src.proxy.types import Credential, QuotaReading, mask_identity

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def normalize_quota(payload: dict, default_quota: Optional[int] = None) -> Optional[QuotaReading]:
    """
    Turn a provider usage payload into a QuotaReading.

    Accepts the traffic endpoint shape (``traffic_used`` / ``traffic_limit``) and
    the listing entry shape (``traffic_bytes`` / ``traffic_limit_bytes``, falling
    back to ``traffic_limit``).

    Returns:
        QuotaReading, or None when the payload carries no usable numbers
    """
    if not isinstance(payload, dict):
        return None

    used = _as_int(payload.get("traffic_used"))
    if used is None:
        used = _as_int(payload.get("traffic_bytes"))

    quota = _as_int(payload.get("traffic_limit_bytes"))
    if quota is None:
        quota = _as_int(payload.get("traffic_limit"))
    if quota is None:
        quota = default_quota

    if used is None or quota is None:
        return None
    return QuotaReading(used_bytes=max(0, used), quota_bytes=quota)


class QuotaTracker:
    """Fetches fresh quota readings. Never raises; failures come back as None."""

    def __init__(self, provider: ProviderClient):
        self.provider = provider

    async def read(self, credential: Credential) -> Optional[QuotaReading]:
        masked = mask_identity(credential.identity)
        try:
            payload = await self.provider.get_usage(credential.identity, credential.external_id)
        except ProxyError as e:
            logger.warning(f"Quota check failed for {masked}: {e}")
            metrics.record_quota_check_failure()
            return None

        if payload is None:
            logger.warning(f"Quota check for {masked}: identity not found upstream")
            metrics.record_quota_check_failure()
            return None

        reading = normalize_quota(payload, default_quota=credential.quota_bytes)
        if reading is None:
            logger.warning(f"Quota check for {masked}: unrecognized usage payload")
            metrics.record_quota_check_failure()
        return reading
