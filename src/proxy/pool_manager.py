"""Credential pool manager for metered proxy sub-accounts.

The manager owns the in-memory credential map and the "current" selection.
Callers ask it for a network identity; it hands out the current credential
while that credential stays usable and rotates to the next one in insertion
order once a quota read shows it exhausted. It never provisions credentials
on its own; when nothing is usable it notifies subscribers and fails with
NoCredentialAvailableError.
"""

import inspect
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Optional, Union

from src import metrics
from src.db.models import utcnow
from src.errors import (
    NoCredentialAvailableError,
    NotFoundError,
    ProvisioningError,
    ProxyError,
    ValidationError,
)
from src.proxy.credential_store import CredentialStore
from src.proxy.provider_client import ProviderClient, generate_identity, generate_secret
from src.proxy.quota_tracker import QuotaTracker, normalize_quota
from src.proxy.types import (
    Credential,
    CredentialStatus,
    NetworkIdentity,
    PoolEvent,
    PoolStatistics,
    QuotaLevel,
    classify_quota,
    format_bytes,
)

logger = logging.getLogger(__name__)

PoolListener = Callable[[PoolEvent, Optional[Credential]], Union[None, Awaitable[None]]]


class PoolManager:
    """Selects usable proxy credentials and reacts to quota exhaustion."""

    def __init__(
        self,
        store: CredentialStore,
        tracker: QuotaTracker,
        provider: ProviderClient,
        *,
        endpoint: str,
        port: int,
        country: str,
        quota_bytes: int,
        warning_bytes: int,
        service_type: str = "residential",
    ):
        self.store = store
        self.tracker = tracker
        self.provider = provider
        self.endpoint = endpoint
        self.port = port
        self.country = country
        self.quota_bytes = quota_bytes
        self.warning_bytes = warning_bytes
        self.service_type = service_type

        # Keyed by identity; dict order is insertion order
        self._credentials: dict[str, Credential] = {}
        self._current: Optional[str] = None
        self._listeners: dict[PoolEvent, list[PoolListener]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, event: PoolEvent, callback: PoolListener) -> None:
        """Register a callback (sync or async) for a pool event."""
        self._listeners[event].append(callback)

    async def _emit(self, event: PoolEvent, credential: Optional[Credential] = None) -> None:
        metrics.record_pool_event(event.value)
        for callback in list(self._listeners[event]):
            try:
                result = callback(event, credential)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Pool listener for {event.value} failed")

    # ------------------------------------------------------------------
    # Loading and inspection
    # ------------------------------------------------------------------

    @property
    def current(self) -> Optional[Credential]:
        if self._current is None:
            return None
        return self._credentials.get(self._current)

    def list_credentials(self) -> list[Credential]:
        return list(self._credentials.values())

    def get(self, credential_id: int) -> Optional[Credential]:
        for credential in self._credentials.values():
            if credential.id == credential_id:
                return credential
        return None

    async def load(self) -> None:
        """
        Load stored credentials, then sync status and usage from the provider.

        The provider sync is best effort; when it fails the stored values stand.
        """
        for credential in await self.store.load_all():
            self._credentials[credential.identity] = credential
            logger.info(
                f"Loaded credential {credential.masked_identity} (status: {credential.status.value})"
            )

        try:
            listing = await self.provider.list_subusers()
        except ProxyError as e:
            logger.debug(f"Could not sync credentials with provider, using stored state: {e}")
            listing = []

        for entry in listing:
            credential = self._credentials.get(entry.get("username", ""))
            if credential is None:
                continue
            status = entry.get("status")
            if status in {s.value for s in CredentialStatus}:
                credential.status = CredentialStatus(status)
            reading = normalize_quota(entry, default_quota=credential.quota_bytes)
            if reading is not None:
                credential.used_bytes = reading.used_bytes
                credential.quota_bytes = reading.quota_bytes
            if entry.get("id") is not None and not credential.external_id:
                credential.external_id = str(entry["id"])
            await self.store.save(credential)

        self._update_pool_gauge()

    def statistics(self) -> PoolStatistics:
        credentials = self.list_credentials()
        current = self.current
        return PoolStatistics(
            total=len(credentials),
            active=sum(1 for c in credentials if c.status == CredentialStatus.ACTIVE),
            exhausted=sum(1 for c in credentials if c.status == CredentialStatus.EXHAUSTED),
            used_bytes=sum(c.used_bytes for c in credentials),
            quota_bytes=sum(c.quota_bytes for c in credentials),
            current_identity=current.identity if current else None,
        )

    def _update_pool_gauge(self) -> None:
        counts = {status.value: 0 for status in CredentialStatus}
        for credential in self._credentials.values():
            counts[credential.status.value] += 1
        metrics.update_pool_size(counts)

    # ------------------------------------------------------------------
    # Quota checks
    # ------------------------------------------------------------------

    async def _check(self, credential: Credential) -> Optional[QuotaLevel]:
        """
        Refresh one credential from a quota read.

        Returns:
            The quota level, or None when the read failed or the credential was
            removed while the read was in flight
        """
        reading = await self.tracker.read(credential)

        # The map may have changed while awaiting the provider
        if self._credentials.get(credential.identity) is not credential:
            return None
        if reading is None:
            return None

        credential.used_bytes = reading.used_bytes
        credential.quota_bytes = reading.quota_bytes
        credential.last_checked_at = utcnow()
        metrics.record_credential_usage(credential.masked_identity, reading.used_bytes)

        level = classify_quota(reading.used_bytes, reading.quota_bytes, self.warning_bytes)
        usage = f"{format_bytes(reading.used_bytes)} / {format_bytes(reading.quota_bytes)}"

        became_exhausted = False
        if level == QuotaLevel.EXHAUSTED:
            if credential.status != CredentialStatus.EXHAUSTED:
                credential.status = CredentialStatus.EXHAUSTED
                became_exhausted = True
        elif credential.status == CredentialStatus.EXHAUSTED:
            # Quota was raised upstream
            credential.status = CredentialStatus.ACTIVE
            logger.info(f"Credential {credential.masked_identity} has quota again: {usage}")

        if credential.id is not None:
            await self.store.update_usage(
                credential.id,
                credential.used_bytes,
                credential.quota_bytes,
                credential.status,
                credential.last_checked_at,
            )

        if became_exhausted:
            logger.warning(f"Credential {credential.masked_identity} exhausted its quota: {usage}")
            self._update_pool_gauge()
            await self._emit(PoolEvent.EXHAUSTED, credential)
        elif level == QuotaLevel.NEAR_LIMIT:
            logger.warning(f"Credential {credential.masked_identity} is approaching its limit: {usage}")
            await self._emit(PoolEvent.NEAR_LIMIT, credential)
        else:
            logger.debug(f"Credential {credential.masked_identity} usage: {usage}")

        return level

    async def check_current(self) -> Optional[QuotaLevel]:
        """Re-check the current selection; run periodically by the scheduler."""
        credential = self.current
        if credential is None:
            return None
        return await self._check(credential)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _format_identity(self, credential: Credential, session_id: Optional[str]) -> NetworkIdentity:
        username = credential.identity
        if session_id:
            username = f"user-{credential.identity}-country-{self.country}-session-{session_id}"
        return NetworkIdentity(
            endpoint=self.endpoint,
            port=self.port,
            username=username,
            password=credential.secret,
            credential_id=credential.id,
        )

    async def _select(self) -> Credential:
        current = self.current
        if current is not None and current.status == CredentialStatus.ACTIVE:
            level = await self._check(current)
            if (
                level in (QuotaLevel.OK, QuotaLevel.NEAR_LIMIT)
                and self.current is current
                and current.status == CredentialStatus.ACTIVE
            ):
                return current

        for credential in list(self._credentials.values()):
            if credential.status != CredentialStatus.ACTIVE:
                continue
            level = await self._check(credential)
            if level == QuotaLevel.OK and credential.status == CredentialStatus.ACTIVE:
                if self._current != credential.identity:
                    logger.info(f"Switched to credential {credential.masked_identity}")
                self._current = credential.identity
                return credential

        self._current = None
        logger.warning("No active proxy credentials available, replenishment needed")
        await self._emit(PoolEvent.REPLENISHMENT_NEEDED)
        raise NoCredentialAvailableError(
            "No active proxy credentials available. "
            "Create one via POST /api/proxy/credentials or import an existing one."
        )

    async def acquire_network_identity(self, session_id: Optional[str] = None) -> NetworkIdentity:
        """
        Pick a usable credential and format it as a network identity.

        Args:
            session_id: Sticky-session token; when given, the login encodes the
                target country and the token so requests share one exit IP

        Returns:
            NetworkIdentity for the proxy endpoint

        Raises:
            NoCredentialAvailableError: If every credential is exhausted, errored
                or could not be verified
        """
        credential = await self._select()
        return self._format_identity(credential, session_id)

    def rotate(self) -> None:
        """Drop the current selection so the next acquire rescans the pool."""
        if self._current is not None:
            logger.info(f"Rotating away from credential {self._credentials[self._current].masked_identity}")
        self._current = None

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def create_credential(self) -> Credential:
        """
        Provision a new sub-account upstream and make it the current selection.

        Raises:
            ProvisioningError: If the provider refuses or cannot be reached
        """
        identity = generate_identity()
        secret = generate_secret()

        try:
            response = await self.provider.create_subuser(
                identity, secret, self.service_type, self.quota_bytes
            )
        except ProxyError as e:
            logger.error(f"Failed to create credential: {e}")
            raise ProvisioningError(f"Failed to create proxy credential: {e.message}") from e

        reading = normalize_quota(response, default_quota=self.quota_bytes)
        credential = Credential(
            id=None,
            identity=response.get("username") or identity,
            secret=secret,
            quota_bytes=reading.quota_bytes if reading else self.quota_bytes,
            used_bytes=0,
            status=CredentialStatus.ACTIVE,
            service_type=response.get("service_type") or self.service_type,
            external_id=str(response["id"]) if response.get("id") is not None else None,
            last_checked_at=utcnow(),
        )
        credential = await self.store.save(credential)

        self._credentials[credential.identity] = credential
        self._current = credential.identity
        self._update_pool_gauge()
        logger.info(f"Created credential {credential.masked_identity}")
        return credential

    async def import_existing_credential(self, identity: str, secret: str) -> Credential:
        """
        Register a sub-account that was provisioned outside this service.

        Raises:
            ValidationError: If the identity is already stored locally
            NotFoundError: If the provider does not know the identity
        """
        if identity in self._credentials or await self.store.get_by_identity(identity):
            raise ValidationError(f"Credential {identity} already exists")

        entry = await self.provider.find_subuser(identity)
        if entry is None:
            raise NotFoundError(f"Credential {identity} not found at proxy provider")

        credential = Credential(
            id=None,
            identity=identity,
            secret=secret,
            quota_bytes=self.quota_bytes,
            service_type=entry.get("service_type") or self.service_type,
            external_id=str(entry["id"]) if entry.get("id") is not None else None,
        )

        reading = await self.tracker.read(credential)
        if reading is not None:
            credential.used_bytes = reading.used_bytes
            credential.quota_bytes = reading.quota_bytes
            credential.last_checked_at = utcnow()
            level = classify_quota(reading.used_bytes, reading.quota_bytes, self.warning_bytes)
            if level == QuotaLevel.EXHAUSTED:
                credential.status = CredentialStatus.EXHAUSTED
            elif level == QuotaLevel.NEAR_LIMIT:
                logger.warning(
                    f"Imported credential {credential.masked_identity} is approaching its limit: "
                    f"{format_bytes(reading.used_bytes)} / {format_bytes(reading.quota_bytes)}"
                )

        credential = await self.store.save(credential)
        self._credentials[credential.identity] = credential
        self._update_pool_gauge()
        logger.info(
            f"Imported credential {credential.masked_identity} (status: {credential.status.value})"
        )
        return credential

    async def set_status(self, credential_id: int, status: CredentialStatus) -> Credential:
        """Administrative status override."""
        credential = self.get(credential_id)
        if credential is None:
            raise NotFoundError(f"Credential {credential_id} not found")

        credential.status = status
        await self.store.update_usage(
            credential_id,
            credential.used_bytes,
            credential.quota_bytes,
            status,
            credential.last_checked_at,
        )
        if status != CredentialStatus.ACTIVE and self._current == credential.identity:
            self._current = None
        self._update_pool_gauge()
        logger.info(f"Credential {credential.masked_identity} set to {status.value}")
        return credential
