"""Tests for credential selection, rotation and administration."""

import pytest

from src.errors import NoCredentialAvailableError, NotFoundError, ProvisioningError, ValidationError
from src.proxy.types import CredentialStatus, PoolEvent, QuotaReading

from tests.fakes import (
    GB,
    MB,
    FakeProvider,
    FakeStore,
    FakeTracker,
    make_credential,
    make_pool,
)


def usage(used_mb: int) -> QuotaReading:
    return QuotaReading(used_bytes=used_mb * MB, quota_bytes=GB)


async def loaded_pool(readings, provider=None, identities=("alpha_user", "bravo_user")):
    store = FakeStore([make_credential(name, credential_id=i + 1) for i, name in enumerate(identities)])
    tracker = FakeTracker(readings)
    pool = make_pool(store, tracker, provider)
    await pool.load()
    return pool, store, tracker


def record_events(pool):
    events = []
    for event in PoolEvent:
        pool.subscribe(event, lambda e, c: events.append((e, c.identity if c else None)))
    return events


class TestSelection:
    @pytest.mark.asyncio
    async def test_first_ok_credential_is_selected(self):
        pool, _, _ = await loaded_pool({"alpha_user": usage(100), "bravo_user": usage(0)})

        identity = await pool.acquire_network_identity("session_abc")

        assert pool.current.identity == "alpha_user"
        assert identity.username == "user-alpha_user-country-us-session-session_abc"
        assert identity.password == "alpha_user-secret"
        assert identity.credential_id == 1
        assert identity.server == "http://gate.example.com:7000"

    @pytest.mark.asyncio
    async def test_bare_identity_without_session(self):
        pool, _, _ = await loaded_pool({"alpha_user": usage(0)})
        identity = await pool.acquire_network_identity()
        assert identity.username == "alpha_user"

    @pytest.mark.asyncio
    async def test_exhaustion_rotates_to_next_credential(self):
        pool, store, tracker = await loaded_pool({"alpha_user": usage(100), "bravo_user": usage(100)})
        events = record_events(pool)
        await pool.acquire_network_identity()
        assert pool.current.identity == "alpha_user"

        tracker.readings["alpha_user"] = QuotaReading(used_bytes=GB, quota_bytes=GB)
        identity = await pool.acquire_network_identity("s1")

        assert identity.credential_id == 2
        assert pool.current.identity == "bravo_user"
        alpha = pool.get(1)
        assert alpha.status == CredentialStatus.EXHAUSTED
        assert alpha.used_bytes == GB
        assert (1, GB, GB, CredentialStatus.EXHAUSTED) in store.usage_updates
        assert (PoolEvent.EXHAUSTED, "alpha_user") in events

    @pytest.mark.asyncio
    async def test_near_limit_current_is_reused(self):
        pool, _, tracker = await loaded_pool({"alpha_user": usage(100), "bravo_user": usage(0)})
        events = record_events(pool)
        await pool.acquire_network_identity()

        tracker.readings["alpha_user"] = usage(950)
        await pool.acquire_network_identity()

        assert pool.current.identity == "alpha_user"
        assert pool.current.status == CredentialStatus.ACTIVE
        assert (PoolEvent.NEAR_LIMIT, "alpha_user") in events

    @pytest.mark.asyncio
    async def test_scan_skips_near_limit_credentials(self):
        pool, _, _ = await loaded_pool({"alpha_user": usage(950), "bravo_user": usage(10)})
        await pool.acquire_network_identity()
        assert pool.current.identity == "bravo_user"

    @pytest.mark.asyncio
    async def test_failed_quota_check_rotates(self):
        pool, _, tracker = await loaded_pool({"alpha_user": usage(0), "bravo_user": usage(0)})
        await pool.acquire_network_identity()

        tracker.readings["alpha_user"] = None
        await pool.acquire_network_identity()

        assert pool.current.identity == "bravo_user"
        # An unverifiable credential keeps its status
        assert pool.get(1).status == CredentialStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_nothing_usable_raises_and_requests_replenishment(self):
        pool, _, _ = await loaded_pool(
            {
                "alpha_user": QuotaReading(used_bytes=GB, quota_bytes=GB),
                "bravo_user": usage(990),
            }
        )
        events = record_events(pool)

        with pytest.raises(NoCredentialAvailableError) as exc_info:
            await pool.acquire_network_identity()

        assert exc_info.value.status_code == 503
        assert pool.current is None
        assert (PoolEvent.REPLENISHMENT_NEEDED, None) in events

    @pytest.mark.asyncio
    async def test_empty_pool_raises(self):
        pool, _, _ = await loaded_pool({}, identities=())
        with pytest.raises(NoCredentialAvailableError):
            await pool.acquire_network_identity()

    @pytest.mark.asyncio
    async def test_rotate_forces_rescan(self):
        pool, _, tracker = await loaded_pool({"alpha_user": usage(0), "bravo_user": usage(0)})
        await pool.acquire_network_identity()
        pool.rotate()
        assert pool.current is None

        tracker.reads.clear()
        await pool.acquire_network_identity()
        assert tracker.reads == ["alpha_user"]

    @pytest.mark.asyncio
    async def test_raised_quota_reactivates_credential(self):
        pool, _, tracker = await loaded_pool({"alpha_user": QuotaReading(used_bytes=GB, quota_bytes=GB)})
        with pytest.raises(NoCredentialAvailableError):
            await pool.acquire_network_identity()

        # Exhausted credentials are not scanned again until a check revives them
        tracker.readings["alpha_user"] = QuotaReading(used_bytes=GB, quota_bytes=2 * GB)
        pool._current = "alpha_user"
        assert await pool.check_current() is not None
        assert pool.get(1).status == CredentialStatus.ACTIVE


class TestEvents:
    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_selection(self):
        pool, _, _ = await loaded_pool({"alpha_user": usage(950), "bravo_user": usage(0)})

        def broken(event, credential):
            raise RuntimeError("listener bug")

        pool.subscribe(PoolEvent.NEAR_LIMIT, broken)
        identity = await pool.acquire_network_identity()
        assert identity.credential_id == 2

    @pytest.mark.asyncio
    async def test_async_listener_is_awaited(self):
        pool, _, _ = await loaded_pool({"alpha_user": QuotaReading(used_bytes=GB, quota_bytes=GB)})
        seen = []

        async def listener(event, credential):
            seen.append(event)

        pool.subscribe(PoolEvent.REPLENISHMENT_NEEDED, listener)
        with pytest.raises(NoCredentialAvailableError):
            await pool.acquire_network_identity()
        assert seen == [PoolEvent.REPLENISHMENT_NEEDED]


class TestLoad:
    @pytest.mark.asyncio
    async def test_provider_listing_updates_stored_state(self):
        provider = FakeProvider(
            [
                {
                    "id": 7,
                    "username": "alpha_user",
                    "status": "exhausted",
                    "traffic_bytes": GB,
                    "traffic_limit_bytes": GB,
                },
                {"id": 8, "username": "someone_else", "status": "active"},
            ]
        )
        pool, _, _ = await loaded_pool({}, provider=provider)

        alpha = pool.get(1)
        assert alpha.status == CredentialStatus.EXHAUSTED
        assert alpha.used_bytes == GB
        assert alpha.external_id == "7"
        assert len(pool.list_credentials()) == 2

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_stored_state(self):
        pool, _, _ = await loaded_pool({}, provider=FakeProvider(fail=True))
        assert [c.identity for c in pool.list_credentials()] == ["alpha_user", "bravo_user"]

    @pytest.mark.asyncio
    async def test_statistics(self):
        pool, _, _ = await loaded_pool({"alpha_user": usage(100), "bravo_user": usage(0)})
        pool.get(2).status = CredentialStatus.EXHAUSTED
        await pool.acquire_network_identity()

        stats = pool.statistics()
        assert stats.total == 2
        assert stats.active == 1
        assert stats.exhausted == 1
        assert stats.quota_bytes == 2 * GB
        assert stats.current_identity == "alpha_user"


class TestAdministration:
    @pytest.mark.asyncio
    async def test_create_credential_becomes_current(self):
        provider = FakeProvider()
        pool, store, _ = await loaded_pool({}, provider=provider, identities=())

        credential = await pool.create_credential()

        assert credential.id is not None
        assert credential.identity.startswith("fragscrape_")
        assert len(credential.secret) == 16
        assert credential.quota_bytes == GB
        assert credential.external_id == "100"
        assert pool.current is credential
        assert store.credentials == [credential]
        assert provider.created[0]["traffic_limit"] == GB

    @pytest.mark.asyncio
    async def test_create_credential_provider_failure(self):
        pool, store, _ = await loaded_pool({}, identities=())
        pool.provider = FakeProvider(fail=True)

        with pytest.raises(ProvisioningError):
            await pool.create_credential()
        assert store.credentials == []
        assert pool.current is None

    @pytest.mark.asyncio
    async def test_import_duplicate_rejected(self):
        pool, _, _ = await loaded_pool({})
        with pytest.raises(ValidationError):
            await pool.import_existing_credential("alpha_user", "password123")

    @pytest.mark.asyncio
    async def test_import_unknown_upstream_rejected(self):
        pool, _, _ = await loaded_pool({}, provider=FakeProvider([]))
        with pytest.raises(NotFoundError):
            await pool.import_existing_credential("charlie_user", "password123")

    @pytest.mark.asyncio
    async def test_import_reads_quota_and_classifies(self):
        provider = FakeProvider([{"id": 9, "username": "charlie_user"}])
        pool, _, tracker = await loaded_pool({}, provider=provider)
        tracker.readings["charlie_user"] = QuotaReading(used_bytes=2 * GB, quota_bytes=2 * GB)

        credential = await pool.import_existing_credential("charlie_user", "password123")

        assert credential.id == 3
        assert credential.external_id == "9"
        assert credential.status == CredentialStatus.EXHAUSTED
        assert credential.quota_bytes == 2 * GB
        assert [c.identity for c in pool.list_credentials()][-1] == "charlie_user"

    @pytest.mark.asyncio
    async def test_set_status_clears_current(self):
        pool, store, _ = await loaded_pool({"alpha_user": usage(0), "bravo_user": usage(0)})
        await pool.acquire_network_identity()

        credential = await pool.set_status(1, CredentialStatus.ERROR)

        assert credential.status == CredentialStatus.ERROR
        assert pool.current is None
        assert store.usage_updates[-1][3] == CredentialStatus.ERROR

        await pool.acquire_network_identity()
        assert pool.current.identity == "bravo_user"

    @pytest.mark.asyncio
    async def test_set_status_unknown_id(self):
        pool, _, _ = await loaded_pool({})
        with pytest.raises(NotFoundError):
            await pool.set_status(99, CredentialStatus.ACTIVE)


class InterruptingTracker(FakeTracker):
    """Runs a pool operation while a chosen credential's quota read is in flight."""

    def __init__(self, readings):
        super().__init__(readings)
        self.during_read = {}

    async def read(self, credential):
        operation = self.during_read.pop(credential.identity, None)
        if operation is not None:
            await operation()
        return await super().read(credential)


class TestChangesDuringQuotaRead:
    async def pool(self):
        store = FakeStore(
            [make_credential("alpha_user", credential_id=1), make_credential("bravo_user", credential_id=2)]
        )
        tracker = InterruptingTracker({"alpha_user": usage(0), "bravo_user": usage(0)})
        pool = make_pool(store, tracker)
        await pool.load()
        return pool, tracker

    @pytest.mark.asyncio
    async def test_disabled_while_scanning_is_not_selected(self):
        pool, tracker = await self.pool()

        async def disable_alpha():
            await pool.set_status(1, CredentialStatus.ERROR)

        tracker.during_read["alpha_user"] = disable_alpha
        identity = await pool.acquire_network_identity()

        assert identity.credential_id == 2
        assert pool.current.identity == "bravo_user"
        assert pool.get(1).status == CredentialStatus.ERROR

    @pytest.mark.asyncio
    async def test_current_disabled_while_rechecking_is_not_reused(self):
        pool, tracker = await self.pool()
        await pool.acquire_network_identity()
        assert pool.current.identity == "alpha_user"

        async def disable_alpha():
            await pool.set_status(1, CredentialStatus.ERROR)

        tracker.during_read["alpha_user"] = disable_alpha
        identity = await pool.acquire_network_identity()

        assert identity.credential_id == 2
        assert pool.current.identity == "bravo_user"

    @pytest.mark.asyncio
    async def test_rotation_while_rechecking_forces_rescan(self):
        pool, tracker = await self.pool()
        await pool.acquire_network_identity()
        tracker.reads.clear()

        async def rotate():
            pool.rotate()

        tracker.during_read["alpha_user"] = rotate
        await pool.acquire_network_identity()

        assert tracker.reads == ["alpha_user", "alpha_user"]
        assert pool.current.identity == "alpha_user"
