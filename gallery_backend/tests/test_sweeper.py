"""Tests for the eviction sweeper."""

from datetime import timedelta

import pytest

from gallery_backend.services.identity import build_identity_keys
from gallery_backend.services.sweeper import EvictionSweeper
from gallery_backend.store.memory import InMemoryEntitlementStore, InMemoryQuotaStore
from gallery_backend.store.models import DownloadEvent, EntitlementGrant


class BrokenQuotaStore(InMemoryQuotaStore):
    async def iter_records(self):
        raise ConnectionError("redis went away")
        yield  # pragma: no cover


@pytest.fixture
def quota_store():
    return InMemoryQuotaStore()


@pytest.fixture
def entitlement_store():
    return InMemoryEntitlementStore()


async def _download(store, account, device, ip, at):
    identity = build_identity_keys(account, device, ip, now=at)
    event = DownloadEvent(image_ref="img/a.jpg", timestamp=at, network_address=ip)
    await store.increment_with_ceiling(identity, event, ceiling=3)
    return identity


def _grant(grant_id, account, issued_at, expires_at):
    return EntitlementGrant(
        grant_id=grant_id,
        account_id=account,
        payment_id=f"pay-{grant_id}",
        payment_method="stripe",
        activation_code=f"CODE-{grant_id}",
        issued_at=issued_at,
        expires_at=expires_at,
    )


class TestRunOnce:
    """Single sweep passes."""

    @pytest.mark.asyncio
    async def test_retention_window_boundary(self, quota_store, entitlement_store, clock):
        stale = await _download(quota_store, "old", None, "1.1.1.1", clock.now - timedelta(days=31))
        fresh = await _download(quota_store, "recent", None, "2.2.2.2", clock.now - timedelta(days=29))
        sweeper = EvictionSweeper(
            quota_store,
            entitlement_store,
            retention_days={"account": 30, "device": 30, "network": 30},
            clock=clock,
        )

        stats = await sweeper.run_once()

        assert stats.quota_records_scanned == 4
        assert stats.quota_records_deleted == 2
        assert stats.errors == 0
        assert await quota_store.get_records(stale.present()) == [None, None]
        assert all(r is not None for r in await quota_store.get_records(fresh.present()))

    @pytest.mark.asyncio
    async def test_network_records_use_shorter_window(self, quota_store, entitlement_store, clock):
        identity = await _download(quota_store, "u1", "d1", "1.1.1.1", clock.now - timedelta(days=10))
        sweeper = EvictionSweeper(quota_store, entitlement_store, clock=clock)

        stats = await sweeper.run_once()

        assert stats.quota_records_deleted == 1
        account, device, network = await quota_store.get_records(identity.present())
        assert account is not None
        assert device is not None
        assert network is None

    @pytest.mark.asyncio
    async def test_expired_grants_removed(self, quota_store, entitlement_store, clock):
        await entitlement_store.put_grant(
            _grant("g-old", "u1", clock.now - timedelta(days=400), clock.now - timedelta(days=35))
        )
        await entitlement_store.put_grant(
            _grant("g-live", "u2", clock.now - timedelta(days=10), clock.now + timedelta(days=355))
        )
        sweeper = EvictionSweeper(quota_store, entitlement_store, clock=clock)

        stats = await sweeper.run_once()

        assert stats.grants_scanned == 2
        assert stats.grants_deleted == 1
        assert await entitlement_store.get_by_index("account", "u1") is None
        assert await entitlement_store.get_by_index("code", "CODE-g-old") is None
        assert (await entitlement_store.get_by_index("account", "u2")).grant_id == "g-live"

    @pytest.mark.asyncio
    async def test_failure_in_one_store_does_not_stop_the_other(self, entitlement_store, clock):
        await entitlement_store.put_grant(
            _grant("g-old", "u1", clock.now - timedelta(days=400), clock.now - timedelta(days=1))
        )
        sweeper = EvictionSweeper(BrokenQuotaStore(), entitlement_store, clock=clock)

        stats = await sweeper.run_once()

        assert stats.errors == 1
        assert stats.grants_deleted == 1
        assert sweeper.last_stats is stats
        assert stats.completed_at is not None

    @pytest.mark.asyncio
    async def test_empty_stores(self, quota_store, entitlement_store, clock):
        sweeper = EvictionSweeper(quota_store, entitlement_store, clock=clock)

        stats = await sweeper.run_once()

        assert stats.quota_records_scanned == 0
        assert stats.grants_scanned == 0
        assert stats.started_at == clock.now.isoformat()


class TestLifecycle:
    """Background task start/stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, quota_store, entitlement_store, clock):
        sweeper = EvictionSweeper(quota_store, entitlement_store, interval_seconds=3600, clock=clock)

        await sweeper.start()
        assert sweeper.running is True

        await sweeper.stop()
        assert sweeper.running is False

    @pytest.mark.asyncio
    async def test_disabled_sweeper_never_starts(self, quota_store, entitlement_store, clock):
        sweeper = EvictionSweeper(quota_store, entitlement_store, enabled=False, clock=clock)

        await sweeper.start()

        assert sweeper.running is False
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, quota_store, entitlement_store, clock):
        sweeper = EvictionSweeper(quota_store, entitlement_store, clock=clock)

        await sweeper.start()
        task = sweeper._task
        await sweeper.start()

        assert sweeper._task is task
        await sweeper.stop()
