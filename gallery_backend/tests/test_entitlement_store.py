"""Unit tests for the in-memory entitlement store."""

from datetime import UTC, datetime, timedelta

import pytest

from gallery_backend.store.memory import InMemoryEntitlementStore
from gallery_backend.store.models import DownloadEvent, EntitlementGrant


NOW = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)


def _grant(grant_id: str = "g1", account: str = "u1", device: str | None = "d1", **overrides) -> EntitlementGrant:
    fields = dict(
        grant_id=grant_id,
        account_id=account,
        device_id=device,
        payment_id=f"pay-{grant_id}",
        payment_method="stripe",
        activation_code=f"CODE-{grant_id.upper()}",
        issued_at=NOW,
        expires_at=NOW + timedelta(days=365),
        features=["unlimited_downloads"],
    )
    fields.update(overrides)
    return EntitlementGrant(**fields)


class TestInMemoryEntitlementStore:
    """Unit tests for InMemoryEntitlementStore."""

    @pytest.fixture
    def store(self):
        return InMemoryEntitlementStore()

    @pytest.mark.asyncio
    async def test_grant_reachable_by_every_index(self, store):
        await store.put_grant(_grant())

        for kind, value in [("account", "u1"), ("device", "d1"), ("payment", "pay-g1"), ("code", "CODE-G1")]:
            found = await store.get_by_index(kind, value)
            assert found is not None, kind
            assert found.grant_id == "g1"

    @pytest.mark.asyncio
    async def test_grant_without_device_has_no_device_index(self, store):
        await store.put_grant(_grant(device=None))

        assert await store.get_by_index("device", "d1") is None

    @pytest.mark.asyncio
    async def test_put_replaces_previous_account_grant(self, store):
        await store.put_grant(_grant("g1"))

        replaced = await store.put_grant(_grant("g2"))

        assert replaced is not None
        assert replaced.grant_id == "g1"
        assert len(store) == 1
        assert (await store.get_by_index("account", "u1")).grant_id == "g2"
        # Old code and payment no longer resolve
        assert await store.get_by_index("code", "CODE-G1") is None
        assert await store.get_by_index("payment", "pay-g1") is None

    @pytest.mark.asyncio
    async def test_replacement_keeps_shared_device_entry_on_new_grant(self, store):
        await store.put_grant(_grant("g1", device="d1"))
        await store.put_grant(_grant("g2", device="d1"))

        found = await store.get_by_index("device", "d1")
        assert found.grant_id == "g2"

    @pytest.mark.asyncio
    async def test_update_grant_persists_mutation(self, store):
        await store.put_grant(_grant())
        event = DownloadEvent(image_ref="img/a.jpg", timestamp=NOW, network_address="1.2.3.4", unlimited=True)

        updated = await store.update_grant("g1", lambda g: g.record(event))

        assert updated.downloads_count == 1
        assert updated.last_download_at == NOW
        stored = await store.get_by_index("account", "u1")
        assert stored.downloads_count == 1
        assert stored.download_log[0].image_ref == "img/a.jpg"

    @pytest.mark.asyncio
    async def test_update_missing_grant_returns_none(self, store):
        assert await store.update_grant("nope", lambda g: None) is None

    @pytest.mark.asyncio
    async def test_delete_grant_removes_index_entries(self, store):
        await store.put_grant(_grant())

        assert await store.delete_grant("g1") is True

        assert len(store) == 0
        assert await store.get_by_index("account", "u1") is None
        assert await store.get_by_index("code", "CODE-G1") is None
        assert await store.delete_grant("g1") is False

    @pytest.mark.asyncio
    async def test_conditional_delete_only_when_expired(self, store):
        await store.put_grant(_grant(expires_at=NOW + timedelta(days=1)))

        assert await store.delete_grant("g1", expired_at=NOW) is False
        assert await store.delete_grant("g1", expired_at=NOW + timedelta(days=1)) is True

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store):
        await store.put_grant(_grant())

        found = await store.get_by_index("account", "u1")
        found.downloads_count = 50

        again = await store.get_by_index("account", "u1")
        assert again.downloads_count == 0

    @pytest.mark.asyncio
    async def test_iter_grants(self, store):
        await store.put_grant(_grant("g1", account="u1", device=None))
        await store.put_grant(_grant("g2", account="u2", device=None))

        ids = sorted([g.grant_id async for g in store.iter_grants()])
        assert ids == ["g1", "g2"]

    @pytest.mark.asyncio
    async def test_account_lock_released_when_grant_deleted(self, store):
        await store.put_grant(_grant("g1", account="u1"))
        assert "u1" in store._locks

        await store.delete_grant("g1")

        assert "u1" not in store._locks

    @pytest.mark.asyncio
    async def test_account_lock_kept_while_grant_exists(self, store):
        await store.put_grant(_grant("g1", account="u1", expires_at=NOW + timedelta(days=1)))

        assert await store.delete_grant("g1", expired_at=NOW) is False
        assert "u1" in store._locks

    @pytest.mark.asyncio
    async def test_locks_do_not_grow_with_churn(self, store):
        for i in range(50):
            await store.put_grant(_grant(f"g{i}", account=f"u{i}", device=None))
            await store.delete_grant(f"g{i}")

        assert len(store) == 0
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_update_of_missing_grant_leaves_no_lock(self, store):
        await store.put_grant(_grant("g1", account="u1"))
        await store.delete_grant("g1")

        assert await store.update_grant("g1", lambda g: None) is None
        assert store._locks == {}
