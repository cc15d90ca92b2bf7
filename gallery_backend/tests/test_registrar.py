"""Tests for the download allow/deny decision."""

import asyncio
from datetime import timedelta

import pytest

from gallery_backend.core.exceptions import (
    InvalidRequestError,
    QuotaExceededError,
    StoreUnavailableError,
)
from gallery_backend.services import DownloadRegistrar, EntitlementService, QuotaService
from gallery_backend.services.identity import build_identity_keys
from gallery_backend.services.registrar import UNLIMITED
from gallery_backend.store.memory import InMemoryEntitlementStore, InMemoryQuotaStore


class SlowQuotaStore(InMemoryQuotaStore):
    async def get_records(self, keys):
        await asyncio.sleep(1)
        return await super().get_records(keys)


@pytest.fixture
def quota_store():
    return InMemoryQuotaStore()


@pytest.fixture
def entitlement_store():
    return InMemoryEntitlementStore()


def _registrar(quota_store, entitlement_store, clock, *, timeout_s=2.0):
    quota = QuotaService(quota_store, limit=3, timeout_s=timeout_s)
    entitlements = EntitlementService(entitlement_store, timeout_s=timeout_s, clock=clock)
    return DownloadRegistrar(quota, entitlements, warning_threshold=1, clock=clock)


@pytest.fixture
def registrar(quota_store, entitlement_store, clock):
    return _registrar(quota_store, entitlement_store, clock)


class TestFreeQuota:
    """Free downloads under the per-epoch limit."""

    @pytest.mark.asyncio
    async def test_three_free_downloads_then_denied(self, registrar):
        remaining = []
        for i in range(3):
            result = await registrar.register_download("u1", "d1", "203.0.113.7", f"img/{i}.jpg")
            assert result.success is True
            assert result.unlimited is False
            remaining.append(result.remaining)

        assert remaining == [2, 1, 0]

        with pytest.raises(QuotaExceededError) as exc_info:
            await registrar.register_download("u1", "d1", "203.0.113.7", "img/3.jpg")

        assert exc_info.value.status_code == 403
        assert exc_info.value.details["remainingDownloads"] == 0
        assert exc_info.value.downloads_used == 3

    @pytest.mark.asyncio
    async def test_denial_does_not_mutate_records(self, registrar, quota_store):
        for i in range(3):
            await registrar.register_download("u1", "d1", "203.0.113.7", f"img/{i}.jpg")

        with pytest.raises(QuotaExceededError):
            await registrar.register_download("u1", "d1", "203.0.113.7", "img/3.jpg")

        records = await quota_store.get_records(["account:u1:2026", "device:d1:2026", "network:203.0.113.7:2026"])
        assert [r.downloads_used for r in records] == [3, 3, 3]
        assert [len(r.events) for r in records] == [3, 3, 3]

    @pytest.mark.asyncio
    async def test_exhausted_device_denies_fresh_account(self, registrar, quota_store):
        for i in range(3):
            await registrar.register_download("u0", "d9", "198.51.100.1", f"img/{i}.jpg")

        with pytest.raises(QuotaExceededError):
            await registrar.register_download("u2", "d9", "192.0.2.44", "img/new.jpg")

        [account] = await quota_store.get_records(["account:u2:2026"])
        assert account is None

    @pytest.mark.asyncio
    async def test_exhausted_network_denies_fresh_account(self, registrar):
        for i in range(3):
            await registrar.register_download("u0", None, "198.51.100.1", f"img/{i}.jpg")

        allowance = await registrar.check_allowance("u5", None, None, "198.51.100.1")

        assert allowance.can_download is False
        assert allowance.remaining == 0

    @pytest.mark.asyncio
    async def test_warning_on_last_free_download(self, registrar):
        first = await registrar.register_download("u1", None, "1.2.3.4", "img/0.jpg")
        second = await registrar.register_download("u1", None, "1.2.3.4", "img/1.jpg")
        third = await registrar.register_download("u1", None, "1.2.3.4", "img/2.jpg")

        assert first.warning is False
        assert second.warning is True
        assert third.warning is True

    @pytest.mark.asyncio
    async def test_concurrent_registrations_capped_at_limit(self, registrar):
        results = await asyncio.gather(
            *[registrar.register_download("u1", "d1", "1.2.3.4", f"img/{i}.jpg") for i in range(6)],
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        denials = [r for r in results if isinstance(r, QuotaExceededError)]
        assert len(successes) == 3
        assert len(denials) == 3

    @pytest.mark.asyncio
    async def test_new_epoch_resets_quota(self, registrar, clock):
        for i in range(3):
            await registrar.register_download("u1", None, "1.2.3.4", f"img/{i}.jpg")

        clock.now = clock.now.replace(year=2027, month=1, day=1)
        result = await registrar.register_download("u1", None, "1.2.3.4", "img/new-year.jpg")

        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_missing_account_rejected_before_any_write(self, registrar, quota_store):
        with pytest.raises(InvalidRequestError):
            await registrar.register_download(None, "d1", "1.2.3.4", "img/a.jpg")

        assert len(quota_store) == 0

    @pytest.mark.asyncio
    async def test_missing_image_rejected(self, registrar, quota_store):
        with pytest.raises(InvalidRequestError) as exc_info:
            await registrar.register_download("u1", "d1", "1.2.3.4", "  ")

        assert exc_info.value.field == "imageSrc"
        assert len(quota_store) == 0


class TestAllowance:
    """Advisory pre-flight check."""

    @pytest.mark.asyncio
    async def test_fresh_account(self, registrar):
        result = await registrar.check_allowance("u1", "d1", None, "1.2.3.4")

        assert result.can_download is True
        assert result.remaining == 3
        assert result.unlimited is False

    @pytest.mark.asyncio
    async def test_check_never_writes(self, registrar, quota_store):
        await registrar.check_allowance("u1", "d1", None, "1.2.3.4")
        assert len(quota_store) == 0

    @pytest.mark.asyncio
    async def test_missing_account_rejected(self, registrar):
        with pytest.raises(InvalidRequestError):
            await registrar.check_allowance("", "d1")

    @pytest.mark.asyncio
    async def test_unlimited_account(self, registrar):
        await registrar.entitlements.activate("u1", None, "pi_1", "stripe")

        result = await registrar.check_allowance("u1", None, None, "1.2.3.4")

        assert result.can_download is True
        assert result.remaining == UNLIMITED
        assert result.unlimited is True


class TestUnlimited:
    """Downloads under an entitlement grant."""

    @pytest.mark.asyncio
    async def test_unlimited_downloads_never_touch_quota(self, registrar, quota_store, clock):
        await registrar.entitlements.activate("u3", None, "pi_3", "stripe", validity=timedelta(days=365))

        for i in range(10):
            result = await registrar.register_download("u3", None, "1.2.3.4", f"img/{i}.jpg")
            assert result.unlimited is True
            assert result.remaining == UNLIMITED
            assert result.downloads_used == i + 1

        assert len(quota_store) == 0
        identity = build_identity_keys("u3", None, "1.2.3.4", now=clock.now)
        assert await registrar.quota.get_usage(identity) == 0

    @pytest.mark.asyncio
    async def test_activation_code_unlocks_on_new_device(self, registrar):
        grant = await registrar.entitlements.activate("u1", "d1", "pi_1", "paypal")

        result = await registrar.register_download(
            "fresh-user", "fresh-device", "5.6.7.8", "img/a.jpg", activation_code=grant.activation_code
        )

        assert result.unlimited is True

    @pytest.mark.asyncio
    async def test_expired_grant_falls_back_to_free_quota(self, registrar, clock):
        await registrar.entitlements.activate("u1", None, "pi_1", "stripe", validity=timedelta(days=1))
        clock.advance(days=2)

        result = await registrar.register_download("u1", None, "1.2.3.4", "img/a.jpg")

        assert result.unlimited is False
        assert result.remaining == 2
        await registrar.entitlements.aclose()

    @pytest.mark.asyncio
    async def test_exhausted_free_quota_then_payment(self, registrar):
        for i in range(3):
            await registrar.register_download("u1", None, "1.2.3.4", f"img/{i}.jpg")
        with pytest.raises(QuotaExceededError):
            await registrar.register_download("u1", None, "1.2.3.4", "img/3.jpg")

        await registrar.entitlements.activate("u1", None, "pi_1", "stripe")
        result = await registrar.register_download("u1", None, "1.2.3.4", "img/3.jpg")

        assert result.success is True
        assert result.unlimited is True


class TestHistory:
    """Per-account history reads."""

    @pytest.mark.asyncio
    async def test_blank_account_returns_defaults(self, registrar):
        result = await registrar.get_history("")

        assert result.downloads_used == 0
        assert result.remaining == 3
        assert result.unlimited is False
        assert result.history == []

    @pytest.mark.asyncio
    async def test_history_lists_free_downloads(self, registrar):
        await registrar.register_download("u1", None, "1.2.3.4", "img/a.jpg", image_title="Sunset")
        await registrar.register_download("u1", None, "1.2.3.4", "img/b.jpg")

        result = await registrar.get_history("u1")

        assert result.downloads_used == 2
        assert result.remaining == 1
        assert [e.image_ref for e in result.history] == ["img/a.jpg", "img/b.jpg"]
        assert result.history[0].image_title == "Sunset"

    @pytest.mark.asyncio
    async def test_history_merges_unlimited_downloads(self, registrar, clock):
        await registrar.register_download("u1", None, "1.2.3.4", "img/free.jpg")
        clock.advance(minutes=5)
        grant = await registrar.entitlements.activate("u1", None, "pi_1", "stripe")
        clock.advance(minutes=5)
        await registrar.register_download("u1", None, "1.2.3.4", "img/paid.jpg")

        result = await registrar.get_history("u1")

        assert result.unlimited is True
        assert result.remaining == UNLIMITED
        assert result.expires_at == grant.expires_at
        assert [(e.image_ref, e.unlimited) for e in result.history] == [
            ("img/free.jpg", False),
            ("img/paid.jpg", True),
        ]


class TestStoreFailures:
    """A failing store never turns into an allowed download."""

    @pytest.mark.asyncio
    async def test_slow_quota_store_fails_closed(self, entitlement_store, clock):
        registrar = _registrar(SlowQuotaStore(), entitlement_store, clock, timeout_s=0.05)

        with pytest.raises(StoreUnavailableError):
            await registrar.register_download("u1", None, "1.2.3.4", "img/a.jpg")

    @pytest.mark.asyncio
    async def test_slow_quota_store_fails_allowance(self, entitlement_store, clock):
        registrar = _registrar(SlowQuotaStore(), entitlement_store, clock, timeout_s=0.05)

        with pytest.raises(StoreUnavailableError):
            await registrar.check_allowance("u1", None, None, "1.2.3.4")
