"""Periodic eviction of stale quota records and expired grants."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional

from gallery_backend.core.logging import get_logger
from gallery_backend.store import EntitlementStore, QuotaStore, run_store_call

logger = get_logger(__name__)

DEFAULT_RETENTION_DAYS = {"account": 30, "device": 30, "network": 7}


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class SweepStats:
    started_at: str
    completed_at: Optional[str] = None
    quota_records_scanned: int = 0
    quota_records_deleted: int = 0
    grants_scanned: int = 0
    grants_deleted: int = 0
    errors: int = 0


class EvictionSweeper:
    """Deletes quota records past retention and expired entitlement grants.

    Runs as its own asyncio task so request handling never waits on a sweep.
    A failed run is logged and retried on the next period.
    """

    def __init__(
        self,
        quota_store: QuotaStore,
        entitlement_store: EntitlementStore,
        *,
        retention_days: Optional[dict[str, int]] = None,
        interval_seconds: int = 86400,
        timeout_s: float = 2.0,
        enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.quota_store = quota_store
        self.entitlement_store = entitlement_store
        self.retention_days = {**DEFAULT_RETENTION_DAYS, **(retention_days or {})}
        self.interval_seconds = interval_seconds
        self.timeout_s = timeout_s
        self.enabled = enabled
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self.last_stats: SweepStats | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if not self.enabled:
            return
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="eviction-sweeper")
        logger.info("Eviction sweeper started", data={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Eviction sweeper stopped")

    async def _run_loop(self) -> None:
        interval_seconds = max(60, int(self.interval_seconds))
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("Eviction sweep failed", data={"error": str(exc)}, exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> SweepStats:
        """Run one sweep over both stores and return what it did."""
        now = self._clock()
        stats = SweepStats(started_at=now.isoformat())

        try:
            await self._sweep_quota_records(now, stats)
        except Exception as exc:
            stats.errors += 1
            logger.error("Quota record sweep failed", data={"error": str(exc)}, exc_info=True)

        try:
            await self._sweep_grants(now, stats)
        except Exception as exc:
            stats.errors += 1
            logger.error("Entitlement sweep failed", data={"error": str(exc)}, exc_info=True)

        stats.completed_at = self._clock().isoformat()
        self.last_stats = stats
        logger.info("Eviction sweep finished", data=vars(stats))
        return stats

    async def _sweep_quota_records(self, now: datetime, stats: SweepStats) -> None:
        cutoffs = {
            dimension: now - timedelta(days=days)
            for dimension, days in self.retention_days.items()
        }
        async for record in self.quota_store.iter_records():
            stats.quota_records_scanned += 1
            cutoff = cutoffs.get(record.dimension)
            if cutoff is None or record.last_seen >= cutoff:
                continue
            deleted = await run_store_call(
                self.quota_store.delete_if_stale(record.key, cutoff),
                operation="sweep.quota_delete",
                timeout_s=self.timeout_s,
            )
            if deleted:
                stats.quota_records_deleted += 1

    async def _sweep_grants(self, now: datetime, stats: SweepStats) -> None:
        async for grant in self.entitlement_store.iter_grants():
            stats.grants_scanned += 1
            if not grant.is_expired(now):
                continue
            deleted = await run_store_call(
                self.entitlement_store.delete_grant(grant.grant_id, expired_at=now),
                operation="sweep.grant_delete",
                timeout_s=self.timeout_s,
            )
            if deleted:
                stats.grants_deleted += 1
