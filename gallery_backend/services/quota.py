"""Free-download quota service."""

from __future__ import annotations

from typing import Sequence

from gallery_backend.core.exceptions import QuotaExceededError
from gallery_backend.core.logging import get_logger
from gallery_backend.store import QuotaStore, run_store_call
from gallery_backend.store.models import DownloadEvent, IdentityKeys, QuotaRecord
from gallery_backend.store.reconcile import reconcile_usage

logger = get_logger(__name__)


class QuotaService:
    """Reads reconciled usage and registers free downloads."""

    def __init__(self, store: QuotaStore, *, limit: int = 3, timeout_s: float = 2.0):
        self.store = store
        self.limit = limit
        self.timeout_s = timeout_s

    async def get_records(self, keys: Sequence[str]) -> list[QuotaRecord | None]:
        return await run_store_call(
            self.store.get_records(keys),
            operation="quota.get_records",
            timeout_s=self.timeout_s,
        )

    async def get_usage(self, identity: IdentityKeys) -> int:
        """Effective downloads used: the maximum across present dimensions."""
        return reconcile_usage(await self.get_records(identity.present()))

    async def register_download(self, identity: IdentityKeys, event: DownloadEvent) -> int:
        """Record a free download and return the new usage.

        The ceiling check and the increment are one atomic store operation,
        so a stale advisory check cannot push usage past the limit.

        Raises:
            QuotaExceededError: usage had already reached the limit.
            StoreUnavailableError: the store timed out or failed.
        """
        result = await run_store_call(
            self.store.increment_with_ceiling(identity, event, self.limit),
            operation="quota.increment",
            timeout_s=self.timeout_s,
        )
        if not result.applied:
            logger.info(
                "Free download quota exceeded",
                data={"account_key": identity.account, "downloads_used": result.usage},
            )
            raise QuotaExceededError(downloads_used=result.usage, limit=self.limit)

        logger.info(
            "Free download registered",
            data={
                "account_key": identity.account,
                "image_ref": event.image_ref,
                "downloads_used": result.usage,
            },
        )
        return result.usage
