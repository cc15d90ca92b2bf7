"""Download registrar: the request-level allow/deny decision.

Per request:

    Start -> EntitlementCheck -> UnlimitedGranted -> Recorded
                              -> QuotaCheck -> Denied
                                            -> Allowed -> Recorded

``check_allowance`` is advisory, for client pre-flight UX. Only
``register_download`` enforces the quota, via the store's atomic
increment-with-ceiling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, Optional, Union

from gallery_backend.core.exceptions import (
    EntitlementExpiredError,
    InvalidRequestError,
    QuotaExceededError,
)
from gallery_backend.core.logging import get_logger
from gallery_backend.services.entitlements import EntitlementService
from gallery_backend.services.identity import build_identity_keys
from gallery_backend.services.quota import QuotaService
from gallery_backend.store.models import DownloadEvent, EntitlementGrant

logger = get_logger(__name__)

UNLIMITED = "unlimited"

Remaining = Union[int, str]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class AllowanceResult:
    can_download: bool
    remaining: Remaining
    unlimited: bool
    downloads_used: int = 0


@dataclass(frozen=True)
class DownloadResult:
    success: bool
    remaining: Remaining
    downloads_used: int
    unlimited: bool
    warning: bool = False


@dataclass(frozen=True)
class HistoryResult:
    downloads_used: int
    remaining: Remaining
    unlimited: bool
    expires_at: Optional[datetime] = None
    history: list[DownloadEvent] = field(default_factory=list)


class DownloadRegistrar:
    """Combines entitlement resolution and quota enforcement."""

    def __init__(
        self,
        quota: QuotaService,
        entitlements: EntitlementService,
        *,
        warning_threshold: int = 1,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.quota = quota
        self.entitlements = entitlements
        self.warning_threshold = warning_threshold
        self._clock = clock

    @property
    def limit(self) -> int:
        return self.quota.limit

    def _remaining(self, used: int) -> int:
        return max(self.limit - used, 0)

    async def check_allowance(
        self,
        account_id: Optional[str],
        device_id: Optional[str] = None,
        activation_code: Optional[str] = None,
        network_address: Optional[str] = None,
    ) -> AllowanceResult:
        """Report whether a download would currently be allowed. No writes."""
        identity = build_identity_keys(account_id, device_id, network_address, now=self._clock())

        grant = await self.entitlements.resolve(account_id, device_id, activation_code)
        if grant is not None:
            return AllowanceResult(can_download=True, remaining=UNLIMITED, unlimited=True)

        used = await self.quota.get_usage(identity)
        return AllowanceResult(
            can_download=used < self.limit,
            remaining=self._remaining(used),
            unlimited=False,
            downloads_used=used,
        )

    async def register_download(
        self,
        account_id: Optional[str],
        device_id: Optional[str],
        network_address: Optional[str],
        image_ref: Optional[str],
        image_title: Optional[str] = None,
        user_agent: Optional[str] = None,
        activation_code: Optional[str] = None,
    ) -> DownloadResult:
        """Record one download, unlimited if a grant applies, else free.

        Raises:
            InvalidRequestError: account id or image reference missing.
            QuotaExceededError: free downloads exhausted and no grant applies.
            StoreUnavailableError: the store timed out or failed.
        """
        now = self._clock()
        identity = build_identity_keys(account_id, device_id, network_address, now=now)
        if not image_ref or not str(image_ref).strip():
            raise InvalidRequestError("imageSrc is required", field="imageSrc")

        event = DownloadEvent(
            image_ref=str(image_ref).strip(),
            image_title=image_title,
            timestamp=now,
            network_address=identity.network_address,
            user_agent=user_agent,
        )

        # EntitlementCheck
        grant = await self.entitlements.resolve(account_id, device_id, activation_code)
        if grant is not None:
            try:
                updated = await self.entitlements.register_unlimited_download(grant, event)
            except EntitlementExpiredError:
                # Expired between resolve and record; fall through to quota.
                pass
            else:
                return DownloadResult(
                    success=True,
                    remaining=UNLIMITED,
                    downloads_used=updated.downloads_count,
                    unlimited=True,
                )

        # QuotaCheck (advisory, no mutation on denial)
        used = await self.quota.get_usage(identity)
        if used >= self.limit:
            logger.info(
                "Download denied",
                data={"account_key": identity.account, "downloads_used": used},
            )
            raise QuotaExceededError(downloads_used=used, limit=self.limit)

        # Allowed: authoritative atomic re-check and increment
        new_usage = await self.quota.register_download(identity, event)
        remaining = self._remaining(new_usage)
        return DownloadResult(
            success=True,
            remaining=remaining,
            downloads_used=new_usage,
            unlimited=False,
            warning=remaining <= self.warning_threshold,
        )

    async def get_history(self, account_id: Optional[str]) -> HistoryResult:
        """Usage and download history for an account in the current epoch.

        Unknown or blank accounts return zeroed defaults.
        """
        account = (account_id or "").strip()
        if not account:
            return HistoryResult(downloads_used=0, remaining=self.limit, unlimited=False)

        identity = build_identity_keys(account, None, None, now=self._clock())
        [record] = await self.quota.get_records([identity.account])
        grant: Optional[EntitlementGrant] = await self.entitlements.resolve(account_id=account)

        history = list(record.events) if record is not None else []
        used = record.downloads_used if record is not None else 0
        if grant is not None:
            history.extend(grant.download_log)
            history.sort(key=lambda e: e.timestamp)
            return HistoryResult(
                downloads_used=used,
                remaining=UNLIMITED,
                unlimited=True,
                expires_at=grant.expires_at,
                history=history,
            )
        return HistoryResult(
            downloads_used=used,
            remaining=self._remaining(used),
            unlimited=False,
            history=history,
        )

