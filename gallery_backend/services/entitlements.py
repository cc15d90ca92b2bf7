"""Unlimited-access entitlement service.

Resolves, creates and records usage against entitlement grants. A grant is
created only by the payment collaborator's activation call and is reachable
by account id, device id, payment id or activation code.

Lookup priority in ``resolve``:
1. activation code - survives cleared cookies and new devices
2. account id
3. device id

An expired grant is never returned. Resolution continues with the next key
and the expired grant is deleted in the background.
"""

from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Callable, Iterable, Optional

from gallery_backend.core.exceptions import EntitlementExpiredError, InvalidRequestError
from gallery_backend.core.logging import get_logger
from gallery_backend.store import EntitlementStore, run_store_call
from gallery_backend.store.models import DownloadEvent, EntitlementGrant

logger = get_logger(__name__)

_CODE_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def generate_activation_code() -> str:
    """Return a new code like ``9F2C-41AB-07DE-B3C8``."""
    raw = secrets.token_hex(8).upper()
    return "-".join(raw[i:i + 4] for i in range(0, len(raw), 4))


class EntitlementService:
    """Resolver and writer for entitlement grants."""

    def __init__(
        self,
        store: EntitlementStore,
        *,
        timeout_s: float = 2.0,
        default_validity: timedelta = timedelta(days=365),
        max_validity: timedelta = timedelta(days=3650),
        default_features: Iterable[str] = ("unlimited_downloads",),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.timeout_s = timeout_s
        self.default_validity = default_validity
        self.max_validity = max_validity
        self.default_features = list(default_features)
        self._clock = clock
        self._pending_deletes: set[asyncio.Task] = set()

    async def _call(self, awaitable, operation: str):
        return await run_store_call(awaitable, operation=operation, timeout_s=self.timeout_s)

    def _check_current(self, grant: EntitlementGrant, now: datetime) -> EntitlementGrant:
        if grant.is_expired(now):
            raise EntitlementExpiredError(grant.grant_id, grant.expires_at)
        return grant

    def _schedule_delete(self, grant: EntitlementGrant, now: datetime) -> None:
        task = asyncio.create_task(
            self._delete_expired(grant.grant_id, now),
            name=f"entitlement-expire-{grant.grant_id}",
        )
        self._pending_deletes.add(task)
        task.add_done_callback(self._pending_deletes.discard)

    async def _delete_expired(self, grant_id: str, now: datetime) -> None:
        try:
            deleted = await self._call(
                self.store.delete_grant(grant_id, expired_at=now),
                "entitlement.delete_expired",
            )
        except Exception as exc:
            # The sweeper removes it on its next run.
            logger.warning(
                "Expired grant deletion failed",
                data={"grant_id": grant_id, "error": str(exc)},
            )
            return
        if deleted:
            logger.info("Expired grant removed", data={"grant_id": grant_id})

    async def resolve(
        self,
        account_id: Optional[str] = None,
        device_id: Optional[str] = None,
        activation_code: Optional[str] = None,
    ) -> Optional[EntitlementGrant]:
        """Return the first current grant found, trying code, account, device.

        Raises:
            StoreUnavailableError: the store timed out or failed. A store
                failure never resolves to a grant.
        """
        now = self._clock()
        lookups = [
            ("code", (_clean(activation_code) or "").upper() or None),
            ("account", _clean(account_id)),
            ("device", _clean(device_id)),
        ]
        seen: set[str] = set()
        for kind, value in lookups:
            if value is None:
                continue
            grant = await self._call(self.store.get_by_index(kind, value), f"entitlement.get_by_{kind}")
            if grant is None or grant.grant_id in seen:
                continue
            try:
                return self._check_current(grant, now)
            except EntitlementExpiredError:
                seen.add(grant.grant_id)
                self._schedule_delete(grant, now)
        return None

    async def activate(
        self,
        account_id: Optional[str],
        device_id: Optional[str],
        payment_id: Optional[str],
        payment_method: Optional[str],
        features: Optional[Iterable[str]] = None,
        validity: Optional[timedelta] = None,
    ) -> EntitlementGrant:
        """Create the account's current grant, replacing any previous one.

        Raises:
            InvalidRequestError: a required field is missing or the validity
                is not positive or exceeds the configured maximum.
            StoreUnavailableError: the store timed out or failed.
        """
        account = _clean(account_id)
        if account is None:
            raise InvalidRequestError("userId is required", field="userId")
        payment = _clean(payment_id)
        if payment is None:
            raise InvalidRequestError("paymentId is required", field="paymentId")
        method = _clean(payment_method)
        if method is None:
            raise InvalidRequestError("paymentMethod is required", field="paymentMethod")
        validity = self.default_validity if validity is None else validity
        if validity <= timedelta(0):
            raise InvalidRequestError("validity must be positive", field="validityDays")
        if validity > self.max_validity:
            raise InvalidRequestError(
                f"validity must not exceed {self.max_validity.days} days", field="validityDays"
            )

        issued_at = self._clock()
        try:
            expires_at = issued_at + validity
        except OverflowError as exc:
            raise InvalidRequestError("validity is out of range", field="validityDays") from exc

        code = await self._unused_activation_code()
        grant = EntitlementGrant(
            grant_id=uuid.uuid4().hex,
            account_id=account,
            device_id=_clean(device_id),
            payment_id=payment,
            payment_method=method.lower(),
            activation_code=code,
            issued_at=issued_at,
            expires_at=expires_at,
            features=list(features) if features else list(self.default_features),
        )

        replaced = await self._call(self.store.put_grant(grant), "entitlement.put")
        logger.info(
            "Entitlement activated",
            data={
                "account_id": account,
                "payment_method": grant.payment_method,
                "payment_id": payment,
                "activation_code": code,
                "expires_at": grant.expires_at.isoformat(),
                "replaced_grant_id": replaced.grant_id if replaced else None,
            },
        )
        return grant

    async def _unused_activation_code(self) -> str:
        for _ in range(_CODE_ATTEMPTS):
            code = generate_activation_code()
            existing = await self._call(self.store.get_by_index("code", code), "entitlement.get_by_code")
            if existing is None:
                return code
        raise RuntimeError("Could not generate a unique activation code")

    async def register_unlimited_download(
        self, grant: EntitlementGrant, event: DownloadEvent
    ) -> EntitlementGrant:
        """Record an unlimited download on the grant.

        Counter, log and last-download time change in one atomic store
        update, so concurrent downloads do not lose increments. If the grant
        was replaced since it was resolved, the account's current grant is
        updated instead.
        """
        event = replace(event, unlimited=True)
        updated = await self._call(
            self.store.update_grant(grant.grant_id, lambda g: g.record(event)),
            "entitlement.update",
        )
        if updated is None:
            current = await self.resolve(account_id=grant.account_id)
            if current is None:
                raise EntitlementExpiredError(grant.grant_id, grant.expires_at)
            updated = await self._call(
                self.store.update_grant(current.grant_id, lambda g: g.record(event)),
                "entitlement.update",
            )
            if updated is None:
                raise EntitlementExpiredError(current.grant_id, current.expires_at)
        return updated

    async def aclose(self) -> None:
        """Wait for background deletions started by ``resolve``."""
        if self._pending_deletes:
            await asyncio.gather(*self._pending_deletes, return_exceptions=True)
