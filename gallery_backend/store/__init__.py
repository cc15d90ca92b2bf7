"""Quota and entitlement store abstractions.

This module defines the access pattern the engine needs from its key-value
collaborator. Backends are pluggable: in-memory (single worker) or Redis
(shared across workers) without changing service logic.

Usage:
    from gallery_backend.store.factory import get_stores_from_settings

    # In app lifespan:
    quota_store, entitlement_store = get_stores_from_settings(settings)

    # In services (every call bounded by the store timeout):
    records = await run_store_call(
        quota_store.get_records(keys), operation="quota.get", timeout_s=2.0
    )
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Sequence, TypeVar

from gallery_backend.core.exceptions import StoreUnavailableError
from gallery_backend.core.logging import get_logger
from gallery_backend.store.models import (
    DownloadEvent,
    EntitlementGrant,
    IdentityKeys,
    QuotaIncrement,
    QuotaRecord,
)

__all__ = [
    "EntitlementStore",
    "QuotaStore",
    "StoreBackendError",
    "run_store_call",
]

logger = get_logger(__name__)

T = TypeVar("T")


class StoreBackendError(Exception):
    """Raised by a backend when its collaborator fails (connection, protocol)."""


class QuotaStore(Protocol):
    """Protocol for quota record backends.

    One QuotaRecord per ``{dimension}:{identifier}:{epoch}`` key. The only
    write is ``increment_with_ceiling``, which must be atomic with respect to
    its own read of the request's records.
    """

    async def get_records(self, keys: Sequence[str]) -> list[Optional[QuotaRecord]]:
        """Return the record for each key (None where absent), in key order."""
        ...

    async def increment_with_ceiling(
        self, identity: IdentityKeys, event: DownloadEvent, ceiling: int
    ) -> QuotaIncrement:
        """Atomically reconcile usage over ``identity`` and record ``event``.

        If the reconciled usage is already >= ``ceiling`` nothing is written.
        Otherwise every present dimension record (created if missing) is
        incremented and gets the event appended. Concurrent calls for the
        same account are serialized.
        """
        ...

    def iter_records(self) -> AsyncIterator[QuotaRecord]:
        """Yield a snapshot of every stored record (for sweeping)."""
        ...

    async def delete_if_stale(self, key: str, cutoff: datetime) -> bool:
        """Delete ``key`` if its last-seen is still older than ``cutoff``."""
        ...


class EntitlementStore(Protocol):
    """Protocol for entitlement grant backends.

    Grants are stored once and reached through an index of
    (kind, value) -> grant id entries, kinds being account, device, payment
    and code. Index entries and the grant document change together.
    """

    async def get_by_index(self, kind: str, value: str) -> Optional[EntitlementGrant]:
        ...

    async def put_grant(self, grant: EntitlementGrant) -> Optional[EntitlementGrant]:
        """Store ``grant`` as the account's current grant.

        Any previous grant for the same account is removed along with the
        index entries that still point at it. Returns the replaced grant.
        """
        ...

    async def update_grant(
        self, grant_id: str, mutate: Callable[[EntitlementGrant], None]
    ) -> Optional[EntitlementGrant]:
        """Apply ``mutate`` to the stored grant atomically and persist it.

        Returns the updated grant, or None when the grant no longer exists.
        """
        ...

    async def delete_grant(self, grant_id: str, *, expired_at: Optional[datetime] = None) -> bool:
        """Delete a grant and its index entries.

        With ``expired_at`` the grant is only deleted if its expiry is at or
        before that instant.
        """
        ...

    def iter_grants(self) -> AsyncIterator[EntitlementGrant]:
        ...


async def run_store_call(
    awaitable: Awaitable[T],
    *,
    operation: str,
    timeout_s: float,
) -> T:
    """Await a store call, converting timeouts and backend failures.

    Raises:
        StoreUnavailableError: the call timed out or the backend failed.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        logger.error("Store call timed out", data={"operation": operation, "timeout_s": timeout_s})
        raise StoreUnavailableError(operation, "Store timed out") from exc
    except (StoreBackendError, ConnectionError) as exc:
        logger.error("Store call failed", data={"operation": operation, "error": str(exc)})
        raise StoreUnavailableError(operation) from exc
