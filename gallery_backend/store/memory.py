"""In-memory quota and entitlement store implementations.

These are per-process and should only be used when running a single worker.
For multi-worker deployments, use the Redis-based implementations.
"""

from __future__ import annotations

import copy
from asyncio import Lock
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Callable, Optional, Sequence

from gallery_backend.store import EntitlementStore, QuotaStore
from gallery_backend.store.models import (
    DownloadEvent,
    EntitlementGrant,
    IdentityKeys,
    QuotaIncrement,
    QuotaRecord,
)
from gallery_backend.store.reconcile import reconcile_usage


class InMemoryQuotaStore(QuotaStore):
    """Dict-backed quota records with a lock per account key.

    Callers always receive copies; stored records are only mutated inside
    ``increment_with_ceiling``.
    """

    def __init__(self):
        self._records: dict[str, QuotaRecord] = {}
        self._locks: dict[str, Lock] = {}

    def _lock_for(self, key: str) -> Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = Lock()
            self._locks[key] = lock
        return lock

    async def get_records(self, keys: Sequence[str]) -> list[Optional[QuotaRecord]]:
        return [copy.deepcopy(self._records.get(key)) for key in keys]

    async def increment_with_ceiling(
        self, identity: IdentityKeys, event: DownloadEvent, ceiling: int
    ) -> QuotaIncrement:
        keys = identity.present()
        async with self._lock_for(identity.account):
            usage = reconcile_usage(self._records.get(key) for key in keys)
            if usage >= ceiling:
                return QuotaIncrement(applied=False, usage=usage)

            for key in keys:
                record = self._records.get(key)
                if record is None:
                    record = QuotaRecord.new(key, event.timestamp)
                    self._records[key] = record
                record.record(copy.copy(event))

            return QuotaIncrement(
                applied=True,
                usage=reconcile_usage(self._records[key] for key in keys),
            )

    async def iter_records(self) -> AsyncIterator[QuotaRecord]:
        for record in list(self._records.values()):
            yield copy.deepcopy(record)

    async def delete_if_stale(self, key: str, cutoff: datetime) -> bool:
        async with self._lock_for(key):
            record = self._records.get(key)
            if record is None or record.last_seen >= cutoff:
                return False
            del self._records[key]
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
        return True

    def __len__(self) -> int:
        return len(self._records)


@dataclass
class _AccountLock:
    lock: Lock = field(default_factory=Lock)
    users: int = 0


class InMemoryEntitlementStore(EntitlementStore):
    """One dict of grants plus one dict of index entries.

    Writes for a grant run under a lock keyed by its account id, so the
    grant document and its index entries always change together. A lock is
    kept only while its account has a grant or a caller is using it.
    """

    def __init__(self):
        self._grants: dict[str, EntitlementGrant] = {}
        # (kind, value) -> grant_id
        self._index: dict[tuple[str, str], str] = {}
        self._locks: dict[str, _AccountLock] = {}

    @asynccontextmanager
    async def _account_lock(self, account_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(account_id)
        if entry is None:
            entry = self._locks[account_id] = _AccountLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and ("account", account_id) not in self._index:
                del self._locks[account_id]

    def _drop(self, grant: EntitlementGrant) -> None:
        self._grants.pop(grant.grant_id, None)
        for entry in grant.index_entries():
            if self._index.get(entry) == grant.grant_id:
                del self._index[entry]

    async def get_by_index(self, kind: str, value: str) -> Optional[EntitlementGrant]:
        grant_id = self._index.get((kind, value))
        if grant_id is None:
            return None
        return copy.deepcopy(self._grants.get(grant_id))

    async def put_grant(self, grant: EntitlementGrant) -> Optional[EntitlementGrant]:
        async with self._account_lock(grant.account_id):
            replaced = None
            previous_id = self._index.get(("account", grant.account_id))
            if previous_id is not None:
                replaced = self._grants.get(previous_id)
                if replaced is not None:
                    self._drop(replaced)

            stored = copy.deepcopy(grant)
            self._grants[stored.grant_id] = stored
            for entry in stored.index_entries():
                self._index[entry] = stored.grant_id
            return replaced

    async def update_grant(
        self, grant_id: str, mutate: Callable[[EntitlementGrant], None]
    ) -> Optional[EntitlementGrant]:
        current = self._grants.get(grant_id)
        if current is None:
            return None
        async with self._account_lock(current.account_id):
            # Re-read under the lock: a re-activation may have replaced it.
            current = self._grants.get(grant_id)
            if current is None:
                return None
            mutate(current)
            return copy.deepcopy(current)

    async def delete_grant(self, grant_id: str, *, expired_at: Optional[datetime] = None) -> bool:
        current = self._grants.get(grant_id)
        if current is None:
            return False
        async with self._account_lock(current.account_id):
            current = self._grants.get(grant_id)
            if current is None:
                return False
            if expired_at is not None and current.expires_at > expired_at:
                return False
            self._drop(current)
            return True

    async def iter_grants(self) -> AsyncIterator[EntitlementGrant]:
        for grant in list(self._grants.values()):
            yield copy.deepcopy(grant)

    def __len__(self) -> int:
        return len(self._grants)
