"""Factory functions for quota and entitlement stores.

This module provides factory functions that return the appropriate store
implementation based on the configured backend (memory|redis).

Usage:
    from gallery_backend.store.factory import get_stores_from_settings

    quota_store, entitlement_store = get_stores_from_settings(settings)
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Iterator, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from gallery_backend.config.settings import Settings
from gallery_backend.store import EntitlementStore, QuotaStore, StoreBackendError
from gallery_backend.store.memory import InMemoryEntitlementStore, InMemoryQuotaStore
from gallery_backend.store.models import (
    DownloadEvent,
    EntitlementGrant,
    IdentityKeys,
    QuotaIncrement,
    QuotaRecord,
    dimension_of,
)
from gallery_backend.store.reconcile import reconcile_usage


def get_quota_store(
    backend: str = "memory",
    *,
    redis_url: str = "",
    key_prefix: str = "gallery:",
    retention_days: Optional[dict[str, int]] = None,
) -> QuotaStore:
    """Get a quota store implementation.

    Args:
        backend: Backend type ("memory" or "redis")
        redis_url: Redis connection URL (required for redis backend)
        key_prefix: Prefix for every Redis key
        retention_days: Per-dimension retention, used as Redis key TTLs

    Raises:
        ValueError: If redis backend selected but redis_url not provided
    """
    if backend == "memory":
        return InMemoryQuotaStore()

    if backend == "redis":
        if not redis_url:
            raise ValueError("redis_url is required when store_backend=redis")
        return _RedisQuotaStore(
            redis_url=redis_url,
            key_prefix=key_prefix,
            retention_days=retention_days,
        )

    raise ValueError(f"Unknown store_backend: {backend}. Use 'memory' or 'redis'")


def get_entitlement_store(
    backend: str = "memory",
    *,
    redis_url: str = "",
    key_prefix: str = "gallery:",
) -> EntitlementStore:
    """Get an entitlement store implementation.

    Raises:
        ValueError: If redis backend selected but redis_url not provided
    """
    if backend == "memory":
        return InMemoryEntitlementStore()

    if backend == "redis":
        if not redis_url:
            raise ValueError("redis_url is required when store_backend=redis")
        return _RedisEntitlementStore(redis_url=redis_url, key_prefix=key_prefix)

    raise ValueError(f"Unknown store_backend: {backend}. Use 'memory' or 'redis'")


def get_stores_from_settings(settings: Settings) -> tuple[QuotaStore, EntitlementStore]:
    """Get quota and entitlement stores from settings.

    This is a convenience function for app startup.
    """
    quota_store = get_quota_store(
        settings.store_backend,
        redis_url=settings.redis_url,
        key_prefix=settings.redis_key_prefix,
        retention_days=settings.retention_days_by_dimension,
    )
    entitlement_store = get_entitlement_store(
        settings.store_backend,
        redis_url=settings.redis_url,
        key_prefix=settings.redis_key_prefix,
    )
    return quota_store, entitlement_store


async def close_stores(*stores: object) -> None:
    """Release backend connections held by the given stores."""
    for store in stores:
        aclose = getattr(store, "aclose", None)
        if aclose is not None:
            await aclose()


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StoreBackendError(f"{type(exc).__name__}: {exc}") from exc


class _RedisClientMixin:
    _redis_url: str

    async def _get_client(self) -> redis.Redis:
        """Get or create Redis client (lazy initialization)."""
        if not hasattr(self, "_client"):
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def aclose(self) -> None:
        if hasattr(self, "_client"):
            await self._client.aclose()
            del self._client


class _RedisQuotaStore(_RedisClientMixin, QuotaStore):
    """Redis-based quota records using optimistic WATCH/MULTI transactions.

    Each record is a JSON document at ``{prefix}quota:{key}``. Registration
    watches every dimension key of the request, reconciles, and only commits
    if none of them changed in the meantime; otherwise it retries. Keys carry
    a TTL equal to their dimension's retention window.
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "gallery:",
        retention_days: Optional[dict[str, int]] = None,
    ):
        self._redis_url = redis_url
        self._prefix = f"{key_prefix}quota:"
        self._retention_days = retention_days or {}

    def _rkey(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _ttl_seconds(self, key: str) -> Optional[int]:
        days = self._retention_days.get(dimension_of(key))
        return int(timedelta(days=days).total_seconds()) if days else None

    @staticmethod
    def _load(raw: Optional[str]) -> Optional[QuotaRecord]:
        return QuotaRecord.from_dict(json.loads(raw)) if raw else None

    async def get_records(self, keys: Sequence[str]) -> list[Optional[QuotaRecord]]:
        client = await self._get_client()
        with _translate_errors():
            raw = await client.mget([self._rkey(k) for k in keys])
        return [self._load(r) for r in raw]

    async def increment_with_ceiling(
        self, identity: IdentityKeys, event: DownloadEvent, ceiling: int
    ) -> QuotaIncrement:
        keys = identity.present()
        rkeys = [self._rkey(k) for k in keys]
        client = await self._get_client()

        with _translate_errors():
            async with client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(*rkeys)
                        records = [self._load(r) for r in await pipe.mget(rkeys)]
                        usage = reconcile_usage(records)
                        if usage >= ceiling:
                            return QuotaIncrement(applied=False, usage=usage)

                        updated = []
                        for key, record in zip(keys, records):
                            if record is None:
                                record = QuotaRecord.new(key, event.timestamp)
                            record.record(event)
                            updated.append(record)

                        pipe.multi()
                        for rkey, record in zip(rkeys, updated):
                            pipe.set(
                                rkey,
                                json.dumps(record.to_dict()),
                                ex=self._ttl_seconds(record.key),
                            )
                        await pipe.execute()
                        return QuotaIncrement(applied=True, usage=reconcile_usage(updated))
                    except WatchError:
                        continue

    async def iter_records(self) -> AsyncIterator[QuotaRecord]:
        client = await self._get_client()
        with _translate_errors():
            async for rkey in client.scan_iter(match=f"{self._prefix}*", count=500):
                record = self._load(await client.get(rkey))
                if record is not None:
                    yield record

    async def delete_if_stale(self, key: str, cutoff: datetime) -> bool:
        rkey = self._rkey(key)
        client = await self._get_client()
        with _translate_errors():
            async with client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(rkey)
                    record = self._load(await pipe.get(rkey))
                    if record is None or record.last_seen >= cutoff:
                        return False
                    pipe.multi()
                    pipe.delete(rkey)
                    await pipe.execute()
                    return True
                except WatchError:
                    # Touched while we looked at it, so it is not stale.
                    return False


class _RedisEntitlementStore(_RedisClientMixin, EntitlementStore):
    """Redis-based grants: one JSON document per grant plus index keys.

    Layout:
    - ``{prefix}grant:{grant_id}`` -> grant JSON
    - ``{prefix}grant-index:{kind}:{value}`` -> grant_id

    Every change to a grant and its index entries is one MULTI/EXEC guarded
    by WATCH on the keys it read.
    """

    def __init__(self, redis_url: str, key_prefix: str = "gallery:"):
        self._redis_url = redis_url
        self._doc_prefix = f"{key_prefix}grant:"
        self._index_prefix = f"{key_prefix}grant-index:"

    def _doc(self, grant_id: str) -> str:
        return f"{self._doc_prefix}{grant_id}"

    def _idx(self, kind: str, value: str) -> str:
        return f"{self._index_prefix}{kind}:{value}"

    @staticmethod
    def _load(raw: Optional[str]) -> Optional[EntitlementGrant]:
        return EntitlementGrant.from_dict(json.loads(raw)) if raw else None

    async def _entries_pointing_at(self, pipe, grant: EntitlementGrant) -> list[str]:
        entries = [self._idx(kind, value) for kind, value in grant.index_entries()]
        await pipe.watch(*entries)
        current = await pipe.mget(entries)
        return [e for e, gid in zip(entries, current) if gid == grant.grant_id]

    async def get_by_index(self, kind: str, value: str) -> Optional[EntitlementGrant]:
        client = await self._get_client()
        with _translate_errors():
            grant_id = await client.get(self._idx(kind, value))
            if not grant_id:
                return None
            return self._load(await client.get(self._doc(grant_id)))

    async def put_grant(self, grant: EntitlementGrant) -> Optional[EntitlementGrant]:
        account_idx = self._idx("account", grant.account_id)
        client = await self._get_client()

        with _translate_errors():
            async with client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(account_idx)
                        previous_id = await pipe.get(account_idx)
                        replaced = None
                        stale_keys: list[str] = []
                        if previous_id:
                            await pipe.watch(self._doc(previous_id))
                            replaced = self._load(await pipe.get(self._doc(previous_id)))
                            if replaced is not None:
                                stale_keys = await self._entries_pointing_at(pipe, replaced)

                        pipe.multi()
                        if replaced is not None:
                            pipe.delete(self._doc(replaced.grant_id), *stale_keys)
                        pipe.set(self._doc(grant.grant_id), json.dumps(grant.to_dict()))
                        for kind, value in grant.index_entries():
                            pipe.set(self._idx(kind, value), grant.grant_id)
                        await pipe.execute()
                        return replaced
                    except WatchError:
                        continue

    async def update_grant(
        self, grant_id: str, mutate: Callable[[EntitlementGrant], None]
    ) -> Optional[EntitlementGrant]:
        doc_key = self._doc(grant_id)
        client = await self._get_client()

        with _translate_errors():
            async with client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(doc_key)
                        grant = self._load(await pipe.get(doc_key))
                        if grant is None:
                            return None
                        mutate(grant)
                        pipe.multi()
                        pipe.set(doc_key, json.dumps(grant.to_dict()))
                        await pipe.execute()
                        return grant
                    except WatchError:
                        continue

    async def delete_grant(self, grant_id: str, *, expired_at: Optional[datetime] = None) -> bool:
        doc_key = self._doc(grant_id)
        client = await self._get_client()

        with _translate_errors():
            async with client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(doc_key)
                        grant = self._load(await pipe.get(doc_key))
                        if grant is None:
                            return False
                        if expired_at is not None and grant.expires_at > expired_at:
                            return False
                        stale_keys = await self._entries_pointing_at(pipe, grant)
                        pipe.multi()
                        pipe.delete(doc_key, *stale_keys)
                        await pipe.execute()
                        return True
                    except WatchError:
                        continue

    async def iter_grants(self) -> AsyncIterator[EntitlementGrant]:
        client = await self._get_client()
        with _translate_errors():
            async for doc_key in client.scan_iter(match=f"{self._doc_prefix}*", count=500):
                grant = self._load(await client.get(doc_key))
                if grant is not None:
                    yield grant
