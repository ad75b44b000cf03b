"""Content-addressable cache for analysis results."""

import asyncio
import json
import logging
import math
import time
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from usagegate.cache.keys import CacheKeyBuilder
from usagegate.errors import StoreUnavailable
from usagegate.store.base import KeyValueStore

logger = logging.getLogger(__name__)

HITS_SUFFIX = ":hits"
SEEN_SUFFIX = ":seen"


def _utc(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


@dataclass
class CacheEntry:
    """
    A cached analysis result with metadata.

    Attributes:
        key: Content-addressed cache key
        payload: Analysis result (JSON-serializable)
        created_at: When the entry was written
        expires_at: Absolute expiry; reads never move it
        hit_count: Number of reads served from this entry
        last_accessed_at: Time of the most recent read, if any
    """

    key: str
    payload: Any
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0
    last_accessed_at: datetime | None = None

    def ttl_remaining(self, now: datetime) -> float:
        """Seconds left before the entry expires."""
        return max(0.0, (self.expires_at - now).total_seconds())

    def to_json(self) -> str:
        return json.dumps({
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        })

    @classmethod
    def from_json(cls, key: str, data: str) -> "CacheEntry":
        parsed = json.loads(data)
        return cls(
            key=key,
            payload=parsed["payload"],
            created_at=datetime.fromisoformat(parsed["created_at"]),
            expires_at=datetime.fromisoformat(parsed["expires_at"]),
        )


@dataclass
class CacheLookup:
    """Outcome of a cache read."""

    hit: bool
    """Whether a live entry was found."""

    key: str
    """Key that was looked up."""

    payload: Any = None
    """Cached payload on a hit."""

    cached_at: datetime | None = None
    """When the entry was written."""

    expires_at: datetime | None = None
    """Absolute expiry of the entry."""

    hit_count: int = 0
    """Reads served from this entry, this one included."""

    last_accessed_at: datetime | None = None
    """Previous read of this entry, if any."""

    degraded: bool = False
    """True when the store failed and the read was treated as a miss."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "hit": self.hit,
            "key": self.key,
            "payload": self.payload,
            "cached_at": self.cached_at.isoformat() if self.cached_at else None,
            "hit_count": self.hit_count,
            "degraded": self.degraded,
        }


@dataclass
class AnalysisCache:
    """
    Caches expensive analysis results under content-derived keys.

    Entries carry an absolute TTL: reading an entry never extends its
    life, which bounds staleness to the TTL chosen at write time.
    Hit counts and last-access times are updated by detached background
    tasks so bookkeeping never delays or fails a read. Any store fault
    on a read is a miss, and any store fault on a write is logged and
    dropped.
    """

    store: KeyValueStore
    key_builder: CacheKeyBuilder = field(default_factory=CacheKeyBuilder)
    default_ttl_seconds: int = 86400
    clock: Callable[[], float] = time.time

    _pending: set[asyncio.Task] = field(default_factory=set, init=False, repr=False)

    def compute_key(self, category: str, identity_fields: Mapping[str, Any]) -> str:
        """Derive the cache key for a subject (see ``CacheKeyBuilder``)."""
        return self.key_builder.compute_key(category, identity_fields)

    async def get(self, key: str) -> CacheLookup:
        """
        Read an entry.

        Args:
            key: Cache key from ``compute_key``

        Returns:
            CacheLookup; a miss when absent, expired, malformed or the
            store is unavailable
        """
        try:
            data, hits, seen = await self.store.get_many(
                [key, key + HITS_SUFFIX, key + SEEN_SUFFIX]
            )
        except StoreUnavailable as e:
            logger.warning(f"Cache read degraded to miss for {key}: {e}")
            return CacheLookup(hit=False, key=key, degraded=True)

        if data is None:
            logger.debug(f"Cache MISS: {key}")
            return CacheLookup(hit=False, key=key)

        try:
            entry = CacheEntry.from_json(key, data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding malformed cache entry {key}: {e}")
            return CacheLookup(hit=False, key=key)

        now = _utc(self.clock())
        if entry.expires_at <= now:
            logger.debug(f"Cache MISS (expired): {key}")
            return CacheLookup(hit=False, key=key)

        hit_count = _to_int(hits) + 1
        last_accessed = _parse_time(seen)
        self._spawn(self._record_hit(key, entry, now))

        logger.debug(f"Cache HIT: {key} (hits: {hit_count})")
        return CacheLookup(
            hit=True,
            key=key,
            payload=entry.payload,
            cached_at=entry.created_at,
            expires_at=entry.expires_at,
            hit_count=hit_count,
            last_accessed_at=last_accessed,
        )

    async def set(
        self,
        key: str,
        payload: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        """
        Write an entry, replacing any previous one for the key.

        Writing the payload a live entry already holds is a no-op: the
        entry keeps its creation time, expiry and hit bookkeeping. A
        different payload replaces the entry and starts its bookkeeping
        afresh.

        Returns:
            True if stored (or already present), False if the store
            rejected or was unavailable
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        if ttl <= 0:
            raise ValueError("cache entries require a positive TTL")

        created = self.clock()
        entry = CacheEntry(
            key=key,
            payload=payload,
            created_at=_utc(created),
            expires_at=_utc(created + ttl),
        )
        try:
            serialized = entry.to_json()
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot cache non-JSON payload for {key}: {e}")
            return False

        try:
            current = await self.store.get(key)
            if self._holds(key, current, payload):
                logger.debug(f"Cache SET skipped: {key} already holds this payload")
                return True
            await self.store.set(key, serialized, ttl_seconds=ttl)
            await self.store.delete(key + HITS_SUFFIX, key + SEEN_SUFFIX)
        except StoreUnavailable as e:
            logger.warning(f"Cache write dropped for {key}: {e}")
            return False

        logger.debug(f"Cache SET: {key} (TTL: {ttl}s)")
        return True

    def _holds(self, key: str, raw: str | None, payload: Any) -> bool:
        if raw is None:
            return False
        try:
            existing = CacheEntry.from_json(key, raw)
        except (ValueError, KeyError, TypeError):
            return False
        if existing.ttl_remaining(_utc(self.clock())) <= 0:
            return False
        # Compare as JSON so 1, 1.0 and True stay distinct
        return json.dumps(existing.payload, sort_keys=True) == json.dumps(payload, sort_keys=True)

    async def invalidate(self, prefix: str) -> int:
        """
        Delete every entry whose key starts with ``prefix``.

        Scans the whole keyspace; meant for rare administrative events
        such as a rule update invalidating a category, not for request
        handling.

        Returns:
            Number of keys removed (0 if the store is unavailable)
        """
        if not prefix.startswith(self.key_builder.prefix):
            prefix = f"{self.key_builder.prefix}{prefix}"

        try:
            keys = await self.store.scan(prefix)
            deleted = await self.store.delete(*keys) if keys else 0
        except StoreUnavailable as e:
            logger.warning(f"Cache invalidation of {prefix}* failed: {e}")
            return 0

        logger.info(f"Cache INVALIDATE: {prefix}* ({deleted} keys removed)")
        return deleted

    async def invalidate_category(self, category: str) -> int:
        """Delete every entry of a category."""
        return await self.invalidate(self.key_builder.category_prefix(category))

    async def lookup(self, category: str, identity_fields: Mapping[str, Any]) -> CacheLookup:
        """Derive the key for a subject and read it."""
        return await self.get(self.compute_key(category, identity_fields))

    async def store_result(
        self,
        category: str,
        identity_fields: Mapping[str, Any],
        payload: Any,
        ttl_seconds: int | None = None,
    ) -> str:
        """Cache a result for a subject and return its key."""
        key = self.compute_key(category, identity_fields)
        await self.set(key, payload, ttl_seconds)
        return key

    async def get_or_compute(
        self,
        category: str,
        identity_fields: Mapping[str, Any],
        compute: Callable[[], Awaitable[Any]] | Callable[[], Any],
        ttl_seconds: int | None = None,
    ) -> CacheLookup:
        """
        Return the cached result for a subject, computing it on a miss.

        Exceptions from ``compute`` propagate and nothing is cached.

        Returns:
            CacheLookup; ``hit`` is False when the payload was computed
        """
        key = self.compute_key(category, identity_fields)
        cached = await self.get(key)
        if cached.hit:
            return cached

        payload = compute()
        if asyncio.iscoroutine(payload):
            payload = await payload

        await self.set(key, payload, ttl_seconds)
        return CacheLookup(
            hit=False,
            key=key,
            payload=payload,
            cached_at=_utc(self.clock()),
            degraded=cached.degraded,
        )

    async def stats(self) -> dict[str, Any]:
        """
        Count live entries per category.

        Walks the keyspace; administrative use only.
        """
        prefix = self.key_builder.prefix
        try:
            keys = await self.store.scan(prefix)
        except StoreUnavailable as e:
            logger.warning(f"Cache stats unavailable: {e}")
            return {"available": False, "total_entries": 0, "categories": {}}

        categories: dict[str, int] = {}
        for key in keys:
            if key.endswith(HITS_SUFFIX) or key.endswith(SEEN_SUFFIX):
                continue
            category = key[len(prefix):].split(":", 1)[0]
            categories[category] = categories.get(category, 0) + 1

        return {
            "available": True,
            "total_entries": sum(categories.values()),
            "categories": categories,
        }

    async def drain(self) -> None:
        """Wait for outstanding bookkeeping tasks (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        """Start a fire-and-forget task; nobody awaits its result."""
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_hit(self, key: str, entry: CacheEntry, now: datetime) -> None:
        """Bump the hit counter and last-access time without extending expiry."""
        remaining = math.ceil(entry.ttl_remaining(now))
        if remaining <= 0:
            return
        hits_key = key + HITS_SUFFIX
        try:
            if await self.store.incr(hits_key) == 1:
                await self.store.expire(hits_key, remaining)
            await self.store.set(key + SEEN_SUFFIX, now.isoformat(), ttl_seconds=remaining)
        except StoreUnavailable as e:
            logger.debug(f"Hit bookkeeping skipped for {key}: {e}")
        except Exception as e:
            logger.warning(f"Hit bookkeeping failed for {key}: {e}")


def _to_int(value: str | None) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


def _parse_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
