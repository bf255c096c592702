"""Tiered cache for embeddings.

Lookups walk an ordered list of tiers (fastest first): in-process memory,
a local SQLite store, and an optional Redis store shared between machines
and scoped to an authenticated principal. A hit in a slower tier is
promoted into every faster tier. Tier failures never reach the caller;
they are logged and counted in the statistics.
"""

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Optional

from lectio.config import get_settings
from lectio.logging import get_logger, log_failure
from lectio.models.rag import (
    CacheEntry,
    CacheExpired,
    CacheHit,
    CacheLookupResult,
    CacheMiss,
    CacheStats,
    EmbeddingVector,
    TierStats,
)
from lectio.rag.storage import PersistentStore

logger = get_logger("cache")


def _log_tier_error(
    operation: str, error: Exception, context: Optional[dict[str, Any]] = None
) -> None:
    log_failure(logger, operation, error, context, level=logging.WARNING)


def hash_text(text: str) -> str:
    """SHA256 hash of the text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def make_cache_key(text: str, model_version: str) -> str:
    """Cache key for a text under one model version."""
    return f"{model_version}:{hash_text(text)}"


def _entry_to_dict(entry: CacheEntry) -> dict[str, Any]:
    return {
        "text": entry.embedding.text,
        "vector": entry.embedding.vector,
        "model_version": entry.embedding.model_version,
        "timestamp": entry.embedding.timestamp,
        "access_count": entry.access_count,
        "last_accessed": entry.last_accessed,
    }


def _entry_from_dict(key: str, data: dict[str, Any]) -> CacheEntry:
    return CacheEntry(
        key=key,
        embedding=EmbeddingVector(
            text=data["text"],
            vector=list(data["vector"]),
            model_version=data["model_version"],
            timestamp=data["timestamp"],
        ),
        access_count=data.get("access_count", 1),
        last_accessed=data.get("last_accessed", data["timestamp"]),
    )


class CacheTier(ABC):
    """One storage level of the embedding cache."""

    name: str = "tier"

    def __init__(self):
        self.hits = 0
        self.read_errors = 0
        self.write_errors = 0

    @property
    def available(self) -> bool:
        """Whether the current caller may use this tier."""
        return True

    async def initialize(self) -> None:
        """Prepare the tier for use."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` or None."""

    @abstractmethod
    async def set(self, entry: CacheEntry) -> None:
        """Insert or replace an entry."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove an entry if present."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry this tier owns for the caller."""

    @abstractmethod
    async def size(self) -> int:
        """Number of entries visible to the caller."""

    async def record_access(self, entry: CacheEntry) -> None:
        """Persist access bookkeeping after a hit."""

    async def cleanup_expired(self, cutoff: float) -> int:
        """Purge entries produced before ``cutoff``; returns the count."""
        return 0

    async def close(self) -> None:
        """Release connections held by the tier."""

    def stats(self, size: int) -> TierStats:
        return TierStats(
            name=self.name,
            size=size,
            hits=self.hits,
            read_errors=self.read_errors,
            write_errors=self.write_errors,
        )


class MemoryCacheTier(CacheTier):
    """Bounded in-process LRU tier."""

    name = "memory"

    def __init__(self, max_items: Optional[int] = None):
        super().__init__()
        self.max_items = (
            get_settings().memory_cache_max_items if max_items is None else max_items
        )
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    async def set(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        while len(self._entries) > self.max_items:
            self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()

    async def size(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        """Keys from least to most recently used."""
        return list(self._entries)


class PersistentCacheTier(CacheTier):
    """Local durable tier backed by SQLite."""

    name = "persistent"

    def __init__(self, store: Optional[PersistentStore] = None):
        super().__init__()
        self.store = store or PersistentStore(get_settings().cache_db_path, "embeddings")

    async def initialize(self) -> None:
        await self.store.initialize()

    async def get(self, key: str) -> Optional[CacheEntry]:
        data = await self.store.get(key)
        return _entry_from_dict(key, data) if data else None

    async def set(self, entry: CacheEntry) -> None:
        await self.store.put(
            entry.key,
            _entry_to_dict(entry),
            index_key=entry.embedding.model_version,
            timestamp=entry.embedding.timestamp,
        )

    async def record_access(self, entry: CacheEntry) -> None:
        await self.set(entry)

    async def delete(self, key: str) -> None:
        await self.store.delete(key)

    async def clear(self) -> None:
        await self.store.clear()

    async def size(self) -> int:
        return await self.store.count()

    async def cleanup_expired(self, cutoff: float) -> int:
        return await self.store.delete_older_than(cutoff)


class RedisCacheTier(CacheTier):
    """Remote shared tier in Redis, scoped to an authenticated principal.

    Without a principal the tier is unavailable and is skipped entirely.
    """

    name = "remote"
    KEY_PREFIX = "lectio:embeddings"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        principal: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
        client: Any = None,
    ):
        """Initialize the tier.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            principal: Authenticated user id; None disables the tier
            ttl_seconds: Server-side expiry for written keys
            timeout: Socket timeout in seconds
            client: Pre-built ``redis.asyncio`` client (skips URL connection)
        """
        super().__init__()
        settings = get_settings()
        self.redis_url = redis_url if redis_url is not None else settings.redis_url
        self.principal = principal
        self.ttl_seconds = ttl_seconds or settings.cache_ttl_seconds
        self.timeout = timeout or settings.remote_cache_timeout
        self._redis = client

    @property
    def available(self) -> bool:
        return self.principal is not None and (self._redis is not None or bool(self.redis_url))

    def _client(self):
        """Lazy-initialize the Redis client."""
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
            )
        return self._redis

    def _prefix(self) -> str:
        return f"{self.KEY_PREFIX}:{self.principal}:"

    def _redis_key(self, key: str) -> str:
        return self._prefix() + key

    async def get(self, key: str) -> Optional[CacheEntry]:
        raw = await self._client().get(self._redis_key(key))
        return _entry_from_dict(key, json.loads(raw)) if raw else None

    async def set(self, entry: CacheEntry) -> None:
        await self._client().set(
            self._redis_key(entry.key),
            json.dumps(_entry_to_dict(entry)),
            ex=max(1, int(self.ttl_seconds)),
        )

    async def delete(self, key: str) -> None:
        await self._client().delete(self._redis_key(key))

    async def _own_keys(self) -> list[str]:
        return [key async for key in self._client().scan_iter(match=self._prefix() + "*")]

    async def clear(self) -> None:
        keys = await self._own_keys()
        if keys:
            await self._client().delete(*keys)

    async def size(self) -> int:
        return len(await self._own_keys())

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class TieredEmbeddingCache:
    """Multi-tier embedding cache with TTL expiry and promotion."""

    def __init__(
        self,
        tiers: list[CacheTier],
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache.

        Args:
            tiers: Tiers in lookup order, fastest first
            ttl_seconds: Maximum embedding age (defaults to settings, 7 days)
            clock: Source of the current time in epoch seconds
        """
        self.tiers = tiers
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().cache_ttl_seconds
        self.clock = clock
        self._initialized = False

        self.total_requests = 0
        self.total_hits = 0
        self.misses = 0
        self.expired = 0

    @classmethod
    def from_settings(cls, principal: Optional[str] = None) -> "TieredEmbeddingCache":
        """Build the standard memory, SQLite and (if configured) Redis chain."""
        settings = get_settings()
        tiers: list[CacheTier] = [MemoryCacheTier(), PersistentCacheTier()]
        if settings.redis_url:
            tiers.append(RedisCacheTier(principal=principal))
        return cls(tiers)

    def _active_tiers(self) -> list[CacheTier]:
        return [tier for tier in self.tiers if tier.available]

    async def initialize(self) -> None:
        """Prepare tiers and purge expired persistent entries."""
        if self._initialized:
            return

        for tier in self._active_tiers():
            try:
                await tier.initialize()
            except Exception as e:
                tier.read_errors += 1
                _log_tier_error(f"Initializing {tier.name} cache tier", e)

        await self.cleanup_expired()
        self._initialized = True

    async def _safe_write(self, tier: CacheTier, entry: CacheEntry) -> bool:
        try:
            await tier.set(entry)
            return True
        except Exception as e:
            tier.write_errors += 1
            _log_tier_error(f"Writing {tier.name} cache tier", e, {"key": entry.key})
            return False

    async def _safe_delete(self, tier: CacheTier, key: str) -> None:
        try:
            await tier.delete(key)
        except Exception as e:
            tier.write_errors += 1
            _log_tier_error(f"Deleting from {tier.name} cache tier", e, {"key": key})

    async def lookup(self, text: str, model_version: str) -> CacheLookupResult:
        """Look up an embedding, reporting hit, miss or expiry."""
        self.total_requests += 1
        key = make_cache_key(text, model_version)
        now = self.clock()
        tiers = self._active_tiers()
        expired_in: Optional[str] = None

        for position, tier in enumerate(tiers):
            try:
                entry = await tier.get(key)
            except Exception as e:
                tier.read_errors += 1
                _log_tier_error(f"Reading {tier.name} cache tier", e, {"key": key})
                continue

            if entry is None or entry.embedding.model_version != model_version:
                continue

            if entry.is_expired(self.ttl_seconds, now):
                expired_in = expired_in or tier.name
                await self._safe_delete(tier, key)
                continue

            entry.touch(now)
            tier.hits += 1
            self.total_hits += 1

            try:
                await tier.record_access(entry)
            except Exception as e:
                tier.write_errors += 1
                _log_tier_error(f"Recording access in {tier.name} tier", e)

            for faster in tiers[:position]:
                await self._safe_write(
                    faster,
                    CacheEntry(
                        key=key,
                        embedding=entry.embedding,
                        access_count=entry.access_count,
                        last_accessed=now,
                    ),
                )

            return CacheHit(embedding=entry.embedding, tier=tier.name)

        if expired_in is not None:
            self.expired += 1
            return CacheExpired(tier=expired_in)

        self.misses += 1
        return CacheMiss()

    async def get(self, text: str, model_version: str) -> Optional[EmbeddingVector]:
        """Get a live cached embedding, or None on a miss or expiry."""
        result = await self.lookup(text, model_version)
        if isinstance(result, CacheHit):
            return result.embedding
        return None

    async def set(self, text: str, embedding: EmbeddingVector) -> None:
        """Write an embedding to every tier the caller may use."""
        key = make_cache_key(text, embedding.model_version)
        now = self.clock()
        for tier in self._active_tiers():
            await self._safe_write(tier, CacheEntry(key=key, embedding=embedding, last_accessed=now))

    async def delete(self, text: str, model_version: str) -> None:
        """Remove an embedding from every tier."""
        key = make_cache_key(text, model_version)
        for tier in self._active_tiers():
            await self._safe_delete(tier, key)

    async def clear(self) -> None:
        """Clear every tier (the remote tier only clears the caller's keys)."""
        for tier in self._active_tiers():
            try:
                await tier.clear()
            except Exception as e:
                tier.write_errors += 1
                _log_tier_error(f"Clearing {tier.name} cache tier", e)
        logger.info("All cache tiers cleared")

    async def cleanup_expired(self) -> int:
        """Purge expired entries from tiers that support it."""
        cutoff = self.clock() - self.ttl_seconds
        removed = 0
        for tier in self._active_tiers():
            try:
                removed += await tier.cleanup_expired(cutoff)
            except Exception as e:
                tier.write_errors += 1
                _log_tier_error(f"Cleaning up {tier.name} cache tier", e)

        if removed:
            logger.info(f"Cleaned up {removed} expired cache entries")
        return removed

    async def get_stats(self) -> CacheStats:
        """Request counters plus per-tier sizes."""
        tier_stats = []
        for tier in self.tiers:
            size = 0
            if tier.available:
                try:
                    size = await tier.size()
                except Exception as e:
                    tier.read_errors += 1
                    _log_tier_error(f"Counting {tier.name} cache tier", e)
            tier_stats.append(tier.stats(size))

        return CacheStats(
            total_requests=self.total_requests,
            total_hits=self.total_hits,
            misses=self.misses,
            expired=self.expired,
            tiers=tier_stats,
        )

    async def close(self) -> None:
        """Close tier connections."""
        for tier in self.tiers:
            try:
                await tier.close()
            except Exception as e:
                _log_tier_error(f"Closing {tier.name} cache tier", e)
