"""
Redis caching layer in front of the order projections.

Provides:
- Async Redis client with connection pooling
- Canonical query-shape keys (same filters/sort/page -> same entry)
- JSON serialization with TTL-based expiration
- Namespace invalidation (coarse, clear-by-projection)
- Graceful fallback when Redis is unavailable (every lookup is a miss)
- Named mutual-exclusion tokens for cross-process refresh coordination

Usage:
    from orderview.cache import cache

    key = cache.build_key("stock", scope=scope.cache_fragment(), page=1, limit=30)
    value, hit = await cache.get(key)
    if not hit:
        await cache.set(key, page_payload)

    await cache.invalidate("stock")
"""
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import LockError

from orderview.config import config
from orderview.events import EventBus, events, ReadModelEvent
from orderview.observability import get_logger, Timer

logger = get_logger(__name__)

# Query namespaces served from each projection
NAMESPACE_ORDERS = "orders"
NAMESPACE_EDIT = "edit"
NAMESPACE_STOCK = "stock"
ALL_NAMESPACES = (NAMESPACE_ORDERS, NAMESPACE_EDIT, NAMESPACE_STOCK)

PROJECTION_NAMESPACES: Dict[str, List[str]] = {
    "enriched_order_view": [NAMESPACE_ORDERS, NAMESPACE_STOCK],
    "order_edit_view": [NAMESPACE_EDIT],
}


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    sets: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "sets": self.sets,
            "invalidations": self.invalidations,
            "hit_rate_percent": round(self.hit_rate, 2),
        }

    def reset(self) -> None:
        """Reset all counters."""
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.sets = 0
        self.invalidations = 0


class RedisCache:
    """
    Async Redis cache with graceful degradation.

    The cache is a performance dependency only: any connection problem or
    Redis error turns into a miss and the request falls through to the
    projection query.
    """

    def __init__(
        self,
        url: str = config.cache.url,
        enabled: bool = config.cache.enabled,
        default_ttl: int = config.cache.ttl_seconds,
        prefix: str = config.cache.key_prefix,
        bus: EventBus = events,
    ):
        self.url = url
        self.enabled = enabled
        self.default_ttl = default_ttl
        self.prefix = prefix
        self.bus = bus
        self._client: Optional[redis.Redis] = None
        self._connected = False
        self._stats = CacheStats()

    async def connect(self) -> bool:
        """
        Connect to Redis server.

        Returns:
            True if connected successfully, False otherwise
        """
        if not self.enabled:
            logger.info("Redis cache disabled by configuration")
            return False

        if self._client is not None and self._connected:
            return True

        try:
            self._client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            await self._client.ping()
            self._connected = True
            logger.info(f"Redis connected: {self.url}")
            return True
        except Exception as e:
            logger.warning(f"Redis connection failed, serving without cache: {e}")
            self._client = None
            self._connected = False

        return False

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._connected = False
            logger.info("Redis disconnected")

    @property
    def is_connected(self) -> bool:
        """Check if Redis is connected."""
        return self._connected and self._client is not None

    # ─── Keys ────────────────────────────────────────────────────────────────

    def build_key(self, namespace: str, **shape: Any) -> str:
        """
        Build a canonical key for a query shape.

        Keyword order and None-valued parameters do not affect the key, so
        two requests with identical filters/sort/page collide.
        """
        canonical = json.dumps(
            {k: v for k, v in shape.items() if v is not None},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        digest = hashlib.sha256(canonical.encode()).hexdigest()[:24]
        return f"{self.prefix}:{namespace}:{digest}"

    def namespace_pattern(self, namespace: Optional[str] = None) -> str:
        """Glob pattern matching every key of a namespace (or all namespaces)."""
        if namespace is None:
            return f"{self.prefix}:*"
        return f"{self.prefix}:{namespace}:*"

    # ─── Get / Set ───────────────────────────────────────────────────────────

    async def get(self, key: str) -> Tuple[Optional[Any], bool]:
        """
        Get value from cache.

        Returns:
            (value, hit) - hit is False on miss, when disconnected, or on error
        """
        if not self.is_connected:
            self._stats.misses += 1
            return None, False

        try:
            with Timer("cache_get"):
                raw = await self._client.get(key)
        except Exception as e:
            self._stats.errors += 1
            self._stats.misses += 1
            logger.debug(f"Cache get error for {key}: {e}")
            return None, False

        if raw is None:
            self._stats.misses += 1
            return None, False

        self._stats.hits += 1
        return json.loads(raw), True

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Set value in cache with a TTL (default: configured TTL).

        Returns:
            True if stored
        """
        if not self.is_connected:
            return False

        ttl = ttl or self.default_ttl

        try:
            with Timer("cache_set"):
                await self._client.setex(key, ttl, json.dumps(value, default=str))
            self._stats.sets += 1
            return True
        except Exception as e:
            self._stats.errors += 1
            logger.debug(f"Cache set error for {key}: {e}")
            return False

    # ─── Invalidation ────────────────────────────────────────────────────────

    async def _delete_matching(self, pattern: str) -> int:
        deleted = 0
        cursor = 0
        while True:
            cursor, keys = await self._client.scan(cursor=cursor, match=pattern, count=100)
            if keys:
                await self._client.delete(*keys)
                deleted += len(keys)
            if cursor == 0:
                break
        return deleted

    async def invalidate(
        self,
        namespace: Optional[str] = None,
        reason: str = "mutation",
        bus: Optional[EventBus] = None,
    ) -> int:
        """
        Invalidate every entry of a query namespace (all namespaces if None).

        CACHE_INVALIDATED is emitted on bus, or on the cache's own bus.

        Returns:
            Number of keys deleted
        """
        if not self.is_connected:
            return 0

        pattern = self.namespace_pattern(namespace)
        try:
            deleted = await self._delete_matching(pattern)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache invalidation error for {pattern}: {e}")
            return 0

        if deleted > 0:
            self._stats.invalidations += deleted
            logger.debug(f"Invalidated {deleted} keys matching '{pattern}'")
            await (bus or self.bus).emit(
                ReadModelEvent.CACHE_INVALIDATED,
                {"pattern": pattern, "reason": reason, "count": deleted},
            )

        return deleted

    async def invalidate_all(self, reason: str = "mutation", bus: Optional[EventBus] = None) -> int:
        """Invalidate every read-model namespace."""
        total = 0
        for namespace in ALL_NAMESPACES:
            total += await self.invalidate(namespace, reason=reason, bus=bus)
        return total

    # ─── Mutual exclusion ────────────────────────────────────────────────────

    async def acquire_lock(self, name: str, timeout: int) -> Tuple[bool, Optional[Any]]:
        """
        Try to take a named cross-process lock without blocking.

        Returns:
            (acquired, handle). When Redis is unavailable the lock degrades
            to in-process only: (True, None).
        """
        if not self.is_connected:
            return True, None

        lock = self._client.lock(f"{self.prefix}:lock:{name}", timeout=timeout, blocking=False)
        try:
            acquired = await lock.acquire()
        except Exception as e:
            logger.warning(f"Redis lock {name} unavailable, using in-process exclusion: {e}")
            return True, None

        return (True, lock) if acquired else (False, None)

    async def release_lock(self, handle: Optional[Any]) -> None:
        """Release a handle returned by acquire_lock (None is a no-op)."""
        if handle is None:
            return
        try:
            await handle.release()
        except LockError as e:
            # Lock expired before the rebuild finished
            logger.warning(f"Refresh lock already released: {e}")

    # ─── Stats ───────────────────────────────────────────────────────────────

    def get_stats(self) -> dict:
        """Get cache statistics."""
        return {
            "enabled": self.enabled,
            "connected": self.is_connected,
            "url": self.url if self.is_connected else None,
            "default_ttl": self.default_ttl,
            **self._stats.to_dict(),
        }

    def reset_stats(self) -> None:
        """Reset statistics counters."""
        self._stats.reset()


# Global cache instance
cache = RedisCache()


# ═══════════════════════════════════════════════════════════════════════════════
# EVENT HANDLERS FOR CACHE INVALIDATION
# ═══════════════════════════════════════════════════════════════════════════════


def register_cache_invalidation_handlers(
    target: RedisCache = cache, bus: EventBus = events
) -> None:
    """Drop cached pages served from a projection once a new generation is live."""

    @bus.on(ReadModelEvent.PROJECTION_REFRESHED)
    async def invalidate_on_projection_refreshed(data: dict):
        for namespace in PROJECTION_NAMESPACES.get(data.get("projection"), []):
            await target.invalidate(namespace, reason="projection_refreshed", bus=bus)

    logger.info("Cache invalidation handlers registered")
