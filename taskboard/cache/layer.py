import json
import logging
import math
import time
from typing import Any, Optional, Protocol, runtime_checkable

from cachetools import TLRUCache
from redis.asyncio import Redis, RedisError

from taskboard.core.config import Settings

logger = logging.getLogger(__name__)


@runtime_checkable
class CacheBackend(Protocol):
    """Key/value contract the cache-consistency coordinator relies on.

    Values must be JSON-compatible. ``ttl`` is in seconds; None means no expiry.
    """

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...


def _serialize(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError) as e:
        logger.error(f"Serialization failed: {e}")
        raise


def _deserialize(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        # Return raw string if not valid JSON
        return raw


def _expires_at(_key, entry, now):
    _, ttl = entry
    return math.inf if ttl is None else now + ttl


class LocalCache:
    """
    Process-local cache with per-key TTL.

    Serves as L1 in front of Redis, and as the whole cache when Redis is not
    configured (local development, tests). Entries are stored serialized so a
    caller mutating a returned value can never alter what is cached.
    """

    def __init__(self, maxsize: int = 2048, max_ttl: Optional[int] = None):
        self.max_ttl = max_ttl
        self._entries = TLRUCache(maxsize=maxsize, ttu=_expires_at, timer=time.monotonic)

    def _effective_ttl(self, ttl: Optional[int]) -> Optional[int]:
        if self.max_ttl is None:
            return ttl
        return self.max_ttl if ttl is None else min(ttl, self.max_ttl)

    async def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return _deserialize(entry[0])

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._entries[key] = (_serialize(value), self._effective_ttl(ttl))

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        matching = [key for key in list(self._entries.keys()) if key.startswith(prefix)]
        for key in matching:
            self._entries.pop(key, None)
        return len(matching)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def maxsize(self) -> int:
        return self._entries.maxsize


class CacheLayer:
    """
    Two-tier cache.

    L1: process-local LocalCache (fast, limited size, short TTL)
    L2: Redis (shared, larger capacity)

    Features:
    - Graceful degradation when Redis is unavailable: errors are logged and
      counted, reads become misses, writes and deletes are skipped
    - Automatic key namespacing
    - Prefix deletes reach both tiers

    L1 entries live at most ``l1_ttl_seconds``, which bounds how long another
    worker's invalidation can go unnoticed in this process.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._redis: Redis | None = None
        self.l1: LocalCache | None = None
        self._initialized = False

        # Stats tracking
        self.stats = {
            "l1_hits": 0,
            "l2_hits": 0,
            "misses": 0,
            "errors": 0,
        }

    async def init_cache(self):
        """Initialize L1 cache and Redis connection."""
        if self._initialized:
            return

        settings = self._settings

        if self.l1 is None and settings.l1_maxsize > 0:
            self.l1 = LocalCache(maxsize=settings.l1_maxsize, max_ttl=settings.l1_ttl_seconds)

        if self._redis is None and settings.redis_dsn:
            try:
                self._redis = Redis.from_url(
                    settings.redis_dsn,
                    encoding="utf-8",
                    decode_responses=True,
                    max_connections=settings.redis_pool_size,
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                    health_check_interval=30,
                )
                # Verify connection
                await self._redis.ping()
                logger.info("Redis connection established")
            except (RedisError, OSError) as e:
                logger.error(f"Redis initialization failed, running L1 only: {e}")
                self._redis = None

        self._initialized = True
        logger.info("Cache layer initialized")

    def _l2_key(self, key: str) -> str:
        """Build namespaced L2 cache key."""
        return f"{self._settings.cache_namespace}{key}"

    async def get(self, key: str) -> Any:
        """Retrieve a value from L1, then L2. Returns None on a miss."""
        await self.init_cache()

        if self.l1 is not None:
            value = await self.l1.get(key)
            if value is not None:
                self.stats["l1_hits"] += 1
                logger.debug(f"L1 hit {key}")
                return value

        if self._redis:
            try:
                raw = await self._redis.get(self._l2_key(key))
            except RedisError as e:
                logger.error(f"Redis GET error for {key}: {e}")
                self.stats["errors"] += 1
            else:
                if raw is not None:
                    self.stats["l2_hits"] += 1
                    logger.debug(f"L2 hit {key}")
                    value = _deserialize(raw)
                    if self.l1 is not None:
                        await self.l1.set(key, value)
                    return value

        self.stats["misses"] += 1
        return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None):
        """Set a value in both cache layers."""
        await self.init_cache()

        if self.l1 is not None:
            await self.l1.set(key, value, ttl)

        if self._redis:
            try:
                await self._redis.set(self._l2_key(key), _serialize(value), ex=ttl)
                logger.debug(f"Stored {key} in L2 (ttl={ttl})")
            except RedisError as e:
                logger.error(f"Redis SET error for {key}: {e}")
                self.stats["errors"] += 1

    async def delete(self, *keys: str):
        """Delete keys from both cache layers."""
        await self.init_cache()
        if not keys:
            return

        if self.l1 is not None:
            await self.l1.delete(*keys)

        if self._redis:
            try:
                await self._redis.delete(*(self._l2_key(k) for k in keys))
                logger.debug(f"Deleted {', '.join(keys)} from both layers")
            except RedisError as e:
                logger.error(f"Redis DELETE error for {', '.join(keys)}: {e}")
                self.stats["errors"] += 1

    async def delete_prefix(self, prefix: str) -> int:
        """
        Delete every key starting with ``prefix`` from both layers.

        L2 uses SCAN, which is linear in the keyspace size.
        """
        await self.init_cache()

        deleted_count = 0
        if self.l1 is not None:
            deleted_count += await self.l1.delete_prefix(prefix)

        if not self._redis:
            return deleted_count

        try:
            pattern = self._l2_key(prefix) + "*"
            cursor = 0
            while True:
                cursor, keys = await self._redis.scan(cursor, match=pattern, count=100)
                if keys:
                    await self._redis.delete(*keys)
                    deleted_count += len(keys)
                if cursor == 0:
                    break
            logger.debug(f"Prefix delete {prefix!r} removed {deleted_count} keys")
        except RedisError as e:
            logger.error(f"Prefix delete error for {prefix!r}: {e}")
            self.stats["errors"] += 1

        return deleted_count

    async def close(self):
        """Graceful shutdown of cache connections."""
        if self._redis:
            try:
                await self._redis.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis: {e}")

    def get_stats(self) -> dict:
        total = self.stats["l1_hits"] + self.stats["l2_hits"] + self.stats["misses"]
        return {
            **self.stats,
            "redis_connected": self._redis is not None,
            "l1_size": len(self.l1) if self.l1 is not None else 0,
            "l1_maxsize": self.l1.maxsize if self.l1 is not None else 0,
            "hit_rate": (
                (self.stats["l1_hits"] + self.stats["l2_hits"]) / total if total > 0 else 0
            ),
        }
