"""Cache-consistency coordinator.

Wraps Store reads and writes with the population and invalidation rules:

* read: try the key, fall back to the loader on a miss, populate only when the
  loader found something (no negative caching)
* write: called after the Store commit; delete the touched entity keys, set the
  fresh projections, then prefix-delete the resource's collection namespace

Every cache call here is best-effort. The Store is authoritative and has
already committed by the time the write path runs, so a cache failure is
logged and swallowed; a failed read behaves as a miss.

The cache is never consulted for credentials, roles or ownership.
"""

import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from fastapi import Request

from taskboard.cache.layer import CacheBackend
from taskboard.core.config import Settings

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Optional[Any]]]


class CacheCoordinator:
    def __init__(self, cache: CacheBackend, settings: Settings):
        self.cache = cache
        self.entity_ttl = settings.entity_ttl_seconds
        self.listing_ttl = settings.listing_ttl_seconds

    async def _get(self, key: str) -> Any:
        try:
            return await self.cache.get(key)
        except Exception:
            logger.warning(f"Cache read failed for {key}, treating as miss", exc_info=True)
            return None

    async def _set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.cache.set(key, value, ttl)
        except Exception:
            logger.warning(f"Cache write failed for {key}", exc_info=True)

    async def _delete(self, keys: list[str]) -> None:
        if not keys:
            return
        try:
            await self.cache.delete(*keys)
        except Exception:
            logger.warning(f"Cache delete failed for {', '.join(keys)}", exc_info=True)

    async def _read_through(self, key: str, loader: Loader, ttl: int) -> Any:
        cached = await self._get(key)
        if cached is not None:
            return cached

        value = await loader()
        if value is None:
            return None

        await self._set(key, value, ttl)
        return value

    async def read_entity(self, key: str, loader: Loader) -> Any:
        return await self._read_through(key, loader, self.entity_ttl)

    async def read_collection(self, key: str, loader: Loader) -> Any:
        return await self._read_through(key, loader, self.listing_ttl)

    async def peek(self, key: str) -> Any:
        """Look a key up without loading. Only for advisory fast paths."""
        return await self._get(key)

    async def evict(self, *keys: str) -> None:
        await self._delete(list(keys))

    async def refresh_entities(
        self,
        fresh: dict[str, Any],
        stale: Iterable[str] = (),
        ttl: Optional[int] = None,
    ) -> None:
        """Delete ``stale`` plus the fresh keys, then set each fresh projection."""
        await self._delete(list(dict.fromkeys([*stale, *fresh])))
        for key, value in fresh.items():
            await self._set(key, value, ttl or self.entity_ttl)

    async def invalidate_collections(self, prefix: str) -> None:
        try:
            removed = await self.cache.delete_prefix(prefix)
            logger.debug(f"Invalidated {removed} cached listings under {prefix!r}")
        except Exception:
            logger.warning(f"Collection invalidation failed for {prefix!r}", exc_info=True)


def get_cache_coordinator(request: Request) -> CacheCoordinator:
    return request.app.state.cache_coordinator
