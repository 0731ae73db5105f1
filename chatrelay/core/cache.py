# chatrelay/core/cache.py

import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

from cachetools import TLRUCache

from chatrelay.core.scheduler import Clock, SystemClock

logger = logging.getLogger(__name__)

_MISSING = object()


class _Entry:
    __slots__ = ("value", "ttl")

    def __init__(self, value: Any, ttl: float):
        self.value = value
        self.ttl = ttl


def _time_to_use(key, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class _CountingTLRUCache(TLRUCache):
    """TLRUCache that counts capacity evictions"""

    def __init__(self, maxsize, ttu, timer):
        super().__init__(maxsize, ttu, timer=timer)
        self.evictions = 0

    def popitem(self):
        item = super().popitem()
        self.evictions += 1
        return item


class BoundedCache:
    """
    Size and TTL bounded key-value store used cache-aside.

    The cache is never the source of truth: a miss (absent or expired) goes
    to the loader, whose result repopulates the cache.
    """

    def __init__(
        self,
        name: str,
        maxsize: int = 1000,
        default_ttl: float = 300.0,
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.maxsize = maxsize
        self.default_ttl = default_ttl
        self.clock = clock or SystemClock()
        self._store = _CountingTLRUCache(maxsize, _time_to_use, timer=self.clock.now)
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._store.get(key, _MISSING)
        if entry is _MISSING:
            self.misses += 1
            return default
        self.hits += 1
        return entry.value

    def __contains__(self, key: Hashable) -> bool:
        return key in self._store

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        self._store[key] = _Entry(value, self.default_ttl if ttl is None else ttl)

    def invalidate(self, key: Hashable) -> bool:
        return self._store.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        self._store.clear()

    async def get_or_set(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value or load it, cache it and return it.

        ``None`` from the loader is returned but not cached, so a record
        created later is picked up on the next lookup.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = await loader()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def get_stats(self) -> Dict[str, Any]:
        self._store.expire()
        lookups = self.hits + self.misses
        return {
            "size": len(self._store),
            "maxSize": self.maxsize,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self._store.evictions,
            "hitRate": round(self.hits / lookups, 4) if lookups else 0.0,
        }


class CacheService:
    """The four named caches the message pipeline reads through"""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.user_mappings = BoundedCache("userMappings", 1000, 5 * 60, self.clock)
        self.platform_configs = BoundedCache("platformConfigs", 100, 10 * 60, self.clock)
        self.ai_models = BoundedCache("aiModels", 500, 3 * 60, self.clock)
        self.conversations = BoundedCache("conversations", 1000, 60, self.clock)

    @property
    def caches(self) -> Dict[str, BoundedCache]:
        return {
            c.name: c
            for c in (self.user_mappings, self.platform_configs, self.ai_models, self.conversations)
        }

    def get_stats(self) -> Dict[str, Any]:
        per_cache = {name: cache.get_stats() for name, cache in self.caches.items()}
        hits = sum(s["hits"] for s in per_cache.values())
        misses = sum(s["misses"] for s in per_cache.values())
        return {
            "size": sum(s["size"] for s in per_cache.values()),
            "hits": hits,
            "misses": misses,
            "evictions": sum(s["evictions"] for s in per_cache.values()),
            "hitRate": round(hits / (hits + misses), 4) if hits + misses else 0.0,
            "caches": per_cache,
        }


def user_mapping_key(phone_number: str, config_id: str) -> str:
    return f"user-mapping:{phone_number}:{config_id}"


def conversation_key(phone_number: str, config_id: str) -> str:
    return f"conversation:{phone_number}:{config_id}"


def platform_config_key(config_id: str) -> str:
    return f"platform-config:{config_id}"
