"""
In-process TTL cache.

Used to avoid re-reading rarely changing rows (locations, sponsors, settings,
public config) on every request. Best effort and per-process only.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Pattern, Union

from config import config

logger = logging.getLogger(__name__)


class CacheEntry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float):
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class TTLCache:
    """Dictionary-backed cache with per-entry expiry and hit/miss statistics."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}

    def get(self, key: str) -> Any:
        """Return the cached value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.stats["evictions"] += 1
            self.stats["misses"] += 1
            return None

        self.stats["hits"] += 1
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float = 300) -> None:
        self._entries[key] = CacheEntry(value, self._clock() + ttl_seconds)
        self.stats["sets"] += 1

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.stats["evictions"] += 1
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self.stats["evictions"] += len(self._entries)
        self._entries.clear()

    def cleanup(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self.stats["evictions"] += len(expired)
        return len(expired)

    def keys(self) -> list:
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict:
        lookups = self.stats["hits"] + self.stats["misses"]
        hit_rate = (self.stats["hits"] / lookups * 100) if lookups else 0.0
        return {
            **self.stats,
            "size": len(self._entries),
            "hitRate": f"{hit_rate:.2f}%",
        }


# Global cache instance
cache = TTLCache()


class CacheKeys:
    """Key builders so every caller agrees on the key format."""

    @staticmethod
    def locations(org_id: str, hunt_id: str) -> str:
        return f"locations:{org_id}:{hunt_id}"

    @staticmethod
    def sponsors(org_id: str, hunt_id: str) -> str:
        return f"sponsors:{org_id}:{hunt_id}"

    @staticmethod
    def settings(org_id: str, team_id: str, hunt_id: str) -> str:
        return f"settings:{org_id}:{team_id}:{hunt_id}"

    @staticmethod
    def public_config() -> str:
        return "config:public"


def with_cache(key: str, ttl_seconds: float, fn: Callable[[], Any]) -> Any:
    """Return the cached value for key, computing and storing it on a miss.

    None results are never cached.
    """
    cached = cache.get(key)
    if cached is not None:
        logger.debug(f"Cache hit: {key}")
        return cached

    value = fn()
    if value is not None:
        cache.set(key, value, ttl_seconds)
    return value


def invalidate_pattern(pattern: Union[str, Pattern]) -> int:
    """Delete keys starting with a string prefix or matching a compiled regex."""
    if isinstance(pattern, str):
        matches = [key for key in cache.keys() if key.startswith(pattern)]
    else:
        matches = [key for key in cache.keys() if pattern.search(key)]

    for key in matches:
        cache.delete(key)
    if matches:
        logger.debug(f"Invalidated {len(matches)} cache entries for {pattern!r}")
    return len(matches)


def get_cache_stats() -> dict:
    return cache.get_stats()


def clear_cache() -> None:
    cache.clear()


async def periodic_cleanup(interval_seconds: Optional[float] = None) -> None:
    """Sweep expired entries forever. Run as a background task."""
    interval = interval_seconds or config.CACHE_CLEANUP_INTERVAL
    while True:
        await asyncio.sleep(interval)
        removed = cache.cleanup()
        if removed:
            logger.info(f"Cache cleanup removed {removed} expired entries")
