"""
Skew Result Cache
=================

In-memory TTL cache fronting the skew pipeline, keyed by normalized symbol.

RULES:
1. An entry is returned only while now < expires_at; an expired entry found
   on read is evicted and reported as absent
2. set() overwrites, default TTL 1 hour (SKEW_CACHE_TTL_SECONDS)
3. cleanup() sweeps expired entries; the APScheduler job registered in
   server.py runs it every 5 minutes so never-read keys do not pile up

Single-instance servers only: there is no cross-process sharing.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from utils.environment import CACHE_TTL_SECONDS
from utils.symbol_normalization import cache_key

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


class SkewCache(Generic[T]):
    def __init__(self, default_ttl_seconds: float = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry[T]] = {}

    def get(self, symbol: str) -> Optional[T]:
        key = cache_key(symbol)
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None

        return entry.value

    def set(self, symbol: str, value: T, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[cache_key(symbol)] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def has(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def delete(self, symbol: str) -> bool:
        return self._entries.pop(cache_key(symbol), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.info(f"[Cache] Cleaned up {len(expired)} expired entries")
        return len(expired)

    def size(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "keys": list(self._entries),
            "default_ttl_seconds": self.default_ttl_seconds,
        }


_skew_cache_instance = None


def get_skew_cache() -> SkewCache:
    global _skew_cache_instance
    if _skew_cache_instance is None:
        _skew_cache_instance = SkewCache()
    return _skew_cache_instance
