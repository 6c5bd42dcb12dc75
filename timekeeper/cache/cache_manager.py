"""
In-process stand-in for the shared cache.

Backs single-process deployments (TIMEKEEPER_CACHE_BACKEND=memory) and the
test suite. Speaks the same keys()/delete() dialect as RedisCache, glob
patterns included, so CacheInvalidator works against either.
"""

import fnmatch
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)


class _Entry(NamedTuple):
    value: Any
    expires_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    size: int = 0
    hit_rate: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class CacheManager:
    """
    TTL cache kept in recency order.

    The OrderedDict runs oldest-first: reads and writes move a key to the
    end, so eviction pops from the front.
    """

    def __init__(
        self,
        max_size: int = 10000,
        default_ttl: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_size: Entries kept before the least recently used is evicted
            default_ttl: TTL in seconds when set() is not given one
            clock: Seconds source for expiry, injectable for tests
        """
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.RLock()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() >= entry.expires_at:
                self._entries.pop(key, None)
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = _Entry(value, self._clock() + ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted LRU key: {evicted}")

    def keys(self, pattern: str = "*") -> list[str]:
        """Live keys matching a Redis-style glob (`*`, `?`, `[...]`)."""
        with self._lock:
            self._drop_expired()
            return [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]

    def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed (Redis DEL semantics)."""
        with self._lock:
            removed = 0
            for key in keys:
                if key in self._entries:
                    del self._entries[key]
                    removed += 1
            return removed

    def ping(self) -> bool:
        return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def close(self) -> None:
        self.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._entries),
                hit_rate=self._hits / total if total else 0.0,
            )

    def _drop_expired(self) -> None:
        now = self._clock()
        for key in [k for k, entry in self._entries.items() if now >= entry.expires_at]:
            del self._entries[key]
