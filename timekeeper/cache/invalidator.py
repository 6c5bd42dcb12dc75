"""
Best-effort shared cache invalidation.

The cache is an optimization in front of the authoritative store, so an
invalidation failure is logged and swallowed: readers may see stale data
until the entry's TTL, but the scheduler keeps running.
"""

import logging
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import redis

from timekeeper import config
from timekeeper.observability import cache_invalidation_errors, cache_keys_invalidated

from .handle import CacheClient, SharedCache

logger = logging.getLogger(__name__)

MEETING_USER_PATTERNS = (
    "meetings:{user_id}:*",
    "meeting-status:{user_id}:*",
    "meeting-counts:{user_id}:*",
)
MEETING_GLOBAL_PATTERNS = ("meetings:*", "meeting-status:*", "meeting-counts:*")


@dataclass(frozen=True)
class CacheInvalidationScope:
    """Key patterns (with a {user_id} placeholder) and the users they apply to."""

    patterns: tuple[str, ...]
    user_ids: tuple[str, ...]
    global_patterns: tuple[str, ...] = ()

    def user_patterns(self) -> list[str]:
        return [
            pattern.format(user_id=user_id)
            for user_id in self.user_ids
            for pattern in self.patterns
        ]


def meeting_scope(user_ids: Iterable[str]) -> CacheInvalidationScope:
    """Scope clearing the meeting list/status/count caches of the given users."""
    unique = tuple(dict.fromkeys(str(u) for u in user_ids))
    return CacheInvalidationScope(
        patterns=MEETING_USER_PATTERNS,
        user_ids=unique,
        global_patterns=MEETING_GLOBAL_PATTERNS,
    )


class CacheInvalidator:
    """Deletes every key matching a scope, with bounded concurrency."""

    def __init__(self, cache: SharedCache, max_workers: int | None = None):
        self.cache = cache
        self.max_workers = max(1, max_workers or config.CACHE_CONCURRENCY)

    def invalidate(self, scope: CacheInvalidationScope) -> int:
        """
        Clear all keys in scope. Never raises.

        Per-user patterns are cleared first, then the global ones. The first
        lost connection ends the pass: the handle is reset once and the
        remaining patterns are skipped.

        Returns:
            Number of keys deleted (0 when the cache is unavailable)
        """
        try:
            client = self.cache.get()
            if client is None:
                return 0

            logger.info(f"Starting cache invalidation for {len(scope.user_ids)} users")
            lost = threading.Event()
            cleared = self._clear_patterns(client, scope.user_patterns(), lost)
            cleared += self._clear_patterns(client, list(scope.global_patterns), lost)
        except Exception as e:
            cache_invalidation_errors.inc()
            logger.error(f"Cache invalidation failed: {e}", exc_info=True)
            return 0

        cache_keys_invalidated.inc(cleared)
        if lost.is_set():
            self.cache.reset(client)
            logger.warning(f"Cache invalidation aborted after connection loss: {cleared} keys cleared")
        else:
            logger.info(f"Cache invalidation completed: {cleared} keys cleared")
        return cleared

    def _clear_patterns(self, client: CacheClient, patterns: list[str], lost: threading.Event) -> int:
        if not patterns or lost.is_set():
            return 0
        workers = min(self.max_workers, len(patterns))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cache-invalidate") as pool:
            return sum(pool.map(lambda p: self._clear_pattern(client, p, lost), patterns))

    def _clear_pattern(self, client: CacheClient, pattern: str, lost: threading.Event) -> int:
        if lost.is_set():
            return 0
        try:
            keys = client.keys(pattern)
            if not keys:
                return 0
            deleted = client.delete(*keys)
        except redis.ConnectionError as e:
            if not lost.is_set():
                lost.set()
                cache_invalidation_errors.inc()
                logger.error(f"Cache connection lost invalidating {pattern}: {e}")
            return 0
        except (redis.RedisError, OSError) as e:
            cache_invalidation_errors.inc()
            logger.error(f"Error invalidating pattern {pattern}: {e}")
            return 0

        logger.debug(f"Cleared {deleted} keys for pattern: {pattern}")
        return deleted
