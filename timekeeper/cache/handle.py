"""
Lazily-initialized shared cache handle.

One handle is built by the daemon and injected into every scheduler. The
underlying client is created on first use; a missing URL or a failed
connection degrades to "no cache" (invalidation skipped) instead of failing
the caller. Connection attempts go through a circuit breaker so a dead
cache is not re-dialed on every sub-second tick.
"""

import logging
import threading
from collections.abc import Callable
from typing import Protocol

import redis

from timekeeper import config
from timekeeper.resilience import CircuitBreaker

from .cache_manager import CacheManager
from .redis_cache import RedisCache

logger = logging.getLogger(__name__)

BACKENDS = ("redis", "memory", "none")


class CacheClient(Protocol):
    def keys(self, pattern: str = "*") -> list[str]: ...

    def delete(self, *keys: str) -> int: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


class SharedCache:
    """Owns at most one live cache client and closes it exactly once."""

    def __init__(
        self,
        factory: Callable[[], CacheClient] | None,
        breaker: CircuitBreaker | None = None,
        description: str = "cache",
    ):
        """
        Args:
            factory: Builds a connected client; None means no cache configured
            breaker: Guards connection attempts (default 5 failures, 60s cooldown)
            description: Shown in log lines
        """
        self._factory = factory
        self._breaker = breaker or CircuitBreaker(failure_threshold=5, cooldown_seconds=60)
        self._description = description
        self._client: CacheClient | None = None
        self._lock = threading.Lock()
        self._closed = False
        self._warned_unconfigured = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connected(self) -> bool:
        return self._client is not None

    def get(self) -> CacheClient | None:
        """
        Return the live client, connecting on first use.

        Returns:
            The client, or None when the cache is unconfigured, closed,
            unreachable or its breaker is open
        """
        with self._lock:
            if self._closed:
                return None
            if self._client is not None:
                return self._client

            if self._factory is None:
                if not self._warned_unconfigured:
                    logger.info("No shared cache configured, skipping cache invalidation")
                    self._warned_unconfigured = True
                return None

            if not self._breaker.can_execute():
                logger.debug(
                    f"{self._description} circuit open, next connect attempt in "
                    f"{self._breaker.remaining_cooldown():.0f}s"
                )
                return None

            logger.info(f"Initializing {self._description} connection for cache invalidation")
            try:
                client = self._factory()
                client.ping()
            except (redis.RedisError, OSError, ValueError) as e:
                self._breaker.record_failure()
                logger.warning(f"{self._description} not available, skipping cache invalidation: {e}")
                return None

            self._breaker.record_success()
            self._client = client
            logger.info(f"{self._description} connected")
            return client

    def reset(self, client: CacheClient | None = None) -> bool:
        """
        Drop the current client after a connection error; the next get() redials.

        Args:
            client: The client that failed. If the handle has already dropped
                it, nothing is closed and no failure is recorded.

        Returns:
            True if a client was dropped and the failure recorded
        """
        with self._lock:
            if self._client is None or (client is not None and self._client is not client):
                return False
            dropped, self._client = self._client, None
            self._breaker.record_failure()
        self._close_client(dropped)
        return True

    def close(self) -> bool:
        """
        Close the client. Safe to call repeatedly.

        Returns:
            True only for the call that actually performed the close
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            client, self._client = self._client, None
        if client is not None:
            self._close_client(client)
            logger.info(f"{self._description} connection closed")
        return True

    def _close_client(self, client: CacheClient) -> None:
        try:
            client.close()
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Error closing {self._description} connection: {e}")


def build_shared_cache(
    backend: str | None = None,
    url: str | None = None,
    connect_timeout: float | None = None,
) -> SharedCache:
    """Build the handle selected by TIMEKEEPER_CACHE_BACKEND / REDIS_URL."""
    backend = (backend or config.CACHE_BACKEND).lower()
    url = url if url is not None else config.REDIS_URL
    timeout = connect_timeout if connect_timeout is not None else config.CACHE_CONNECT_TIMEOUT_SECONDS

    if backend not in BACKENDS:
        raise ValueError(f"Unknown cache backend {backend!r}, expected one of {BACKENDS}")

    if backend == "memory":
        return SharedCache(CacheManager, description="In-memory cache")
    if backend == "none" or not url:
        return SharedCache(None)
    return SharedCache(lambda: RedisCache.from_url(url, timeout), description="Redis")
