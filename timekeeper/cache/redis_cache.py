"""
Redis-backed shared cache client.

Keys are enumerated with SCAN (never KEYS, which blocks the server) and
deleted in fixed-size batches.
"""

import logging

import redis

logger = logging.getLogger(__name__)

SCAN_COUNT = 500
DELETE_BATCH_SIZE = 500


class RedisCache:
    """Thin wrapper over redis-py exposing keys()/delete()/ping()/close()."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, connect_timeout: float = 5.0) -> "RedisCache":
        client = redis.Redis.from_url(
            url,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout,
            decode_responses=True,
        )
        return cls(client)

    def ping(self) -> bool:
        return bool(self._client.ping())

    def keys(self, pattern: str = "*") -> list[str]:
        return list(self._client.scan_iter(match=pattern, count=SCAN_COUNT))

    def delete(self, *keys: str) -> int:
        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start : start + DELETE_BATCH_SIZE]
            if batch:
                deleted += self._client.delete(*batch)
        return deleted

    def close(self) -> None:
        self._client.close()
