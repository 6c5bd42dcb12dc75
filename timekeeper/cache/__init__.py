"""
Shared cache layer.

Provides:
- SharedCache: lazily-connected handle owned by the daemon
- CacheInvalidator: best-effort pattern deletion with bounded concurrency
- CacheManager / RedisCache: in-memory and Redis backends
"""

from .cache_manager import CacheManager, CacheStats
from .handle import SharedCache, build_shared_cache
from .invalidator import CacheInvalidationScope, CacheInvalidator, meeting_scope
from .redis_cache import RedisCache

__all__ = [
    "CacheInvalidationScope",
    "CacheInvalidator",
    "CacheManager",
    "CacheStats",
    "RedisCache",
    "SharedCache",
    "build_shared_cache",
    "meeting_scope",
]
