"""
Tests for the shared cache layer.

Covers:
- CacheManager key listing, deletion, TTL and LRU
- SharedCache lazy connect, circuit breaker, close-once
- CacheInvalidator scope resolution and failure isolation
"""

from unittest.mock import MagicMock

import pytest
import redis

from tests.fixtures import FlakyCacheClient, SlowCacheClient, unreachable_cache_factory
from timekeeper import config
from timekeeper.cache import (
    CacheInvalidationScope,
    CacheInvalidator,
    CacheManager,
    RedisCache,
    SharedCache,
    build_shared_cache,
    meeting_scope,
)
from timekeeper.resilience import CircuitBreaker, CircuitBreakerState


def seed_meeting_keys(cache):
    for key in [
        "meetings:u1:7:list",
        "meetings:u1:7:page2",
        "meeting-status:u1:7",
        "meeting-counts:u2:7",
        "meetings:global:summary",
        "tickets:u1:open",
    ]:
        cache.set(key, {"cached": True})


class TestCacheManager:
    def test_keys_glob(self):
        cache = CacheManager()
        seed_meeting_keys(cache)
        assert sorted(cache.keys("meetings:u1:*")) == ["meetings:u1:7:list", "meetings:u1:7:page2"]

    def test_delete_counts_existing(self):
        cache = CacheManager()
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a", "b", "missing") == 2
        assert cache.get("a") is None

    def test_expired_keys_not_listed(self):
        ticks = [0.0]
        cache = CacheManager(clock=lambda: ticks[0])
        cache.set("short", 1, ttl_seconds=5)
        cache.set("long", 1)
        ticks[0] = 10.0
        assert cache.keys("*") == ["long"]
        assert cache.get("short") is None

    def test_lru_eviction(self):
        cache = CacheManager(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 1

    def test_glob_then_delete(self):
        cache = CacheManager()
        seed_meeting_keys(cache)
        assert cache.delete(*cache.keys("meeting-*")) == 2
        assert cache.keys("meeting-*") == []

    def test_stats(self):
        cache = CacheManager()
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")
        assert cache.stats().to_dict() == {"hits": 1, "misses": 1, "size": 1, "hit_rate": 0.5}


class TestRedisCache:
    def test_uses_scan_and_batches_deletes(self):
        client = MagicMock()
        client.scan_iter.return_value = iter(["k1", "k2"])
        client.delete.return_value = 2
        cache = RedisCache(client)

        keys = cache.keys("meetings:*")
        assert cache.delete(*keys) == 2

        client.scan_iter.assert_called_once_with(match="meetings:*", count=500)
        client.delete.assert_called_once_with("k1", "k2")
        client.keys.assert_not_called()

    def test_delete_nothing(self):
        client = MagicMock()
        assert RedisCache(client).delete() == 0
        client.delete.assert_not_called()


class TestSharedCache:
    def test_lazy_connect(self):
        factory = MagicMock(return_value=CacheManager())
        cache = SharedCache(factory)
        factory.assert_not_called()

        client = cache.get()
        assert cache.get() is client
        factory.assert_called_once()

    def test_unconfigured_returns_none(self):
        cache = SharedCache(None)
        assert cache.get() is None
        assert cache.connected is False

    def test_unreachable_returns_none(self):
        cache = SharedCache(unreachable_cache_factory)
        assert cache.get() is None

    def test_breaker_stops_redialing(self):
        factory = MagicMock(side_effect=redis.ConnectionError("refused"))
        cache = SharedCache(factory, breaker=CircuitBreaker(failure_threshold=2, cooldown_seconds=60))

        for _ in range(5):
            assert cache.get() is None

        assert factory.call_count == 2

    def test_close_exactly_once(self):
        client = FlakyCacheClient({})
        cache = SharedCache(lambda: client)
        cache.get()

        assert cache.close() is True
        assert cache.close() is False
        assert client.closed == 1
        assert cache.get() is None

    def test_reset_redials(self):
        clients = [CacheManager(), CacheManager()]
        cache = SharedCache(MagicMock(side_effect=clients))
        assert cache.get() is clients[0]
        cache.reset()
        assert cache.get() is clients[1]

    def test_build_backends(self):
        assert build_shared_cache("none").get() is None
        assert build_shared_cache("redis", url="").get() is None
        assert isinstance(build_shared_cache("memory").get(), CacheManager)

    def test_build_rejects_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown cache backend"):
            build_shared_cache("memcached")


class TestCacheInvalidator:
    def test_meeting_scope(self):
        scope = meeting_scope(["u1", "u2", "u1"])
        assert scope.user_ids == ("u1", "u2")
        assert "meetings:u1:*" in scope.user_patterns()
        assert scope.global_patterns == ("meetings:*", "meeting-status:*", "meeting-counts:*")

    def test_clears_user_and_global_keys(self, shared_cache, memory_cache):
        seed_meeting_keys(memory_cache)
        cleared = CacheInvalidator(shared_cache).invalidate(meeting_scope(["u1", "u2"]))

        assert cleared == 5
        assert memory_cache.keys("*") == ["tickets:u1:open"]

    def test_per_user_only_scope(self, shared_cache, memory_cache):
        seed_meeting_keys(memory_cache)
        scope = CacheInvalidationScope(patterns=("meetings:{user_id}:*",), user_ids=("u1",))
        assert CacheInvalidator(shared_cache).invalidate(scope) == 2

    def test_unavailable_cache_is_skipped(self):
        invalidator = CacheInvalidator(SharedCache(unreachable_cache_factory))
        assert invalidator.invalidate(meeting_scope(["u1"])) == 0

    def test_failing_pattern_does_not_stop_others(self):
        client = FlakyCacheClient({"meetings:u1:*": redis.ResponseError("WRONGTYPE")})
        seed_meeting_keys(client)
        cache = SharedCache(lambda: client)

        cleared = CacheInvalidator(cache, max_workers=2).invalidate(
            CacheInvalidationScope(
                patterns=("meetings:{user_id}:*", "meeting-status:{user_id}:*"), user_ids=("u1",)
            )
        )

        assert cleared == 1
        assert cache.connected

    def test_connection_loss_resets_handle(self):
        client = FlakyCacheClient({"meetings:u1:*": redis.ConnectionError("reset by peer")})
        cache = SharedCache(lambda: client)

        CacheInvalidator(cache).invalidate(
            CacheInvalidationScope(patterns=("meetings:{user_id}:*",), user_ids=("u1",))
        )

        assert not cache.connected
        assert client.closed == 1

    def test_connection_loss_records_one_failure_per_pass(self):
        dead = FlakyCacheClient({}, fail_all=redis.ConnectionError("reset by peer"))
        healthy = CacheManager()
        breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=60)
        cache = SharedCache(MagicMock(side_effect=[dead, healthy]), breaker=breaker)

        cleared = CacheInvalidator(cache, max_workers=1).invalidate(meeting_scope(["u1", "u2"]))

        assert cleared == 0
        assert dead.keys_calls == 1
        assert dead.closed == 1
        assert breaker.failure_count == 1
        assert breaker.state == CircuitBreakerState.CLOSED
        assert cache.get() is healthy

    def test_reset_ignores_already_replaced_client(self):
        first, second = CacheManager(), CacheManager()
        cache = SharedCache(MagicMock(side_effect=[first, second]))
        assert cache.get() is first
        assert cache.reset(first) is True
        assert cache.get() is second

        assert cache.reset(first) is False
        assert cache.get() is second

    def test_concurrency_bounded_by_max_workers(self):
        client = SlowCacheClient(delay=0.05)
        cache = SharedCache(lambda: client)

        CacheInvalidator(cache, max_workers=2).invalidate(meeting_scope(["u1", "u2", "u3"]))

        assert 1 < client.peak <= 2

    def test_default_concurrency_from_config(self, monkeypatch):
        monkeypatch.setattr(config, "CACHE_CONCURRENCY", 3)
        client = SlowCacheClient(delay=0.05)
        cache = SharedCache(lambda: client)

        invalidator = CacheInvalidator(cache)
        invalidator.invalidate(meeting_scope(["u1", "u2", "u3"]))

        assert invalidator.max_workers == 3
        assert 1 < client.peak <= 3

    def test_unexpected_error_is_swallowed(self):
        cache = MagicMock()
        cache.get.side_effect = RuntimeError("bug")
        assert CacheInvalidator(cache).invalidate(meeting_scope(["u1"])) == 0


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3, cooldown_seconds=60)
        for _ in range(3):
            breaker.record_failure()
        assert breaker.state == CircuitBreakerState.OPEN
        assert not breaker.can_execute()

    def test_half_open_after_cooldown(self):
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=0)
        breaker.record_failure()
        assert breaker.can_execute()
        assert breaker.state == CircuitBreakerState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitBreakerState.CLOSED

    def test_failed_trial_call_reopens_with_fresh_cooldown(self):
        ticks = [100.0]
        breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=60, clock=lambda: ticks[0])
        breaker.record_failure()
        breaker.record_failure()
        ticks[0] = 130.0
        assert breaker.remaining_cooldown() == 30.0
        assert not breaker.can_execute()

        ticks[0] = 160.0
        assert breaker.can_execute()
        breaker.record_failure()
        assert breaker.state == CircuitBreakerState.OPEN
        assert breaker.remaining_cooldown() == 60.0

    def test_rejects_zero_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)
