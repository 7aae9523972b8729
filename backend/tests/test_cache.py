"""Tests for the route statistics cache backends."""
import json
from unittest.mock import MagicMock

from farewatch.services.cache import InMemoryStatsCache, RedisStatsCache, build_stats_cache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestInMemoryStatsCache:
    def test_get_missing_returns_none(self):
        assert InMemoryStatsCache().get("JFK-LAX:30d") is None

    def test_set_then_get(self):
        cache = InMemoryStatsCache()
        cache.set("JFK-LAX:30d", {"count": 3}, 60)
        assert cache.get("JFK-LAX:30d") == {"count": 3}

    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = InMemoryStatsCache(clock=clock)
        cache.set("JFK-LAX:30d", {"count": 3}, 60)

        clock.now += 59
        assert cache.get("JFK-LAX:30d") is not None

        clock.now += 1
        assert cache.get("JFK-LAX:30d") is None

    def test_invalidate(self):
        cache = InMemoryStatsCache()
        cache.set("JFK-LAX:30d", {"count": 3}, 60)
        cache.invalidate("JFK-LAX:30d")
        assert cache.get("JFK-LAX:30d") is None

    def test_invalidate_missing_key_is_noop(self):
        InMemoryStatsCache().invalidate("nothing")


class TestRedisStatsCache:
    def test_set_uses_setex_with_prefix(self):
        client = MagicMock()
        cache = RedisStatsCache(client)
        cache.set("JFK-LAX:30d", {"count": 3}, 120)
        client.setex.assert_called_once_with(
            "farewatch:route_stats:JFK-LAX:30d", 120, json.dumps({"count": 3})
        )

    def test_get_decodes_json(self):
        client = MagicMock()
        client.get.return_value = json.dumps({"count": 3})
        assert RedisStatsCache(client).get("JFK-LAX:30d") == {"count": 3}

    def test_get_missing(self):
        client = MagicMock()
        client.get.return_value = None
        assert RedisStatsCache(client).get("JFK-LAX:30d") is None

    def test_unreadable_entry_is_dropped(self):
        client = MagicMock()
        client.get.return_value = "{not json"
        assert RedisStatsCache(client).get("JFK-LAX:30d") is None
        client.delete.assert_called_once_with("farewatch:route_stats:JFK-LAX:30d")


class TestBuildStatsCache:
    def test_defaults_to_in_memory(self):
        assert isinstance(build_stats_cache(None), InMemoryStatsCache)
