"""
Keyed TTL cache for route statistics snapshots.

Two backends share the ``get/set/invalidate`` contract: an in-process
dict for single-worker deployments and tests, and Redis for
deployments running several monitoring workers.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class StatsCache(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        pass

    @abstractmethod
    def invalidate(self, key: str) -> None:
        pass


class InMemoryStatsCache(StatsCache):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisStatsCache(StatsCache):
    PREFIX = "farewatch:route_stats"

    def __init__(self, redis_client):
        self.redis = redis_client

    def _key(self, key: str) -> str:
        return f"{self.PREFIX}:{key}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self.redis.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding unreadable cache entry for {key}")
            self.invalidate(key)
            return None

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        self.redis.setex(self._key(key), ttl_seconds, json.dumps(value, default=str))

    def invalidate(self, key: str) -> None:
        self.redis.delete(self._key(key))


def build_stats_cache(redis_url: Optional[str] = None) -> StatsCache:
    if redis_url:
        import redis

        logger.info("Using Redis route statistics cache")
        return RedisStatsCache(redis.Redis.from_url(redis_url, decode_responses=True))
    return InMemoryStatsCache()
