"""
Per-provider request limits.

Fixed-window counters (10 s burst, minute, hour) kept per provider. The
check and the increment happen under one lock in ``try_acquire`` so
concurrent monitoring workers cannot overshoot a limit.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from farewatch.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class RateLimit:
    per_minute: int
    per_hour: int
    burst: int

    def windows(self) -> Dict[str, Tuple[int, int]]:
        """Window name -> (length in seconds, max requests)."""
        return {
            "burst": (10, self.burst),
            "minute": (60, self.per_minute),
            "hour": (3600, self.per_hour),
        }


def default_rate_limit() -> RateLimit:
    return RateLimit(
        per_minute=settings.provider_requests_per_minute,
        per_hour=settings.provider_requests_per_hour,
        burst=settings.provider_burst_limit,
    )


class RateLimiter:
    def __init__(
        self,
        limits: Optional[Dict[str, RateLimit]] = None,
        default: Optional[RateLimit] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = dict(limits or {})
        self.default = default or default_rate_limit()
        self._clock = clock
        self._lock = threading.Lock()
        # provider -> window name -> (window index, count)
        self._counters: Dict[str, Dict[str, Tuple[int, int]]] = {}

    def limit_for(self, provider: str) -> RateLimit:
        return self.limits.get(provider, self.default)

    def _current_counts(self, provider: str, now: float) -> Dict[str, Tuple[int, int]]:
        counts = self._counters.setdefault(provider, {})
        for name, (seconds, _) in self.limit_for(provider).windows().items():
            index = int(now // seconds)
            stored = counts.get(name)
            if stored is None or stored[0] != index:
                counts[name] = (index, 0)
        return counts

    def _allowed(self, provider: str, now: float) -> bool:
        counts = self._current_counts(provider, now)
        for name, (_, maximum) in self.limit_for(provider).windows().items():
            if counts[name][1] >= maximum:
                return False
        return True

    def _increment(self, provider: str, now: float) -> None:
        counts = self._current_counts(provider, now)
        for name, (index, count) in list(counts.items()):
            counts[name] = (index, count + 1)

    def can_make_request(self, provider: str) -> bool:
        with self._lock:
            return self._allowed(provider, self._clock())

    def record_request(self, provider: str) -> None:
        with self._lock:
            self._increment(provider, self._clock())

    def try_acquire(self, provider: str) -> bool:
        """Check and count a request in one step. Returns False when limited."""
        with self._lock:
            now = self._clock()
            if not self._allowed(provider, now):
                return False
            self._increment(provider, now)
            return True

    def wait_time(self, provider: str) -> float:
        """Seconds until every exhausted window for the provider rolls over."""
        with self._lock:
            now = self._clock()
            counts = self._current_counts(provider, now)
            wait = 0.0
            for name, (seconds, maximum) in self.limit_for(provider).windows().items():
                if counts[name][1] >= maximum:
                    wait = max(wait, (counts[name][0] + 1) * seconds - now)
            return wait

    def usage(self, provider: str) -> Dict[str, Dict[str, float]]:
        with self._lock:
            now = self._clock()
            counts = self._current_counts(provider, now)
            return {
                name: {
                    "requests": counts[name][1],
                    "limit": maximum,
                    "remaining": max(maximum - counts[name][1], 0),
                    "resets_in": round((counts[name][0] + 1) * seconds - now, 2),
                }
                for name, (seconds, maximum) in self.limit_for(provider).windows().items()
            }

    def status(self) -> Dict[str, Dict]:
        with self._lock:
            providers = list(self._counters)
        return {
            provider: {
                "limited": not self.can_make_request(provider),
                "wait_seconds": round(self.wait_time(provider), 2),
                "windows": self.usage(provider),
            }
            for provider in providers
        }

    def reset(self, provider: Optional[str] = None) -> None:
        with self._lock:
            if provider is None:
                self._counters.clear()
            else:
                self._counters.pop(provider, None)
