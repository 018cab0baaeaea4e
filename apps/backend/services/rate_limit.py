"""Per chatbot+session request limits.

Hits live in bounded TTL caches, so idle or adversarial session ids expire on
their own instead of piling up in a map that needs sweeping.
"""
from __future__ import annotations

import math
import threading
import time
from typing import Callable

from cachetools import TTLCache

from apps.backend.config import get_settings
from apps.backend.utils.errors import RateLimitedError

MINUTE = 60
HOUR = 3600


class SlidingWindowLimiter:
    def __init__(self, maxsize: int | None = None, clock: Callable[[], float] | None = None):
        size = maxsize or get_settings().rate_limit_cache_size
        self._clock = clock or time.monotonic
        self._minute: TTLCache = TTLCache(maxsize=size, ttl=MINUTE, timer=self._clock)
        self._hour: TTLCache = TTLCache(maxsize=size, ttl=HOUR, timer=self._clock)
        self._lock = threading.Lock()

    def _prune(self, cache: TTLCache, key: str, window: int, now: float) -> list[float]:
        return [t for t in cache.get(key, ()) if now - t < window]

    def check(self, key: str, per_minute: int, per_hour: int) -> None:
        """Record one request for ``key`` or raise RateLimitedError with a retry hint."""
        now = self._clock()
        with self._lock:
            minute_hits = self._prune(self._minute, key, MINUTE, now)
            hour_hits = self._prune(self._hour, key, HOUR, now)
            if per_minute > 0 and len(minute_hits) >= per_minute:
                retry = math.ceil(MINUTE - (now - minute_hits[0]))
                raise RateLimitedError(max(1, retry))
            if per_hour > 0 and len(hour_hits) >= per_hour:
                retry = math.ceil(HOUR - (now - hour_hits[0]))
                raise RateLimitedError(max(1, retry))
            minute_hits.append(now)
            hour_hits.append(now)
            # re-inserting refreshes the entry's TTL
            self._minute[key] = minute_hits
            self._hour[key] = hour_hits

    def __len__(self) -> int:
        return len(self._hour)


_limiter: SlidingWindowLimiter | None = None


def get_rate_limiter() -> SlidingWindowLimiter:
    global _limiter
    if _limiter is None:
        _limiter = SlidingWindowLimiter()
    return _limiter


def check_chatbot_rate_limit(chatbot, session_id: str) -> None:
    if not chatbot.rate_limit_enabled:
        return
    get_rate_limiter().check(
        f"{chatbot.id}:{session_id}",
        per_minute=chatbot.requests_per_minute or 0,
        per_hour=chatbot.requests_per_hour or 0,
    )
