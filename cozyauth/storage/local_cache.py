from __future__ import annotations

import copy
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class LocalCache:
    """In-process stand-in for RedisCache used in tests and local development.

    Exposes the same async interface. Every operation runs under one lock,
    which makes ``take`` a true get-and-delete. Expired entries are dropped
    lazily when touched. ``clock`` is injectable so tests can move time.
    """

    BUCKET_SWEEP_INTERVAL = 60.0

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[Dict[str, Any], float]] = {}
        # key -> (tokens, last refill, time at which the bucket is full again)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._next_bucket_sweep = 0.0
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[Dict[str, Any], float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            expires_at = self._clock() + max(1, int(ttl_seconds))
            self._entries[key] = (copy.deepcopy(value), expires_at)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._live(key)
            return copy.deepcopy(entry[0]) if entry else None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def take(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._entries[key]
            return entry[0]

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return int(round(entry[1] - self._clock()))

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            self._sweep_buckets(now)
            tokens, last_ts, _full_at = self._buckets.get(key, (float(limit), now, now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._buckets[key] = (tokens, now, now + (limit - tokens) / refill_rate)
        return allowed

    def _sweep_buckets(self, now: float) -> None:
        if now < self._next_bucket_sweep:
            return
        self._next_bucket_sweep = now + self.BUCKET_SWEEP_INTERVAL
        for key in [k for k, bucket in self._buckets.items() if bucket[2] <= now]:
            del self._buckets[key]

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [k for k in list(self._entries) if k.startswith(prefix) and self._live(k)]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._buckets.clear()
