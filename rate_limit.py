"""Fixed-window rate limiting.

Windows are anchored at the first request seen for a key and last exactly
``window_ms``. A bucket is reset lazily by the first request after its
``reset_at``. The in-memory limiter is per process; use the store-backed
limiter in ``app.stores_db`` when several processes must share one budget.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    remaining: int
    reset_at: float  # epoch seconds

    def retry_after_seconds(self, now: float | None = None) -> int:
        current = time.time() if now is None else now
        return max(1, int(math.ceil(self.reset_at - current)))


def _validate(key: str, max_requests: int, window_ms: int) -> None:
    if not isinstance(key, str) or not key:
        raise ValueError("rate limit key must be a non-empty string")
    if not isinstance(max_requests, int) or max_requests < 1:
        raise ValueError("max_requests must be a positive integer")
    if not isinstance(window_ms, int) or window_ms < 1:
        raise ValueError("window_ms must be a positive integer")


class RateLimiter:
    def check(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        raise NotImplementedError


class MemoryRateLimiter(RateLimiter):
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._buckets: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def check(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        _validate(key, max_requests, window_ms)
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or now > bucket["reset_at"]:
                bucket = {"count": 0, "reset_at": now + window_ms / 1000.0}
                self._buckets[key] = bucket
            if bucket["count"] >= max_requests:
                return RateLimitResult(ok=False, remaining=0, reset_at=bucket["reset_at"])
            bucket["count"] += 1
            return RateLimitResult(
                ok=True,
                remaining=max_requests - bucket["count"],
                reset_at=bucket["reset_at"],
            )

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)
