"""Read-through TTL cache with single-flight misses.

Concurrent callers asking for the same missing key share one call to
``compute``. Errors from ``compute`` reach every waiter and are never stored,
so the next call computes again.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict

logger = logging.getLogger("client_engine.cache")


class Cache:
    def get_or_compute(self, key: str, ttl_ms: int, compute: Callable[[], Any]) -> Any:
        raise NotImplementedError

    def invalidate(self, key: str) -> None:
        raise NotImplementedError


class TTLCache(Cache):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, tuple[Any, float]] = {}
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def get_or_compute(self, key: str, ttl_ms: int, compute: Callable[[], Any]) -> Any:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                value, expires_at = entry
                if self._clock() < expires_at:
                    return copy.deepcopy(value)
                del self._entries[key]
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future

        if not leader:
            return copy.deepcopy(future.result())

        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(exc)
            logger.warning("cache_compute_failed key=%s error=%s", key, exc)
            raise
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_ms / 1000.0)
            self._inflight.pop(key, None)
        future.set_result(value)
        return copy.deepcopy(value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k.startswith(prefix)]:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
