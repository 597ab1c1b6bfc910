"""Per-entity advisory locks.

``try_lock`` never waits: it returns False when another holder has the lock.
Callers release in ``finally`` on every path; ``held`` does that for them.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from client_engine.lock_keys import lock_key

logger = logging.getLogger("client_engine.locks")

LEAD_NAMESPACE = "lead"


class AdvisoryLockManager:
    namespace = LEAD_NAMESPACE

    def key_for(self, entity_id: str) -> int:
        return lock_key(self.namespace, entity_id)

    def try_lock(self, entity_id: str) -> bool:
        raise NotImplementedError

    def unlock(self, entity_id: str) -> None:
        raise NotImplementedError

    def is_locked(self, entity_id: str) -> bool:
        raise NotImplementedError

    @contextmanager
    def held(self, entity_id: str) -> Iterator[bool]:
        acquired = self.try_lock(entity_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.unlock(entity_id)


class MemoryAdvisoryLockManager(AdvisoryLockManager):
    """Process-local locks for single-instance deployments and tests."""

    def __init__(self, namespace: str = LEAD_NAMESPACE) -> None:
        self.namespace = namespace
        self._held: set[int] = set()
        self._lock = threading.Lock()

    def try_lock(self, entity_id: str) -> bool:
        key = self.key_for(entity_id)
        with self._lock:
            if key in self._held:
                logger.info("advisory_lock_busy namespace=%s entity_id=%s", self.namespace, entity_id)
                return False
            self._held.add(key)
        return True

    def unlock(self, entity_id: str) -> None:
        key = self.key_for(entity_id)
        with self._lock:
            if key not in self._held:
                logger.warning("advisory_unlock_not_held namespace=%s entity_id=%s", self.namespace, entity_id)
                return
            self._held.discard(key)

    def is_locked(self, entity_id: str) -> bool:
        key = self.key_for(entity_id)
        with self._lock:
            return key in self._held
