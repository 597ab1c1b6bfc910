import os
import sys
import threading
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from advisory_lock import MemoryAdvisoryLockManager


class TestMemoryAdvisoryLock(unittest.TestCase):
    def setUp(self) -> None:
        self.locks = MemoryAdvisoryLockManager()

    def test_try_lock_is_exclusive(self) -> None:
        self.assertTrue(self.locks.try_lock("lead-1"))
        self.assertFalse(self.locks.try_lock("lead-1"))
        self.assertTrue(self.locks.try_lock("lead-2"))
        self.assertTrue(self.locks.is_locked("lead-1"))
        self.locks.unlock("lead-1")
        self.assertFalse(self.locks.is_locked("lead-1"))
        self.assertTrue(self.locks.try_lock("lead-1"))

    def test_unlock_not_held_warns(self) -> None:
        with self.assertLogs("client_engine.locks", level="WARNING"):
            self.locks.unlock("never-locked")

    def test_held_releases_on_error(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.locks.held("lead-1") as acquired:
                self.assertTrue(acquired)
                raise RuntimeError("step failed")
        self.assertFalse(self.locks.is_locked("lead-1"))

    def test_held_does_not_release_foreign_lock(self) -> None:
        self.locks.try_lock("lead-1")
        with self.locks.held("lead-1") as acquired:
            self.assertFalse(acquired)
        self.assertTrue(self.locks.is_locked("lead-1"))

    def test_namespaces_do_not_collide(self) -> None:
        jobs = MemoryAdvisoryLockManager(namespace="job")
        self.assertNotEqual(jobs.key_for("x"), self.locks.key_for("x"))

    def test_only_one_thread_wins(self) -> None:
        barrier = threading.Barrier(8)
        wins: list = []

        def contender() -> None:
            barrier.wait()
            if self.locks.try_lock("lead-9"):
                wins.append(1)

        threads = [threading.Thread(target=contender) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(wins), 1)


if __name__ == "__main__":
    unittest.main()
