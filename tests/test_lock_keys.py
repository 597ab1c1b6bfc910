import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from client_engine.lock_keys import lock_key, lock_name


class TestLockKeys(unittest.TestCase):
    def test_key_is_stable_and_fits_bigint(self) -> None:
        key = lock_key("lead", "7d1c6f0e-2a0b-4f7e-9d65-1f1a3c7c9b10")
        self.assertEqual(key, lock_key("lead", "7d1c6f0e-2a0b-4f7e-9d65-1f1a3c7c9b10"))
        self.assertGreaterEqual(key, 0)
        self.assertLess(key, 2**63)

    def test_namespace_separates_keys(self) -> None:
        self.assertNotEqual(lock_key("lead", "abc"), lock_key("job", "abc"))
        self.assertEqual(lock_name("lead", "abc"), "lead:abc")

    def test_empty_parts_rejected(self) -> None:
        with self.assertRaises(ValueError):
            lock_key("", "abc")
        with self.assertRaises(ValueError):
            lock_key("lead", "")


if __name__ == "__main__":
    unittest.main()
