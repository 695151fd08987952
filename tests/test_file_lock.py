import gc
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path

from cargoyank.core.errors import CargoYankError, ErrorKind
from cargoyank.utils.file_lock import IndexLock


@unittest.skipIf(sys.platform == "win32", "flock semantics")
class TestIndexLock(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.lock_path = Path(self.tmp.name) / "cargo" / ".package-cache"

    def tearDown(self):
        self.tmp.cleanup()

    def test_acquire_and_release(self):
        lock = IndexLock(self.lock_path, 0)
        self.assertTrue(lock.locked)
        self.assertTrue(self.lock_path.exists())
        lock.release()
        self.assertFalse(lock.locked)
        lock.release()  # Releasing twice is harmless.

    def test_zero_timeout_fails_immediately(self):
        with IndexLock(self.lock_path, 0):
            start = time.monotonic()
            with self.assertRaises(CargoYankError) as ctx:
                IndexLock(self.lock_path, 0)
            self.assertLess(time.monotonic() - start, 0.5)
        self.assertEqual(ctx.exception.kind, ErrorKind.LOCK_TIMEOUT)

    def test_positive_timeout_waits_then_fails(self):
        with IndexLock(self.lock_path, 0):
            start = time.monotonic()
            with self.assertRaises(CargoYankError) as ctx:
                IndexLock(self.lock_path, 0.3)
            self.assertGreaterEqual(time.monotonic() - start, 0.3)
        self.assertEqual(ctx.exception.kind, ErrorKind.LOCK_TIMEOUT)

    def test_waiter_gets_lock_once_released(self):
        holder = IndexLock(self.lock_path, 0)
        timer = threading.Timer(0.2, holder.release)
        timer.start()
        try:
            waiter = IndexLock(self.lock_path, 5)
            self.assertTrue(waiter.locked)
            waiter.release()
        finally:
            timer.cancel()
            holder.release()

    def test_context_manager_releases(self):
        with IndexLock(self.lock_path, 0) as lock:
            self.assertTrue(lock.locked)
        self.assertFalse(lock.locked)
        IndexLock(self.lock_path, 0).release()

    def test_lock_is_released_when_collected(self):
        lock = IndexLock(self.lock_path, 0)
        del lock
        gc.collect()
        IndexLock(self.lock_path, 0).release()


if __name__ == '__main__':
    unittest.main()
