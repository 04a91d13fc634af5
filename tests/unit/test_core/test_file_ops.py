# SPDX-License-Identifier: LGPL-3.0-or-later
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fakes.fake_logger import FakeLogger
from vchroot.core.exceptions import LockError
from vchroot.core.file_ops import SessionLock, atomic_write, read_pid, write_pid


class TestAtomicWrite(unittest.TestCase):
    def test_replaces_target_on_success(self):
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "summary.log"
            target.write_text("old")
            with atomic_write(target) as tmp:
                tmp.write_text("new")
            self.assertEqual(target.read_text(), "new")
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["summary.log"])

    def test_leaves_target_alone_on_error(self):
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "summary.log"
            target.write_text("old")
            with self.assertRaises(RuntimeError):
                with atomic_write(target) as tmp:
                    tmp.write_text("partial")
                    raise RuntimeError("boom")
            self.assertEqual(target.read_text(), "old")
            self.assertEqual(len(list(Path(td).iterdir())), 1)


class TestPidFiles(unittest.TestCase):
    def test_roundtrip_and_garbage(self):
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "x.pid"
            self.assertIsNone(read_pid(p))
            write_pid(p, 4242)
            self.assertEqual(read_pid(p), 4242)
            p.write_text("not-a-pid")
            self.assertIsNone(read_pid(p))


class TestSessionLock(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.path = Path(self.td.name) / "vchroot.lock"
        self.logger = FakeLogger()

    def tearDown(self):
        self.td.cleanup()

    def test_acquire_and_release(self):
        with SessionLock(self.logger, self.path):
            self.assertEqual(read_pid(self.path), os.getpid())
        self.assertFalse(self.path.exists())

    @patch("vchroot.core.file_ops.psutil.pid_exists", return_value=True)
    def test_live_owner_refuses(self, _exists):
        write_pid(self.path, 999999)
        with self.assertRaises(LockError):
            SessionLock(self.logger, self.path).acquire()
        self.assertEqual(read_pid(self.path), 999999)

    @patch("vchroot.core.file_ops.psutil.pid_exists", return_value=False)
    def test_stale_lock_replaced(self, _exists):
        write_pid(self.path, 999999)
        lock = SessionLock(self.logger, self.path)
        lock.acquire()
        try:
            self.assertEqual(read_pid(self.path), os.getpid())
            self.assertTrue(any("stale" in m.lower() for m in self.logger.messages("warning")))
        finally:
            lock.release()

    def test_release_leaves_foreign_lock(self):
        lock = SessionLock(self.logger, self.path)
        lock.acquire()
        write_pid(self.path, 999999)
        lock.release()
        self.assertEqual(read_pid(self.path), 999999)


if __name__ == "__main__":
    unittest.main()
