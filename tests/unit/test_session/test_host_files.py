# SPDX-License-Identifier: LGPL-3.0-or-later
import os
import tempfile
import unittest
from pathlib import Path

from fakes.fake_logger import FakeLogger
from vchroot.session.host_files import HostFileCopier
from vchroot.session.resources import ResourceStack


class TestHostFileCopier(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        base = Path(self.td.name)
        self.host_root = base / "host"
        (self.host_root / "etc").mkdir(parents=True)
        (self.host_root / "etc" / "resolv.conf").write_text("nameserver 10.0.0.1\n")
        (self.host_root / "etc" / "hosts").write_text("127.0.0.1 host\n")
        self.root = base / "chroot"
        (self.root / "etc").mkdir(parents=True)
        (self.root / "etc" / "hosts").write_text("127.0.0.1 guest\n")
        self.stack = ResourceStack()
        self.copier = HostFileCopier(FakeLogger(), self.stack, host_root=self.host_root)

    def tearDown(self):
        self.td.cleanup()

    def test_copy_then_restore(self):
        handles = self.copier.copy_into(self.root)
        self.assertEqual(len(handles), 2)
        self.assertEqual((self.root / "etc" / "hosts").read_text(), "127.0.0.1 host\n")
        self.assertEqual((self.root / "etc" / "resolv.conf").read_text(), "nameserver 10.0.0.1\n")

        for h in reversed(handles):
            self.copier.restore(h)

        self.assertEqual((self.root / "etc" / "hosts").read_text(), "127.0.0.1 guest\n")
        self.assertFalse((self.root / "etc" / "resolv.conf").exists())
        self.assertEqual(sorted(p.name for p in (self.root / "etc").iterdir()), ["hosts"])

    def test_symlinked_target_left_alone(self):
        os.symlink("../run/systemd/resolve/stub-resolv.conf", self.root / "etc" / "resolv.conf")
        handles = self.copier.copy_into(self.root)
        self.assertEqual([Path(h.target).name for h in handles], ["hosts"])
        self.assertTrue((self.root / "etc" / "resolv.conf").is_symlink())

    def test_root_without_etc(self):
        empty = Path(self.td.name) / "empty"
        empty.mkdir()
        self.assertEqual(self.copier.copy_into(empty), [])


if __name__ == "__main__":
    unittest.main()
