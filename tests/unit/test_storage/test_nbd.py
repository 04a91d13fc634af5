# SPDX-License-Identifier: LGPL-3.0-or-later
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fakes.fake_host import FakeHost
from fakes.fake_logger import FakeLogger
from vchroot.core.exceptions import BackingStoreError
from vchroot.session.resources import BackingStore, ResourceStack
from vchroot.storage.nbd import NbdConnector, guess_format, sniff_format


class TestFormatGuessing(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.dir = Path(self.td.name)

    def tearDown(self):
        self.td.cleanup()

    def test_extension_mapping(self):
        for name, fmt in (("a.qcow2", "qcow2"), ("a.vhd", "vpc"), ("a.vtoy", "vpc"), ("a.VMDK", "vmdk"), ("a.bin", "raw")):
            p = self.dir / name
            p.write_bytes(b"\0" * 16)
            self.assertEqual(guess_format(p), fmt, name)

    def test_magic_overrides_extension(self):
        p = self.dir / "disk.img"
        p.write_bytes(b"QFI\xfb" + b"\0" * 1020)
        self.assertEqual(sniff_format(p), "qcow2")
        self.assertEqual(guess_format(p), "qcow2")

    def test_vhd_footer(self):
        p = self.dir / "disk.raw"
        p.write_bytes(b"\0" * 1024 + b"conectix" + b"\0" * 504)
        self.assertEqual(guess_format(p), "vpc")


class TestNbdConnector(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        base = Path(self.td.name)
        self.sys_block = base / "sys" / "block"
        (self.sys_block / "nbd0").mkdir(parents=True)
        (self.sys_block / "nbd1").mkdir(parents=True)
        self.image = base / "guest.vhd"
        self.image.write_bytes(b"\0" * 4096)
        self.host = FakeHost()
        self.stack = ResourceStack()
        self.nbd = NbdConnector(FakeLogger(), self.stack, sys_block=self.sys_block, dev_dir=Path("/dev"), slots=2)

    def tearDown(self):
        self.td.cleanup()

    def test_attach_pushes_handle(self):
        (self.sys_block / "nbd0" / "pid").write_text("1234\n")
        with patch("vchroot.storage.nbd.psutil.pid_exists", return_value=True), self.host.installed():
            handle = self.nbd.attach(self.image)
        self.assertEqual(handle.device_node, "/dev/nbd1")
        self.assertEqual(self.stack.snapshot(), (handle,))
        self.assertEqual(self.host.commands("partprobe"), [["partprobe", "/dev/nbd1"]])

    def test_falls_back_to_raw_once(self):
        self.host.fail("qemu-nbd", "-c", "/dev/nbd0", "-f", "vpc", rc=1, stderr="Could not open image")
        with self.host.installed():
            handle = self.nbd.attach(self.image)
        connects = [c for c in self.host.commands("qemu-nbd") if c[1] == "-c"]
        self.assertEqual([c[4] for c in connects], ["vpc", "raw"])
        self.assertEqual(handle.fmt, "raw")
        self.assertEqual(len(self.stack), 1)

    def test_both_formats_failing_raises(self):
        self.host.fail("qemu-nbd", "-c", rc=1, stderr="Could not open image")
        with self.host.installed():
            with self.assertRaises(BackingStoreError) as ctx:
                self.nbd.attach(self.image)
        self.assertEqual(len(self.stack), 0)
        self.assertIn("raw", ctx.exception.context["attempts"])

    def test_stale_slot_freed(self):
        (self.sys_block / "nbd0" / "pid").write_text("999999\n")
        with patch("vchroot.storage.nbd.psutil.pid_exists", return_value=False), self.host.installed():
            self.assertEqual(self.nbd.find_free_slot(), "/dev/nbd0")
        self.assertIn(["qemu-nbd", "-d", "/dev/nbd0"], self.host.calls)

    def test_no_free_slot(self):
        for i in (0, 1):
            (self.sys_block / f"nbd{i}" / "pid").write_text("1\n")
        with patch("vchroot.storage.nbd.psutil.pid_exists", return_value=True), self.host.installed():
            with self.assertRaises(BackingStoreError):
                self.nbd.find_free_slot()

    def test_missing_image(self):
        with self.host.installed():
            with self.assertRaises(BackingStoreError):
                self.nbd.attach(Path(self.td.name) / "nope.qcow2")
        self.assertEqual(self.host.calls, [])

    def test_detach_failure_names_node(self):
        self.host.fail("qemu-nbd", "--disconnect", rc=1, stderr="busy")
        handle = BackingStore(path=str(self.image), device_node="/dev/nbd0", fmt="vpc")
        with self.host.installed():
            with self.assertRaises(BackingStoreError) as ctx:
                self.nbd.detach(handle)
        self.assertEqual(str(ctx.exception), "could not detach backing store node /dev/nbd0")


if __name__ == "__main__":
    unittest.main()
