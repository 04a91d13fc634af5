# SPDX-License-Identifier: LGPL-3.0-or-later
import io
import unittest
from unittest.mock import patch

from rich.console import Console

from vchroot.cli.prompts import RichPrompts
from vchroot.storage.devices import DeviceInfo
from vchroot.storage.filesystems import FilesystemKind


class TestRichPrompts(unittest.TestCase):
    def setUp(self):
        self.out = io.StringIO()
        self.prompts = RichPrompts(Console(file=self.out, width=120))
        self.devices = [
            DeviceInfo("/dev/sda1", FilesystemKind.VFAT, "vfat", size_bytes=512 * 1024 * 1024),
            DeviceInfo("/dev/sda2", FilesystemKind.EXT4, "ext4", size_bytes=None, mountpoint="/mnt"),
        ]

    def test_choose_device_renders_table(self):
        with patch("vchroot.cli.prompts.Prompt.ask", return_value="2") as ask:
            picked = self.prompts.choose_device(self.devices, "root")
        self.assertEqual(picked, "/dev/sda2")
        self.assertEqual(ask.call_args.kwargs["choices"], ["1", "2"])
        text = self.out.getvalue()
        self.assertIn("/dev/sda1", text)
        self.assertIn("unmounted", text)

    def test_choose_device_skip(self):
        with patch("vchroot.cli.prompts.Prompt.ask", return_value="0") as ask:
            picked = self.prompts.choose_device(self.devices, "boot", allow_skip=True)
        self.assertIsNone(picked)
        self.assertIn("0", ask.call_args.kwargs["choices"])

    def test_choose_device_empty(self):
        with patch("vchroot.cli.prompts.Prompt.ask") as ask:
            self.assertIsNone(self.prompts.choose_device([], "EFI"))
        ask.assert_not_called()

    def test_ask_text_strips(self):
        with patch("vchroot.cli.prompts.Prompt.ask", return_value="  alice  "):
            self.assertEqual(self.prompts.ask_text("User"), "alice")

    def test_empty_passphrase_is_none(self):
        with patch("vchroot.cli.prompts.Prompt.ask", return_value="") as ask:
            self.assertIsNone(self.prompts.ask_passphrase("/dev/sda3"))
        self.assertTrue(ask.call_args.kwargs["password"])

    def test_confirm(self):
        with patch("vchroot.cli.prompts.Confirm.ask", return_value=True):
            self.assertTrue(self.prompts.confirm("Continue?"))

    def test_error_panel(self):
        self.prompts.error("File not found: /x")
        self.assertIn("File not found: /x", self.out.getvalue())


if __name__ == "__main__":
    unittest.main()
