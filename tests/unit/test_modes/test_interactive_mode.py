# SPDX-License-Identifier: LGPL-3.0-or-later
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

from fakes.fake_logger import FakeLogger
from vchroot.config.session_config import SessionConfig
from vchroot.core.exceptions import Fatal
from vchroot.modes.interactive_mode import InteractiveMode
from vchroot.storage.devices import DeviceInfo
from vchroot.storage.filesystems import FilesystemKind

MiB = 1024 * 1024

DEVICES = [
    DeviceInfo("/dev/sda1", FilesystemKind.VFAT, size_bytes=512 * MiB),
    DeviceInfo("/dev/sda2", FilesystemKind.EXT4, size_bytes=50000 * MiB),
    DeviceInfo("/dev/sda3", FilesystemKind.EXT4, size_bytes=1024 * MiB),
    DeviceInfo("/dev/sda4", FilesystemKind.NTFS, size_bytes=90000 * MiB),
    DeviceInfo("/dev/sdb1", FilesystemKind.EXT4, size_bytes=1024 * MiB, mountpoint="/"),
]


class TestInteractiveMode(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.addCleanup(self.td.cleanup)
        self.firmware = Path(self.td.name) / "efi"
        self.prompts = Mock()
        self.resolver = Mock()
        self.resolver.list_candidate_devices.return_value = DEVICES

    def _mode(self, uefi=True):
        if uefi:
            self.firmware.mkdir(exist_ok=True)
        return InteractiveMode(FakeLogger(), self.prompts, self.resolver, firmware_dir=self.firmware)

    def _texts(self, user="", mount_point="/mnt/chroot", extras=("",)):
        return [user, mount_point, *extras]

    def test_physical_flow(self):
        self.prompts.ask_choice.return_value = "physical"
        self.prompts.choose_device.side_effect = ["/dev/sda2", "/dev/sda1", "/dev/sda3"]
        self.prompts.confirm.return_value = False
        self.prompts.ask_text.side_effect = self._texts(user="alice", mount_point="/mnt/target/", extras=("/srv:/srv:bind",))

        cfg = self._mode().run(SessionConfig())

        self.assertEqual(cfg.root_device, "/dev/sda2")
        self.assertEqual(cfg.efi_part, "/dev/sda1")
        self.assertEqual(cfg.boot_part, "/dev/sda3")
        self.assertEqual(cfg.target_user, "alice")
        self.assertEqual(cfg.root_mount, "/mnt/target")
        self.assertEqual([str(m) for m in cfg.additional_mounts], ["/srv:/srv:bind"])
        self.assertIsNone(cfg.image)

        efi_choices = self.prompts.choose_device.call_args_list[1][0][0]
        boot_choices = self.prompts.choose_device.call_args_list[2][0][0]
        self.assertEqual([d.path for d in efi_choices], ["/dev/sda1"])
        # NTFS, FAT, the root itself and mounted devices are never offered for /boot
        self.assertEqual([d.path for d in boot_choices], ["/dev/sda3"])

    def test_no_efi_question_on_bios_host(self):
        self.prompts.ask_choice.return_value = "physical"
        self.prompts.choose_device.side_effect = ["/dev/sda2", None]
        self.prompts.confirm.return_value = False
        self.prompts.ask_text.side_effect = self._texts()

        cfg = self._mode(uefi=False).run(SessionConfig())
        self.assertIsNone(cfg.efi_part)
        self.assertEqual(self.prompts.choose_device.call_count, 2)

    def test_configured_root_device_not_asked(self):
        self.prompts.ask_choice.return_value = "physical"
        self.prompts.choose_device.side_effect = [None, None]
        self.prompts.confirm.return_value = True
        self.prompts.ask_text.side_effect = self._texts()

        cfg = self._mode().run(SessionConfig(root_device="/dev/sda3"))
        self.assertEqual(cfg.root_device, "/dev/sda3")
        self.assertTrue(cfg.gui_enabled)
        self.assertEqual(self.prompts.choose_device.call_count, 2)

    def test_image_flow_retries_missing_file(self):
        image = Path(self.td.name) / "disk.qcow2"
        image.write_bytes(b"\0")
        self.prompts.ask_choice.return_value = "image"
        self.prompts.confirm.return_value = False
        self.prompts.ask_text.side_effect = ["/nope.qcow2", str(image), *self._texts()]

        cfg = self._mode().run(SessionConfig(root_device="/dev/sda2"))

        self.assertEqual(cfg.image, str(image))
        self.assertIsNone(cfg.root_device)
        self.assertIsNone(cfg.efi_part)
        self.prompts.error.assert_called_once()
        self.prompts.choose_device.assert_not_called()

    def test_invalid_extra_mount_asked_again(self):
        self.prompts.ask_choice.return_value = "physical"
        self.prompts.choose_device.side_effect = ["/dev/sda2", None, None]
        self.prompts.confirm.return_value = False
        self.prompts.ask_text.side_effect = self._texts(extras=("nocolon", "/dev/sdc1:/home"))

        cfg = self._mode().run(SessionConfig())
        self.assertEqual([str(m) for m in cfg.additional_mounts], ["/dev/sdc1:/home"])
        self.prompts.error.assert_called_once()

    def test_no_devices(self):
        self.resolver.list_candidate_devices.return_value = []
        self.prompts.ask_choice.return_value = "physical"
        with self.assertRaises(Fatal):
            self._mode().run(SessionConfig())


if __name__ == "__main__":
    unittest.main()
