# SPDX-License-Identifier: LGPL-3.0-or-later
import os
import unittest
from unittest.mock import Mock, patch

from fakes.fake_host import FakeHost
from fakes.fake_logger import FakeLogger
from vchroot.core.exceptions import EncryptionError
from vchroot.session.resources import EncryptedVolume, ResourceStack
from vchroot.storage.devices import DeviceResolver
from vchroot.storage.luks import EncryptionLayer


class TestEncryptionLayer(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()
        self.logger = FakeLogger()
        self.stack = ResourceStack()

    def _layer(self, **kw):
        return EncryptionLayer(
            self.logger, self.stack, DeviceResolver(self.logger), clock=lambda: 1700000000, **kw
        )

    def test_keyfile_used_first(self):
        layer = self._layer(keyfile="/root/luks.key", passphrase_env="VCHROOT_PW")
        with patch.dict(os.environ, {"VCHROOT_PW": "ignored"}), self.host.installed():
            opened = layer.open_all(["/dev/sdb3"])
        self.assertEqual(opened[0].mapper_path, "/dev/mapper/vchroot-luks1700000000_0")
        cmd = self.host.commands("cryptsetup")[0]
        self.assertIn("/root/luks.key", cmd)

    @patch("vchroot.storage.luks.U.run_cmd")
    def test_env_passphrase_goes_to_stdin(self, run_cmd):
        run_cmd.return_value = Mock(returncode=0, stderr="")
        layer = self._layer(passphrase_env="VCHROOT_PW")
        with patch.dict(os.environ, {"VCHROOT_PW": "s3cret"}), patch("time.sleep"):
            layer.open_all(["/dev/sdb3"])
        cmd = run_cmd.call_args[0][1]
        self.assertNotIn("s3cret", cmd)
        self.assertEqual(run_cmd.call_args[1]["input_text"], "s3cret")

    def test_quiet_without_key_skips(self):
        layer = self._layer(quiet=True, prompt=Mock())
        with self.host.installed():
            self.assertEqual(layer.open_all(["/dev/sdb3"]), [])
        self.assertEqual(self.host.commands("cryptsetup"), [])
        self.assertEqual(len(self.stack), 0)

    def test_wrong_passphrase_skips_partition_only(self):
        self.host.fail("cryptsetup", "luksOpen", "--key-file=-", "/dev/sdb3", rc=2, stderr="No key available")
        prompt = Mock(return_value="guess")
        layer = self._layer(prompt=prompt)
        with self.host.installed():
            opened = layer.open_all(["/dev/sdb3", "/dev/sdc1"])
        self.assertEqual(prompt.call_count, EncryptionLayer.MAX_PROMPT_ATTEMPTS + 1)
        self.assertEqual([v.source_partition for v in opened], ["/dev/sdc1"])
        self.assertEqual([h.source_partition for h in self.stack], ["/dev/sdc1"])

    def test_empty_passphrase_cancels(self):
        layer = self._layer(prompt=Mock(return_value=None))
        with self.host.installed():
            self.assertEqual(layer.open_all(["/dev/sdb3"]), [])
        self.assertEqual(self.host.commands("cryptsetup"), [])

    def test_close_failure_names_mapping(self):
        self.host.fail("cryptsetup", "luksClose", rc=5, stderr="Device busy")
        with self.host.installed():
            with self.assertRaises(EncryptionError) as ctx:
                self._layer().close(EncryptedVolume("/dev/sdb3", "vchroot-luks1_0"))
        self.assertIn("vchroot-luks1_0", str(ctx.exception))

    def test_list_encrypted_partitions(self):
        self.host.add_disk("/dev/sdb", [
            ("/dev/sdb1", "vfat", 512 * 1024**2),
            ("/dev/sdb2", "crypto_LUKS", 20 * 1024**3),
            ("/dev/sdb3", "ext4", 1024**3),
        ])
        with self.host.installed():
            found = self._layer().list_encrypted_partitions("/dev/sdb")
        self.assertEqual(found, ["/dev/sdb2"])


if __name__ == "__main__":
    unittest.main()
