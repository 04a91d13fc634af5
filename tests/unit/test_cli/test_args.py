# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Two-phase parsing: config files become parser defaults, the CLI overrides them.
"""
import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from fakes.fake_logger import FakeLogger
from vchroot.cli.args import parse_args_with_config
from vchroot.core.logger import session_log_path


class TestParseArgsWithConfig(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.dir = Path(self.td.name)
        self.logger = FakeLogger()

    def tearDown(self):
        self.td.cleanup()

    def _cfg(self, text, name="chroot.yaml"):
        p = self.dir / name
        p.write_text(text)
        return str(p)

    def test_config_supplies_values(self):
        cfg = self._cfg("root_device: /dev/sdb2\nchroot_user: alice\n")
        args, conf, logger = parse_args_with_config(["--config", cfg, "--quiet"], logger=self.logger)
        self.assertEqual(args.root_device, "/dev/sdb2")
        self.assertEqual(args.user, "alice")
        self.assertIn("root_device", conf)
        self.assertIs(logger, self.logger)
        self.assertEqual(args.log_file, str(session_log_path()))

    def test_cli_overrides_config(self):
        cfg = self._cfg("root_device: /dev/sdb2\nroot_mount: /mnt/cfg\nenable_gui_support: false\n")
        args, _conf, _logger = parse_args_with_config(
            ["--config", cfg, "--root-mount", "/mnt/cli", "--gui"], logger=self.logger
        )
        self.assertEqual(args.root_mount, "/mnt/cli")
        self.assertTrue(args.gui)

    def test_cli_mounts_extend_config_mounts(self):
        cfg = self._cfg('ADDITIONAL_MOUNTS=("/srv:/srv:bind")\n', name="chroot.conf")
        args, _conf, _logger = parse_args_with_config(["--config", cfg, "--mount", "/dev/sdd1:/opt"], logger=self.logger)
        self.assertEqual(args.mount, ["/srv:/srv:bind", "/dev/sdd1:/opt"])

    def test_explicit_log_file(self):
        log = str(self.dir / "session.log")
        args, _conf, _logger = parse_args_with_config(["--log-file", log], logger=self.logger)
        self.assertEqual(args.log_file, log)

    def test_dump_config(self):
        cfg = self._cfg("root_device: /dev/sdb2\n")
        out = io.StringIO()
        with redirect_stdout(out), self.assertRaises(SystemExit) as ctx:
            parse_args_with_config(["--config", cfg, "--dump-config"], logger=self.logger)
        self.assertEqual(ctx.exception.code, 0)
        self.assertEqual(json.loads(out.getvalue()), {"root_device": "/dev/sdb2"})


class TestValidation(unittest.TestCase):
    def setUp(self):
        self.logger = FakeLogger()

    def _rejects(self, argv):
        with self.assertRaises(SystemExit) as ctx:
            parse_args_with_config(argv, logger=self.logger)
        self.assertNotEqual(ctx.exception.code, 0)

    def test_image_and_device_exclusive(self):
        with tempfile.NamedTemporaryFile(suffix=".qcow2") as img:
            self._rejects(["--image", img.name, "--root-device", "/dev/sdb2"])

    def test_quiet_needs_a_source(self):
        self._rejects(["--quiet"])

    def test_missing_image(self):
        self._rejects(["--image", "/nonexistent/disk.qcow2"])

    def test_relative_root_mount(self):
        self._rejects(["--root-device", "/dev/sdb2", "--root-mount", "mnt"])

    def test_host_root_as_mount(self):
        self._rejects(["--root-device", "/dev/sdb2", "--root-mount", "/"])

    def test_relative_shell(self):
        self._rejects(["--root-device", "/dev/sdb2", "--shell", "bash"])

    def test_bad_mount_spec(self):
        self._rejects(["--root-device", "/dev/sdb2", "--mount", "nocolon"])

    def test_mount_target_climbing_out_of_root(self):
        self._rejects(["--root-device", "/dev/sdb2", "--mount", "/srv:../../etc"])


if __name__ == "__main__":
    unittest.main()
