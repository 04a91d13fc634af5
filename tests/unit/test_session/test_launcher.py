# SPDX-License-Identifier: LGPL-3.0-or-later
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from fakes.fake_host import populate_root
from fakes.fake_logger import FakeLogger
from vchroot.config.session_config import SessionConfig
from vchroot.core.exceptions import ShellNotFoundError, UserNotFoundInTargetError
from vchroot.session.launcher import (
    SessionLauncher,
    build_command,
    prepare_user,
    resolve_in_root,
    resolve_shell,
)


def _exe(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!fake\n")
    os.chmod(path, 0o755)


class TestResolveInRoot(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.root = Path(self.td.name)

    def tearDown(self):
        self.td.cleanup()

    def test_relative_and_absolute_links(self):
        _exe(self.root / "usr" / "bin" / "bash")
        os.symlink("usr/bin", self.root / "bin")
        (self.root / "etc" / "alternatives").mkdir(parents=True)
        os.symlink("/bin/bash", self.root / "etc" / "alternatives" / "sh")
        self.assertEqual(resolve_in_root(self.root, "/bin/bash"), "/usr/bin/bash")
        self.assertEqual(resolve_in_root(self.root, "/etc/alternatives/sh"), "/usr/bin/bash")

    def test_dotdot_cannot_escape(self):
        os.symlink("../../../../etc", self.root / "escape")
        self.assertEqual(resolve_in_root(self.root, "/escape/passwd"), "/etc/passwd")

    def test_loop_detected(self):
        os.symlink("b", self.root / "a")
        os.symlink("a", self.root / "b")
        self.assertIsNone(resolve_in_root(self.root, "/a"))


class TestResolveShell(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.root = Path(self.td.name)

    def tearDown(self):
        self.td.cleanup()

    def test_preferred_shell(self):
        _exe(self.root / "bin" / "bash")
        _exe(self.root / "usr" / "bin" / "fish")
        self.assertEqual(resolve_shell(self.root, "/usr/bin/fish"), "/usr/bin/fish")

    def test_missing_preferred_falls_back(self):
        _exe(self.root / "bin" / "bash")
        logger = FakeLogger()
        self.assertEqual(resolve_shell(self.root, "/usr/bin/fish", logger=logger), "/bin/bash")
        self.assertTrue(any("/usr/bin/fish" in m for m in logger.messages("warning")))

    def test_busybox_link_keeps_candidate_path(self):
        _exe(self.root / "bin" / "busybox")
        os.symlink("busybox", self.root / "bin" / "sh")
        self.assertEqual(resolve_shell(self.root), "/bin/sh")

    def test_non_executable_skipped(self):
        (self.root / "bin").mkdir()
        (self.root / "bin" / "bash").write_text("not executable")
        _exe(self.root / "bin" / "ash")
        self.assertEqual(resolve_shell(self.root), "/bin/ash")

    def test_no_shell(self):
        with self.assertRaises(ShellNotFoundError):
            resolve_shell(self.root)


class TestPrepareUser(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.root = Path(self.td.name)
        populate_root(self.root)

    def tearDown(self):
        self.td.cleanup()

    @patch("vchroot.session.launcher.os.chown")
    def test_home_created_and_owned(self, chown):
        entry = prepare_user(FakeLogger(), self.root, "alice")
        self.assertEqual(entry.uid, 1000)
        self.assertTrue((self.root / "home" / "alice").is_dir())
        chown.assert_called_once_with(self.root / "home" / "alice", 1000, 1000)

    def test_unknown_user(self):
        with self.assertRaises(UserNotFoundInTargetError):
            prepare_user(FakeLogger(), self.root, "mallory")


class TestBuildCommand(unittest.TestCase):
    def test_root_session(self):
        self.assertEqual(
            build_command("/mnt/chroot", "/bin/bash", SessionConfig(), {}),
            ["chroot", "/mnt/chroot", "/bin/bash"],
        )

    def test_user_login_shell(self):
        cfg = SessionConfig(target_user="alice")
        self.assertEqual(build_command("/mnt/chroot", "/bin/bash", cfg, {}), ["chroot", "/mnt/chroot", "su", "-", "alice"])

    def test_user_with_environment(self):
        cfg = SessionConfig(target_user="alice")
        cmd = build_command("/mnt/chroot", "/bin/bash", cfg, {"XDG_RUNTIME_DIR": "/run/user/1000", "DISPLAY": ":0"})
        self.assertEqual(cmd[:6], ["chroot", "/mnt/chroot", "su", "-", "alice", "-c"])
        self.assertEqual(cmd[6], "env DISPLAY=:0 XDG_RUNTIME_DIR=/run/user/1000 /bin/bash")

    def test_user_with_shell_override(self):
        cfg = SessionConfig(target_user="alice", shell_override="/bin/zsh")
        self.assertEqual(build_command("/mnt/chroot", "/bin/zsh", cfg, {})[-1], "exec /bin/zsh")

    def test_root_named_explicitly_is_not_a_switch(self):
        cfg = SessionConfig(target_user="root")
        self.assertEqual(build_command("/mnt/chroot", "/bin/sh", cfg, {}), ["chroot", "/mnt/chroot", "/bin/sh"])


class TestSessionLauncher(unittest.TestCase):
    @patch("vchroot.session.launcher.subprocess.Popen")
    def test_launch_records_and_removes_pid(self, popen):
        seen = {}
        proc = Mock(pid=4242)

        with tempfile.TemporaryDirectory() as td:
            pid_file = Path(td) / "chroot.pid"

            def _wait():
                seen["pid"] = pid_file.read_text().strip()
                return 3

            proc.wait.side_effect = _wait
            popen.return_value = proc
            rc = SessionLauncher(FakeLogger(), pid_file=pid_file).launch(
                SessionConfig(), "/mnt/chroot", shell="/bin/bash", extra_env={"DISPLAY": ":0"}
            )
            self.assertFalse(pid_file.exists())

        self.assertEqual(rc, 3)
        self.assertEqual(seen["pid"], "4242")
        self.assertEqual(popen.call_args[0][0], ["chroot", "/mnt/chroot", "/bin/bash"])
        self.assertEqual(popen.call_args[1]["env"]["DISPLAY"], ":0")


if __name__ == "__main__":
    unittest.main()
