# SPDX-License-Identifier: LGPL-3.0-or-later
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from vchroot.core.exceptions import Fatal
from vchroot.core.utils import U


class TestPasswdLookup(unittest.TestCase):
    """Users are looked up in the target root, never on the host."""

    def _root(self, td, text):
        etc = Path(td) / "etc"
        etc.mkdir()
        (etc / "passwd").write_text(text, encoding="utf-8")
        return Path(td)

    def test_entry_found(self):
        with tempfile.TemporaryDirectory() as td:
            root = self._root(td, "root:x:0:0:root:/root:/bin/bash\nalice:x:1000:1001:A:/home/alice:/bin/zsh\n")
            entry = U.read_passwd_entry(root, "alice")
            self.assertEqual((entry.uid, entry.gid, entry.home, entry.shell), (1000, 1001, "/home/alice", "/bin/zsh"))

    def test_missing_user(self):
        with tempfile.TemporaryDirectory() as td:
            root = self._root(td, "root:x:0:0:root:/root:/bin/bash\n")
            self.assertIsNone(U.read_passwd_entry(root, "bob"))

    def test_missing_passwd_file(self):
        with tempfile.TemporaryDirectory() as td:
            self.assertIsNone(U.read_passwd_entry(td, "root"))

    def test_comment_and_short_lines_ignored(self):
        with tempfile.TemporaryDirectory() as td:
            root = self._root(td, "# alice:x:1:1::/x:/bin/sh\nalice:x\n")
            self.assertIsNone(U.read_passwd_entry(root, "alice"))


class TestUtilsCommandExecution(unittest.TestCase):
    def setUp(self):
        self.logger = Mock()

    @patch("subprocess.run")
    def test_run_cmd_executes_command(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="output", stderr="")

        result = U.run_cmd(self.logger, ["echo", "test"], capture=True)

        self.assertEqual(result.returncode, 0)
        self.assertEqual(mock_run.call_args[0][0], ["echo", "test"])
        self.assertTrue(mock_run.call_args[1]["capture_output"])

    @patch("subprocess.run")
    def test_run_cmd_feeds_input_on_stdin(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        U.run_cmd(self.logger, ["cryptsetup", "luksOpen", "--key-file=-", "/dev/x", "m"], input_text="s3cret")

        self.assertEqual(mock_run.call_args[1]["input"], "s3cret")
        self.assertNotIn("s3cret", mock_run.call_args[0][0])

    @patch("subprocess.run")
    def test_run_cmd_fatal_wraps_failure(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(3, ["false"], output="", stderr="boom")

        with self.assertRaises(Fatal) as ctx:
            U.run_cmd(self.logger, ["false"], fatal=True)
        self.assertEqual(ctx.exception.code, 3)

    @patch("subprocess.run")
    def test_run_cmd_reraises_without_fatal(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["false"])

        with self.assertRaises(subprocess.CalledProcessError):
            U.run_cmd(self.logger, ["false"])

    @patch.object(U, "run_cmd")
    def test_is_mountpoint_uses_exit_status(self, mock_run):
        mock_run.return_value = Mock(returncode=0)
        self.assertTrue(U.is_mountpoint(self.logger, "/mnt/chroot"))
        mock_run.return_value = Mock(returncode=1)
        self.assertFalse(U.is_mountpoint(self.logger, "/mnt/chroot"))


class TestUtilsFormatting(unittest.TestCase):
    def test_human_bytes(self):
        self.assertEqual(U.human_bytes(None), "unknown")
        self.assertEqual(U.human_bytes(512), "512 B")
        self.assertEqual(U.human_bytes(2 * 1024**3), "2.00 GiB")

    def test_die_raises_fatal(self):
        logger = Mock()
        with self.assertRaises(Fatal) as ctx:
            U.die(logger, "nope", 7)
        self.assertEqual(ctx.exception.code, 7)
        logger.error.assert_called_once_with("nope")


if __name__ == "__main__":
    unittest.main()
