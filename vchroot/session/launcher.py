# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/session/launcher.py
from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from ..config.session_config import SessionConfig
from ..core.exceptions import SessionInterrupted, ShellNotFoundError, UserNotFoundInTargetError
from ..core.file_ops import default_pid_path, write_pid
from ..core.logger import Log
from ..core.utils import PasswdEntry, U
from .mounts import in_root, resolve_in_root

SHELL_CANDIDATES = (
    "/bin/bash",
    "/usr/bin/bash",
    "/bin/zsh",
    "/usr/bin/zsh",
    "/bin/ash",
    "/bin/sh",
    "/usr/bin/sh",
)


def _is_executable_in_root(root: Union[str, Path], path: str) -> bool:
    final = resolve_in_root(root, path)
    if final is None:
        return False
    host = in_root(root, final)
    return host.is_file() and os.access(host, os.X_OK)


def resolve_shell(root: Union[str, Path], preferred: Optional[str] = None, *, logger: Optional[logging.Logger] = None) -> str:
    """
    First candidate that resolves (inside the root) to an executable file.

    The candidate path itself is returned, not its link target: multi-call
    binaries pick their personality from argv[0].
    """
    candidates: List[str] = []
    if preferred:
        candidates.append(preferred)
    for c in SHELL_CANDIDATES:
        if c not in candidates:
            candidates.append(c)

    for c in candidates:
        if _is_executable_in_root(root, c):
            if logger is not None:
                logger.debug("Shell resolved: %s -> %s", c, resolve_in_root(root, c))
            return c
        if logger is not None and c == preferred:
            Log.warn(logger, f"Shell {c} not found in chroot, using fallback")
    raise ShellNotFoundError(
        code=1,
        msg=f"No usable shell found in {root}",
        context={"tried": ", ".join(candidates)},
    )


def prepare_user(logger: logging.Logger, root: Union[str, Path], user: str) -> PasswdEntry:
    """Look the user up in the target passwd database and make sure the home exists."""
    entry = U.read_passwd_entry(root, user)
    if entry is None:
        raise UserNotFoundInTargetError(
            code=1,
            msg=f"User {user} does not exist in the chroot environment",
            context={"user": user},
        )
    if not entry.home:
        raise UserNotFoundInTargetError(
            code=1,
            msg=f"Could not determine home directory for user {user}",
            context={"user": user},
        )
    home = in_root(root, entry.home)
    if not home.is_dir():
        Log.step(logger, f"Creating home directory {entry.home} for {user}")
        home.mkdir(parents=True, exist_ok=True)
        os.chown(home, entry.uid, entry.gid)
    return entry


def build_command(
    root: Union[str, Path],
    shell: str,
    cfg: SessionConfig,
    extra_env: Mapping[str, str],
) -> List[str]:
    if cfg.switch_user:
        base = ["chroot", str(root), "su", "-", cfg.target_user]
        if not extra_env and not cfg.shell_override:
            return base
        assignments = " ".join(shlex.quote(f"{k}={v}") for k, v in sorted(extra_env.items()))
        inner = f"env {assignments} {shlex.quote(shell)}" if assignments else f"exec {shlex.quote(shell)}"
        return base + ["-c", inner]
    return ["chroot", str(root), shell]


class SessionLauncher:
    def __init__(self, logger: logging.Logger, *, pid_file: Optional[Path] = None):
        self.logger = logger
        self.pid_file = Path(pid_file) if pid_file is not None else default_pid_path()

    def _wait(self, proc: subprocess.Popen) -> int:
        """
        Wait for the shell. ^C belongs to the shell, so SIGINT is a no-op here;
        SIGTERM is passed on to the shell and re-raised once it is gone.
        """
        terminated: List[int] = []

        def _on_int(_signum: int, _frame: Any) -> None:
            return None

        def _on_term(signum: int, _frame: Any) -> None:
            terminated.append(signum)
            try:
                proc.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass

        prev_int = signal.signal(signal.SIGINT, _on_int)
        prev_term = signal.signal(signal.SIGTERM, _on_term)
        try:
            rc = proc.wait()
        finally:
            signal.signal(signal.SIGINT, prev_int)
            signal.signal(signal.SIGTERM, prev_term)
        if terminated:
            raise SessionInterrupted(terminated[0])
        return rc

    def launch(
        self,
        cfg: SessionConfig,
        root: Union[str, Path],
        *,
        shell: str,
        extra_env: Optional[Mapping[str, str]] = None,
    ) -> int:
        extra = dict(extra_env or {})
        cmd = build_command(root, shell, cfg, extra)
        env: Dict[str, str] = dict(os.environ)
        if not cfg.switch_user:
            env.update(extra)

        who = cfg.target_user if cfg.switch_user else "root"
        Log.step(self.logger, f"Entering chroot as {who} with {shell}")
        self.logger.debug("Command: %s", " ".join(shlex.quote(c) for c in cmd))

        proc = subprocess.Popen(cmd, env=env)
        write_pid(self.pid_file, proc.pid)
        try:
            rc = self._wait(proc)
        finally:
            self.pid_file.unlink(missing_ok=True)
        self.logger.info("Chroot session ended (exit status %s)", rc)
        return rc
