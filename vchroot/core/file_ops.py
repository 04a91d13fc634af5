# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/core/file_ops.py
"""
Small file helpers: atomic writes, the single-instance lock and pid files.
"""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import psutil

from .exceptions import LockError


def state_dir() -> Path:
    return Path(tempfile.gettempdir())


def default_lock_path() -> Path:
    return state_dir() / "vchroot.lock"


def default_pid_path() -> Path:
    return state_dir() / "vchroot.chroot.pid"


@contextmanager
def atomic_write(
    target_path: Path,
    *,
    suffix: str = ".part",
) -> Generator[Path, None, None]:
    """
    Yield a temporary path beside `target_path`; rename it into place on success.

    Example:
        with atomic_write(Path("/tmp/vchroot_summary.log")) as tmp:
            tmp.write_text(report)
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_name = tempfile.mkstemp(
        suffix=suffix,
        prefix=f".{target_path.name}.",
        dir=str(target_path.parent),
    )
    temp_path = Path(temp_name)

    try:
        os.close(fd)
        yield temp_path
        os.replace(temp_path, target_path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def read_pid(path: Path) -> Optional[int]:
    try:
        raw = Path(path).read_text(encoding="utf-8").strip()
    except (FileNotFoundError, PermissionError):
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def write_pid(path: Path, pid: int) -> None:
    with atomic_write(Path(path)) as tmp:
        tmp.write_text(f"{pid}\n", encoding="utf-8")


class SessionLock:
    """
    Advisory single-instance lock holding the owner's pid.

    A lock whose pid is no longer alive is stale and gets replaced. A lock
    held by a live process raises LockError.
    """

    def __init__(self, logger: logging.Logger, path: Optional[Path] = None):
        self.logger = logger
        self.path = Path(path) if path is not None else default_lock_path()
        self.held = False

    def acquire(self) -> None:
        owner = read_pid(self.path)
        if owner is not None and owner != os.getpid() and psutil.pid_exists(owner):
            raise LockError(
                code=1,
                msg=f"Another instance is already running (pid {owner})",
                context={"lock": str(self.path), "pid": owner},
            )
        if self.path.exists():
            self.logger.warning("Removing stale lock file %s (pid %s)", self.path, owner)
            self.path.unlink(missing_ok=True)
        write_pid(self.path, os.getpid())
        self.held = True
        self.logger.debug("Lock acquired: %s", self.path)

    def release(self) -> None:
        if not self.held:
            return
        if read_pid(self.path) == os.getpid():
            self.path.unlink(missing_ok=True)
        self.held = False
        self.logger.debug("Lock released: %s", self.path)

    def __enter__(self) -> "SessionLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
