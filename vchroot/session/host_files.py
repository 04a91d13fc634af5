# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/session/host_files.py
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import List, Sequence, Union

from ..core.logger import Log
from .mounts import in_root
from .resources import HostFileOverlay, ResourceStack

HOST_FILES = ("/etc/resolv.conf", "/etc/hosts")
BACKUP_SUFFIX = ".vchroot-bak"


class HostFileCopier:
    """
    Copies the host's name-resolution files into the root so networking works
    inside the chroot, keeping a backup of the originals for teardown.
    """

    def __init__(
        self,
        logger: logging.Logger,
        stack: ResourceStack,
        *,
        host_root: Path = Path("/"),
        files: Sequence[str] = HOST_FILES,
    ):
        self.logger = logger
        self.stack = stack
        self.host_root = Path(host_root)
        self.files = tuple(files)

    def _copy_one(self, root: Union[str, Path], name: str) -> None:
        src = in_root(self.host_root, name)
        dst = in_root(root, name)
        if not src.is_file():
            self.logger.debug("Host has no %s", src)
            return
        if dst.is_symlink():
            self.logger.debug("%s is a symlink inside the root; leaving it alone", dst)
            return
        if not dst.parent.is_dir():
            self.logger.debug("No %s directory inside the root", dst.parent)
            return

        backup = None
        with self.stack.acquiring():
            if dst.exists():
                backup = dst.with_name(dst.name + BACKUP_SUFFIX)
                shutil.copy2(dst, backup)
            try:
                shutil.copyfile(src, dst)
            except OSError:
                if backup is not None:
                    backup.unlink(missing_ok=True)
                raise
            self.stack.push(HostFileOverlay(target=str(dst), backup=str(backup) if backup else None))
        self.logger.debug("Copied %s into %s", src, dst)

    def copy_into(self, root: Union[str, Path]) -> List[HostFileOverlay]:
        before = len(self.stack)
        for name in self.files:
            try:
                self._copy_one(root, name)
            except OSError as e:
                Log.warn(self.logger, f"Could not copy {name} into the chroot: {e}")
        return list(self.stack.snapshot()[before:])  # type: ignore[arg-type]

    def restore(self, handle: HostFileOverlay) -> None:
        target = Path(handle.target)
        if handle.backup:
            os.replace(handle.backup, target)
        else:
            target.unlink(missing_ok=True)
        self.logger.debug("Restored %s", target)
