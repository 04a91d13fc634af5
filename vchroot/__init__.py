# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/__init__.py
"""
vchroot - enter a chroot on a physical disk or a disk image

Attaches images through qemu-nbd, unlocks LUKS, activates LVM, mounts the
root with its companions and virtual filesystems, launches a shell, and
releases everything in reverse order when the shell exits or the process
is interrupted.

Usage as a library:

    from vchroot import ChrootSession, SessionConfig
    from vchroot.core.logger import Log

    logger = Log.setup()
    cfg = SessionConfig(root_device="/dev/sdb2", quiet=True)
    with ChrootSession(logger, cfg) as session:
        session.acquire()
        session.launch()
"""

__version__ = "0.1.0"

from .config.session_config import MountSpec, SessionConfig
from .orchestrator import ChrootSession, Orchestrator

__all__ = [
    "__version__",
    "ChrootSession",
    "MountSpec",
    "Orchestrator",
    "SessionConfig",
]
