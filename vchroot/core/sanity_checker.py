# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/core/sanity_checker.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from rich.progress import (
    BarColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
)

from .utils import U


class ExitCode(IntEnum):
    OK = 0
    FAILURE = 1
    TEARDOWN_INCOMPLETE = 2


class ErrorKind:
    TOOLS = "tools"
    PERMISSION = "permission"


REQUIRED_TOOLS: Tuple[str, ...] = ("lsblk", "mount", "umount", "chroot", "mountpoint", "findmnt")
RECOMMENDED_TOOLS: Tuple[str, ...] = ("fuser", "lsof", "blkid", "file")
IMAGE_TOOLS: Tuple[str, ...] = ("qemu-nbd", "modprobe", "partprobe")
STORAGE_TOOLS: Tuple[str, ...] = ("cryptsetup", "pvscan", "vgs", "vgchange")
GUI_TOOLS: Tuple[str, ...] = ("xhost",)

# tool -> package, per package manager family
_PACKAGES: Dict[str, Dict[str, str]] = {
    "lsblk": {"*": "util-linux"},
    "mount": {"*": "util-linux"},
    "umount": {"*": "util-linux"},
    "mountpoint": {"*": "util-linux"},
    "findmnt": {"*": "util-linux"},
    "blkid": {"*": "util-linux"},
    "chroot": {"*": "coreutils"},
    "fuser": {"*": "psmisc"},
    "lsof": {"*": "lsof"},
    "file": {"*": "file"},
    "xhost": {"apt-get": "x11-xserver-utils", "pacman": "xorg-xhost", "*": "xorg-x11-server-utils"},
    "qemu-nbd": {"apt-get": "qemu-utils", "pacman": "qemu-img", "*": "qemu-img"},
    "modprobe": {"*": "kmod"},
    "partprobe": {"*": "parted"},
    "cryptsetup": {"*": "cryptsetup"},
    "pvscan": {"apt-get": "lvm2", "*": "lvm2"},
    "vgs": {"*": "lvm2"},
    "vgchange": {"*": "lvm2"},
}

_INSTALL_CMDS: Sequence[Tuple[str, List[str]]] = (
    ("apt-get", ["apt-get", "install", "-y"]),
    ("dnf", ["dnf", "install", "-y"]),
    ("yum", ["yum", "install", "-y"]),
    ("pacman", ["pacman", "-S", "--noconfirm"]),
    ("zypper", ["zypper", "--non-interactive", "install"]),
)


@dataclass
class SanityIssue:
    kind: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


@dataclass
class SanityReport:
    missing_required: List[str] = field(default_factory=list)
    missing_optional: List[str] = field(default_factory=list)

    errors: List[SanityIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    notes: Dict[str, str] = field(default_factory=dict)

    checks_ran: List[str] = field(default_factory=list)

    def ok(self) -> bool:
        return not self.missing_required and not self.errors

    def add_error(self, kind: str, msg: str) -> None:
        self.errors.append(SanityIssue(kind=kind, message=msg))

    def exit_code(self) -> int:
        return int(ExitCode.OK) if self.ok() else int(ExitCode.FAILURE)


def detect_package_manager() -> Optional[Tuple[str, List[str]]]:
    for name, cmd in _INSTALL_CMDS:
        if U.which(name):
            return name, list(cmd)
    return None


def packages_for(tools: Sequence[str], manager: str) -> List[str]:
    out: List[str] = []
    for t in tools:
        m = _PACKAGES.get(t)
        if not m:
            continue
        pkg = m.get(manager) or m["*"]
        if pkg not in out:
            out.append(pkg)
    return out


class SanityChecker:
    """
    Host checks run before anything is acquired:
      - root privileges
      - tool availability (required vs recommended; image/storage/GUI tools by mode)
      - optional installation of missing tools through the host package manager
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        image_mode: bool = False,
        gui: bool = False,
        install_missing: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.logger = logger
        self.image_mode = image_mode
        self.gui = gui
        self.install_missing = install_missing
        self.confirm = confirm
        self.report = SanityReport()

        self.report.notes["mode"] = "image" if image_mode else "device"

    def _tool_missing(self, tool: str) -> bool:
        return U.which(tool) is None

    def _tool_sets(self) -> Tuple[List[str], List[str]]:
        required = list(REQUIRED_TOOLS)
        optional = list(RECOMMENDED_TOOLS) + list(STORAGE_TOOLS)
        if self.image_mode:
            required.extend(IMAGE_TOOLS)
        if self.gui:
            optional.extend(GUI_TOOLS)
        return required, optional

    # -------------------------------------------------------------------------
    # checks
    # -------------------------------------------------------------------------

    def check_root(self) -> None:
        self.report.checks_ran.append("root")
        if os.geteuid() != 0:
            self.report.add_error(ErrorKind.PERMISSION, "root privileges are required (run with sudo)")

    def _scan_tools(self) -> Tuple[List[str], List[str]]:
        required, optional = self._tool_sets()
        self.report.notes["required_tools"] = ", ".join(required)
        self.report.notes["optional_tools"] = ", ".join(optional)
        missing_required = [t for t in required if self._tool_missing(t)]
        missing_optional = [t for t in optional if self._tool_missing(t)]
        return missing_required, missing_optional

    def install_tools(self, tools: Sequence[str]) -> bool:
        pm = detect_package_manager()
        if pm is None:
            self.report.warnings.append("no supported package manager found (apt-get/dnf/yum/pacman/zypper)")
            return False
        name, base = pm
        pkgs = packages_for(tools, name)
        if not pkgs:
            return False
        if self.confirm is not None and not self.confirm(f"Install {' '.join(pkgs)} with {name}?"):
            self.logger.info("Installation declined")
            return False
        if name == "apt-get":
            U.run_cmd(self.logger, ["apt-get", "update"], check=False, capture=True)
        cp = U.run_cmd(self.logger, base + pkgs, check=False, capture=True)
        if cp.returncode != 0:
            self.report.warnings.append(f"{name} failed to install {' '.join(pkgs)}")
            return False
        self.report.notes["installed"] = " ".join(pkgs)
        return True

    def check_tools(self) -> None:
        self.report.checks_ran.append("tools")

        missing_required, missing_optional = self._scan_tools()

        if missing_required and self.install_missing:
            self.logger.warning("Missing required tools: %s; attempting installation", ", ".join(missing_required))
            if self.install_tools(missing_required + missing_optional):
                missing_required, missing_optional = self._scan_tools()

        self.report.missing_required.extend(missing_required)
        self.report.missing_optional.extend(missing_optional)

        if missing_required:
            self.report.add_error(ErrorKind.TOOLS, f"Missing required tools: {', '.join(missing_required)}")
        if missing_optional:
            self.report.warnings.append(
                f"Missing optional tools (some features may be limited): {', '.join(missing_optional)}"
            )

    # -------------------------------------------------------------------------
    # orchestration
    # -------------------------------------------------------------------------

    def _run_checks(self, checks: Sequence[Tuple[str, Callable[[], None]]]) -> None:
        if U.is_tty() and not self.install_missing:
            with Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total}"),
                TimeElapsedColumn(),
                transient=True,
            ) as progress:
                task = progress.add_task("Running sanity checks", total=len(checks))
                for name, fn in checks:
                    progress.update(task, description=f"Running sanity checks: {name}")
                    fn()
                    progress.update(task, advance=1)
        else:
            for name, fn in checks:
                self.logger.debug("Sanity: %s...", name)
                fn()

    def _log_summary(self) -> None:
        if self.report.ok():
            self.logger.info("System requirements check completed")
            for w in self.report.warnings:
                self.logger.warning("%s", w)
            if self.report.notes:
                self.logger.debug("Sanity notes: %s", self.report.notes)
            return

        self.logger.error("Sanity: FAILED")
        for e in self.report.errors:
            self.logger.error("Sanity error[%s]: %s", e.kind, e.message)
        for w in self.report.warnings:
            self.logger.warning("Sanity warn: %s", w)

    def check_all(self) -> SanityReport:
        checks: List[Tuple[str, Callable[[], None]]] = [
            ("root", self.check_root),
            ("tools", self.check_tools),
        ]
        self._run_checks(checks)
        self._log_summary()
        return self.report

    def die_if_failed(self) -> None:
        if not self.report.checks_ran:
            self.check_all()

        if self.report.ok():
            return

        code = self.report.exit_code()
        if self.report.missing_required:
            U.die(self.logger, f"Missing required tools: {', '.join(self.report.missing_required)}", code)

        headline = self.report.errors[0].message if self.report.errors else "Sanity failed"
        U.die(self.logger, f"Sanity failed: {headline}", code)
