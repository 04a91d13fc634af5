# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/storage/lvm.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..core.exceptions import NoRootCandidateError, VolumeGroupError
from ..core.logger import Log
from ..core.utils import U
from ..session.resources import ActivatedVolumeGroup, ResourceStack
from .devices import DeviceInfo, DeviceResolver
from .filesystems import FilesystemKind

ROOT_LV_PATTERN = re.compile(r"root|ubuntu|system", re.IGNORECASE)
SWAP_LV_PATTERN = re.compile(r"swap", re.IGNORECASE)


@dataclass(frozen=True)
class LogicalVolume:
    vg: str
    name: str
    path: str
    size_bytes: int
    fstype: FilesystemKind = FilesystemKind.UNKNOWN

    @property
    def is_swap(self) -> bool:
        return self.fstype is FilesystemKind.SWAP or bool(SWAP_LV_PATTERN.search(self.name))


def pick_root_candidate(lvs: Sequence[LogicalVolume], partitions: Sequence[DeviceInfo]) -> str:
    """
    Choose the root device. Pure: the same input always yields the same path.

      1. first LV (in activation order) whose name looks like a root volume
      2. largest non-swap LV; ties go to the earlier one in activation order
      3. largest partition carrying a Linux-native filesystem
    """
    for lv in lvs:
        if ROOT_LV_PATTERN.search(lv.name):
            return lv.path

    best_lv: Optional[LogicalVolume] = None
    for lv in lvs:
        if lv.is_swap:
            continue
        if best_lv is None or lv.size_bytes > best_lv.size_bytes:
            best_lv = lv
    if best_lv is not None:
        return best_lv.path

    best_part: Optional[DeviceInfo] = None
    for p in partitions:
        if not p.fstype.is_linux_native:
            continue
        if best_part is None or (p.size_bytes or 0) > (best_part.size_bytes or 0):
            best_part = p
    if best_part is not None:
        return best_part.path

    raise NoRootCandidateError(
        code=1,
        msg="No Linux root filesystem found (no logical volume or Linux partition qualifies)",
        context={"lvs": len(lvs), "partitions": len(partitions)},
    )


class VolumeActivator:
    def __init__(self, logger: logging.Logger, stack: ResourceStack, resolver: DeviceResolver):
        self.logger = logger
        self.stack = stack
        self.resolver = resolver

    def _lines(self, cmd: List[str]) -> List[str]:
        cp = U.run_cmd(self.logger, cmd, check=False, capture=True)
        if cp.returncode != 0:
            return []
        return [ln.strip() for ln in (cp.stdout or "").splitlines() if ln.strip()]

    def volume_groups(self, members: Optional[Sequence[str]] = None) -> List[str]:
        """
        Volume groups visible to LVM; restricted to those with a PV among
        `members` when given (so unrelated host VGs are left alone).
        """
        names: List[str] = []
        if members is None:
            for ln in self._lines(["vgs", "--noheadings", "-o", "vg_name"]):
                if ln not in names:
                    names.append(ln)
            return names

        wanted = set(members)
        for ln in self._lines(["pvs", "--noheadings", "-o", "pv_name,vg_name"]):
            parts = ln.split()
            if len(parts) < 2 or parts[0] not in wanted:
                continue
            if parts[1] not in names:
                names.append(parts[1])
        return names

    def scan_and_activate(self, members: Optional[Sequence[str]] = None) -> List[str]:
        Log.step(self.logger, "Scanning for LVM physical volumes")
        U.run_cmd(self.logger, ["pvscan", "--cache"], check=False, capture=True)

        already = {h.name for h in self.stack.of_type(ActivatedVolumeGroup)}
        activated: List[str] = []
        for vg in self.volume_groups(members):
            if vg in already:
                continue
            self.logger.info("Activating VG: %s", vg)
            with self.stack.acquiring():
                cp = U.run_cmd(self.logger, ["vgchange", "-ay", vg], check=False, capture=True)
                if cp.returncode == 0:
                    self.stack.push(ActivatedVolumeGroup(name=vg))
                    activated.append(vg)
            if cp.returncode != 0:
                Log.warn(self.logger, f"Failed to activate VG {vg}: {(cp.stderr or '').strip()}")
        return activated

    def list_logical_volumes(self, vgs: Sequence[str]) -> List[LogicalVolume]:
        if not vgs:
            return []
        out: List[LogicalVolume] = []
        cmd = [
            "lvs", "--noheadings", "--units", "b", "--nosuffix", "--separator", "|",
            "-o", "vg_name,lv_name,lv_path,lv_size", *vgs,
        ]
        for ln in self._lines(cmd):
            fields = [f.strip() for f in ln.split("|")]
            if len(fields) < 4 or not fields[2]:
                continue
            try:
                size = int(float(fields[3]))
            except ValueError:
                size = 0
            out.append(
                LogicalVolume(
                    vg=fields[0],
                    name=fields[1],
                    path=fields[2],
                    size_bytes=size,
                    fstype=self.resolver.detect_filesystem(fields[2]),
                )
            )
        # activation order first, then the order lvs reported within a group
        order = {vg: i for i, vg in enumerate(vgs)}
        out.sort(key=lambda lv: order.get(lv.vg, len(order)))
        return out

    def select_root_candidate(self, activated: Sequence[str], fallback: Sequence[DeviceInfo]) -> str:
        lvs = self.list_logical_volumes(activated)
        for lv in lvs:
            self.logger.debug("LV %s/%s %s %s", lv.vg, lv.name, U.human_bytes(lv.size_bytes), lv.fstype.value)
        root = pick_root_candidate(lvs, fallback)
        Log.ok(self.logger, f"Root candidate: {root}")
        return root

    def deactivate(self, handle: ActivatedVolumeGroup) -> None:
        Log.step(self.logger, f"Deactivating VG: {handle.name}")
        cp = U.run_cmd(self.logger, ["vgchange", "-an", handle.name], check=False, capture=True)
        if cp.returncode != 0:
            raise VolumeGroupError(
                code=1,
                msg=f"could not deactivate volume group {handle.name}",
                context={"stderr": (cp.stderr or "").strip()},
            )
