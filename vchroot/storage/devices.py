# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/storage/devices.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.exceptions import DeviceNotFoundError, FilesystemRejectedError
from ..core.logger import Log
from ..core.utils import U
from .filesystems import FilesystemKind

EFI_MAX_MIB = 1000

_LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,FSTYPE,MOUNTPOINT,LABEL"


@dataclass(frozen=True)
class DeviceInfo:
    path: str
    fstype: FilesystemKind
    fstype_raw: str = ""
    size_bytes: Optional[int] = None
    mountpoint: Optional[str] = None
    label: str = ""
    devtype: str = "part"

    @property
    def size_mib(self) -> Optional[int]:
        if self.size_bytes is None:
            return None
        return int(self.size_bytes // (1024 * 1024))

    @property
    def size_human(self) -> str:
        return U.human_bytes(self.size_bytes)

    @property
    def mounted(self) -> bool:
        return bool(self.mountpoint)


@dataclass
class DiskLayout:
    """What an attached disk (or a bare physical device) is made of."""
    device: str
    partitions: List[DeviceInfo] = field(default_factory=list)
    linux: List[DeviceInfo] = field(default_factory=list)
    efi: Optional[DeviceInfo] = None
    luks: List[DeviceInfo] = field(default_factory=list)
    lvm_members: List[DeviceInfo] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "device": self.device,
            "linux": [p.path for p in self.linux],
            "efi": self.efi.path if self.efi else None,
            "luks": [p.path for p in self.luks],
            "lvm": [p.path for p in self.lvm_members],
        }


def _to_int(v: Any) -> Optional[int]:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _flatten(nodes: Iterable[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
    for n in nodes:
        yield n
        yield from _flatten(n.get("children") or [])


def pick_efi_candidate(partitions: Iterable[DeviceInfo]) -> Optional[DeviceInfo]:
    """Smallest FAT partition under EFI_MAX_MIB; first in scan order on ties."""
    best: Optional[DeviceInfo] = None
    for p in partitions:
        if not p.fstype.is_fat or p.size_mib is None or p.size_mib >= EFI_MAX_MIB:
            continue
        if best is None or p.size_mib < (best.size_mib or 0):
            best = p
    return best


class DeviceResolver:
    """
    Enumerates block devices and classifies their filesystems.

    Detection is layered: lsblk first, then blkid, then `file -s`. A layer
    only runs when the previous one came back empty, and an UNKNOWN result
    is returned instead of raised; the caller decides what to do with it.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    # -------------------------------------------------------------------------
    # low-level queries
    # -------------------------------------------------------------------------

    def _query(self, cmd: List[str]) -> str:
        if not U.which(cmd[0]):
            Log.warn_once(self.logger, ("missing-tool", cmd[0]), f"{cmd[0]} not found; skipping that probe")
            return ""
        cp = U.run_cmd(self.logger, cmd, check=False, capture=True)
        if cp.returncode != 0:
            return ""
        return (cp.stdout or "").strip()

    def _lsblk_json(self, *devices: str) -> List[Dict[str, Any]]:
        out = self._query(["lsblk", "-J", "-b", "-o", _LSBLK_COLUMNS, *devices])
        if not out:
            return []
        try:
            data = json.loads(out)
        except ValueError as e:
            self.logger.debug("lsblk returned invalid JSON: %s", e)
            return []
        return list(data.get("blockdevices") or [])

    def _info_from_node(self, node: Dict[str, Any]) -> DeviceInfo:
        path = node.get("path") or f"/dev/{node.get('name')}"
        raw = (node.get("fstype") or "").strip()
        kind = FilesystemKind.from_name(raw)
        if kind is FilesystemKind.UNKNOWN:
            kind, raw = self.probe(path, skip_lsblk=True)
        return DeviceInfo(
            path=path,
            fstype=kind,
            fstype_raw=raw,
            size_bytes=_to_int(node.get("size")),
            mountpoint=node.get("mountpoint") or None,
            label=node.get("label") or "",
            devtype=node.get("type") or "",
        )

    # -------------------------------------------------------------------------
    # public API
    # -------------------------------------------------------------------------

    def probe(self, path: str, *, skip_lsblk: bool = False) -> Tuple[FilesystemKind, str]:
        """Return (kind, raw type string) using the layered probes."""
        self.logger.debug("Validating filesystem on %s", path)
        raw = ""
        if not skip_lsblk:
            lines = self._query(["lsblk", "-no", "FSTYPE", path]).splitlines()
            raw = lines[0].strip() if lines else ""
        kind = FilesystemKind.from_name(raw)
        if kind is not FilesystemKind.UNKNOWN:
            return kind, raw

        self.logger.debug("lsblk returned %r, trying blkid", raw)
        raw = self._query(["blkid", "-o", "value", "-s", "TYPE", path])
        kind = FilesystemKind.from_name(raw)
        if kind is not FilesystemKind.UNKNOWN:
            return kind, raw

        self.logger.debug("blkid failed, trying file command")
        text = self._query(["file", "-s", "-L", path])
        kind = FilesystemKind.from_file_output(text)
        self.logger.debug("Detected filesystem type: %s", kind.value)
        return kind, (kind.value if kind is not FilesystemKind.UNKNOWN else "")

    def detect_filesystem(self, path: str) -> FilesystemKind:
        return self.probe(path)[0]

    def require_device(self, path: str) -> str:
        if not path or not Path(path).exists():
            raise DeviceNotFoundError(code=1, msg=f"Device not found: {path}", context={"device": path})
        return path

    def describe(self, path: str) -> DeviceInfo:
        """Single-device view; mapper nodes and LVs have no partition table to walk."""
        nodes = self._lsblk_json(path)
        if nodes:
            return self._info_from_node(nodes[0])
        kind, raw = self.probe(path, skip_lsblk=True)
        return DeviceInfo(path=path, fstype=kind, fstype_raw=raw, devtype="")

    def list_candidate_devices(self) -> List[DeviceInfo]:
        """Partitions and volumes a chroot could be entered from (swap excluded)."""
        out: List[DeviceInfo] = []
        for node in _flatten(self._lsblk_json()):
            if node.get("type") not in ("part", "lvm", "crypt"):
                continue
            info = self._info_from_node(node)
            if info.fstype in (FilesystemKind.SWAP, FilesystemKind.LVM_MEMBER):
                continue
            out.append(info)
        self.logger.debug("Candidate devices: %s", [d.path for d in out])
        return out

    def partitions_of(self, device: str) -> List[DeviceInfo]:
        nodes = self._lsblk_json(device)
        if not nodes:
            return []
        top = nodes[0]
        children = [n for n in _flatten(top.get("children") or []) if n.get("type") == "part"]
        if not children:
            # no partition table: the device is its own filesystem
            return [self._info_from_node(top)]
        return [self._info_from_node(n) for n in children]

    def classify_layout(self, device: str) -> DiskLayout:
        layout = DiskLayout(device=device)
        layout.partitions = self.partitions_of(device)
        for p in layout.partitions:
            self.logger.info(
                "  %s: %s, Size: %s, Label: %s",
                p.path,
                p.fstype_raw or p.fstype.value,
                p.size_human,
                p.label,
            )
            if p.fstype.is_linux_native:
                layout.linux.append(p)
            elif p.fstype is FilesystemKind.LUKS:
                layout.luks.append(p)
            elif p.fstype is FilesystemKind.LVM_MEMBER:
                layout.lvm_members.append(p)
        layout.efi = pick_efi_candidate(layout.partitions)

        if layout.efi:
            self.logger.info("EFI partition found: %s", layout.efi.path)
        if layout.luks:
            self.logger.info("LUKS partitions found: %s", ",".join(p.path for p in layout.luks))
        if layout.lvm_members:
            self.logger.info("LVM physical volumes found: %s", ",".join(p.path for p in layout.lvm_members))
        return layout

    def mounted_at(self, device: str) -> List[str]:
        out = self._query(["findmnt", "--noheadings", "--output", "TARGET", "--source", device])
        return [ln.strip() for ln in out.splitlines() if ln.strip()]

    def validate_filesystem(
        self,
        device: str,
        *,
        is_efi: bool = False,
        quiet: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> bool:
        """
        Apply the filesystem policy to `device`.

        Returns True to proceed, False when the operator declined. NTFS and
        recognized-but-unsupported kinds raise FilesystemRejectedError.
        """
        kind, raw = self.probe(device)

        def _ask(question: str) -> bool:
            if quiet or confirm is None:
                return True
            return bool(confirm(question))

        if kind.is_linux_native:
            self.logger.debug("Valid Linux filesystem detected: %s", kind.value)
            return True
        if kind.is_fat:
            if is_efi:
                self.logger.debug("Valid EFI filesystem: %s", raw or kind.value)
                return True
            if quiet:
                Log.warn(self.logger, f"Device {device} has a FAT filesystem; unusual for a root filesystem")
            return _ask(f"Device {device} has a FAT filesystem ({raw or kind.value}). Proceed anyway?")
        if kind is FilesystemKind.NTFS:
            raise FilesystemRejectedError(
                code=1,
                msg="NTFS filesystem detected. Cannot chroot into Windows partition.",
                context={"device": device},
            )
        if kind is FilesystemKind.UNKNOWN:
            if quiet:
                Log.warn(self.logger, f"Unknown filesystem type for {device}, proceeding anyway")
            return _ask(
                f"Cannot determine filesystem type for {device} (encrypted, corrupted or unsupported). "
                "Proceed anyway?"
            )
        raise FilesystemRejectedError(
            code=1,
            msg=f"Unsupported filesystem: {raw or kind.value} on {device}",
            context={"device": device, "fstype": raw or kind.value},
        )
