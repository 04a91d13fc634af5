# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/storage/nbd.py
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import psutil

from ..core.exceptions import BackingStoreError
from ..core.logger import Log
from ..core.utils import U
from ..session.resources import BackingStore, ResourceStack

NBD_SLOTS = 16

IMAGE_EXTENSIONS: Dict[str, str] = {
    ".qcow2": "qcow2",
    ".qcow": "qcow2",
    ".vdi": "vdi",
    ".vmdk": "vmdk",
    ".vhd": "vpc",
    ".vpc": "vpc",
    ".vtoy": "vpc",
    ".vhdx": "vhdx",
    ".img": "raw",
    ".raw": "raw",
    ".iso": "raw",
}

# (format, offset, magic); offset None means "last 512 bytes" (VHD footer)
_MAGIC: Tuple[Tuple[str, Optional[int], bytes], ...] = (
    ("qcow2", 0, b"QFI\xfb"),
    ("vdi", 0x40, b"\x7f\x10\xda\xbe"),
    ("vmdk", 0, b"KDMV"),
    ("vmdk", 0, b"# Disk DescriptorFile"),
    ("vhdx", 0, b"vhdxfile"),
    ("vpc", 0, b"conectix"),
    ("vpc", None, b"conectix"),
)


def sniff_format(path: Union[str, Path]) -> Optional[str]:
    """Container format from magic bytes, or None for anything else."""
    p = Path(path)
    try:
        with open(p, "rb") as f:
            head = f.read(512)
            size = p.stat().st_size
            tail = b""
            if size >= 512:
                f.seek(size - 512)
                tail = f.read(512)
    except OSError:
        return None
    for fmt, offset, magic in _MAGIC:
        if offset is None:
            if tail.startswith(magic):
                return fmt
        elif head[offset:offset + len(magic)] == magic:
            return fmt
    return None


def guess_format(path: Union[str, Path]) -> str:
    """Extension heuristic, overridden by container magic bytes; raw otherwise."""
    sniffed = sniff_format(path)
    if sniffed:
        return sniffed
    return IMAGE_EXTENSIONS.get(Path(path).suffix.lower(), "raw")


class NbdConnector:
    """Attaches disk images as /dev/nbdN through qemu-nbd."""

    def __init__(
        self,
        logger: logging.Logger,
        stack: ResourceStack,
        *,
        sys_block: Path = Path("/sys/block"),
        dev_dir: Path = Path("/dev"),
        slots: int = NBD_SLOTS,
        settle_s: float = 2.0,
        rescan_settle_s: float = 1.0,
    ):
        self.logger = logger
        self.stack = stack
        self.sys_block = Path(sys_block)
        self.dev_dir = Path(dev_dir)
        self.slots = slots
        self.settle_s = settle_s
        self.rescan_settle_s = rescan_settle_s

    def ensure_module(self) -> None:
        if (self.sys_block / "nbd0").exists():
            return
        Log.step(self.logger, "Loading NBD module...")
        cp = U.run_cmd(
            self.logger,
            ["modprobe", "nbd", f"max_part={self.slots}", f"nbds_max={self.slots}"],
            check=False,
            capture=True,
        )
        if cp.returncode != 0:
            raise BackingStoreError(code=1, msg="Failed to load NBD module", context={"stderr": (cp.stderr or "").strip()})
        time.sleep(1)
        if not (self.sys_block / "nbd0").exists():
            raise BackingStoreError(code=1, msg="No NBD devices found. NBD module may not be loaded correctly.")

    def _slot_pid(self, idx: int) -> Optional[int]:
        try:
            return int((self.sys_block / f"nbd{idx}" / "pid").read_text().strip())
        except (OSError, ValueError):
            return None

    def find_free_slot(self) -> str:
        for idx in range(self.slots):
            if not (self.sys_block / f"nbd{idx}").exists():
                continue
            dev = str(self.dev_dir / f"nbd{idx}")
            pid = self._slot_pid(idx)
            if pid is None:
                self.logger.info("Found available NBD device: %s", dev)
                return dev
            if psutil.pid_exists(pid):
                self.logger.debug("Device %s is in use (qemu-nbd pid %s)", dev, pid)
                continue
            cp = U.run_cmd(self.logger, ["qemu-nbd", "-d", dev], check=False, capture=True)
            if cp.returncode == 0:
                self.logger.info("Found and freed stale NBD device: %s", dev)
                return dev
            self.logger.debug("Device %s could not be freed", dev)
        raise BackingStoreError(
            code=1,
            msg="No available NBD device found. Try disconnecting unused ones with: qemu-nbd -d /dev/nbd0",
        )

    def _connect(self, dev: str, fmt: str, image: str) -> Tuple[bool, str]:
        cp = U.run_cmd(self.logger, ["qemu-nbd", "-c", dev, "-f", fmt, image], check=False, capture=True)
        return cp.returncode == 0, (cp.stderr or "").strip()

    def attach(self, image_path: Union[str, Path]) -> BackingStore:
        image = Path(image_path).expanduser()
        if not image.is_file():
            raise BackingStoreError(code=1, msg=f"File not found: {image}", context={"image": str(image)})

        self.ensure_module()
        dev = self.find_free_slot()

        fmt = guess_format(image)
        attempts: List[str] = [fmt] if fmt == "raw" else [fmt, "raw"]
        errors: List[str] = []
        handle: Optional[BackingStore] = None
        for candidate in attempts:
            Log.step(self.logger, f"Connecting {image} to {dev} (format {candidate})")
            with self.stack.acquiring():
                ok, err = self._connect(dev, candidate, str(image))
                if ok:
                    handle = self.stack.push(BackingStore(path=str(image), device_node=dev, fmt=candidate))
            if ok:
                break
            errors.append(f"{candidate}: {err or 'failed'}")
            if candidate != "raw":
                Log.warn(self.logger, f"Failed to connect with format {candidate}; falling back to raw format")

        if handle is None:
            raise BackingStoreError(
                code=1,
                msg=f"Failed to connect {image}",
                context={"device": dev, "attempts": "; ".join(errors)},
            )

        Log.ok(self.logger, f"Successfully connected with format: {handle.fmt}")
        time.sleep(self.settle_s)
        U.run_cmd(self.logger, ["partprobe", dev], check=False, capture=True)
        time.sleep(self.rescan_settle_s)
        return handle

    def detach(self, handle: BackingStore) -> None:
        Log.step(self.logger, f"Disconnecting NBD device: {handle.device_node}")
        cp = U.run_cmd(self.logger, ["qemu-nbd", "--disconnect", handle.device_node], check=False, capture=True)
        if cp.returncode != 0:
            Log.warn(self.logger, f"Error disconnecting {handle.device_node}")
            raise BackingStoreError(
                code=1,
                msg=f"could not detach backing store node {handle.device_node}",
                context={"stderr": (cp.stderr or "").strip()},
            )
