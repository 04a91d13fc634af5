# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/session/mounts.py
from __future__ import annotations

import logging
import os
import tempfile
from collections import deque
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..config.session_config import MountSpec
from ..core.exceptions import MountError, MountFailureReason
from ..core.logger import Log
from ..core.retry import retry_operation
from ..core.utils import U
from ..storage.filesystems import FilesystemKind
from .resources import MountKind, MountPoint, ResourceStack

VIRTUAL_MOUNTS = (
    MountSpec("/proc", "/proc", "proc"),
    MountSpec("/sys", "/sys", "sysfs"),
    MountSpec("/dev", "/dev", "bind"),
    MountSpec("/dev/pts", "/dev/pts", "devpts", ("ptmxmode=666", "gid=5", "mode=620")),
    MountSpec("/run", "/run", "bind", required=False),
    MountSpec("/tmp", "/tmp", "bind", required=False),
)

BTRFS_ROOT_SUBVOLUMES = ("@", "@root", "root")
MAX_SYMLINK_HOPS = 40


def in_root(root: Union[str, Path], target: str) -> Path:
    """Map an absolute in-chroot path onto the host path below `root`."""
    return Path(root) / target.lstrip("/")


def resolve_in_root(root: Union[str, Path], path: str) -> Optional[str]:
    """
    Resolve `path` the way the kernel would after chroot(root): absolute link
    targets restart at `root`, `..` never climbs above it. Returns the final
    in-root path, or None on a symlink loop.
    """
    pending = deque(p for p in path.split("/") if p)
    resolved: List[str] = []
    hops = 0
    while pending:
        comp = pending.popleft()
        if comp == ".":
            continue
        if comp == "..":
            if resolved:
                resolved.pop()
            continue
        host = Path(root, *resolved, comp)
        if host.is_symlink():
            hops += 1
            if hops > MAX_SYMLINK_HOPS:
                return None
            target = os.readlink(host)
            if target.startswith("/"):
                resolved = []
            pending.extendleft(reversed([p for p in target.split("/") if p]))
            continue
        resolved.append(comp)
    return "/" + "/".join(resolved)


def mount_target_in_root(root: Union[str, Path], target: str) -> Path:
    """
    Host path for mounting onto in-chroot `target`.

    Guest symlinks along the way are followed inside the root, so the result
    always lies below it.
    """
    final = resolve_in_root(root, target)
    if final is None:
        raise MountError(
            code=1,
            msg=f"Too many levels of symbolic links resolving {target} in {root}",
            context={"root": str(root), "target": target},
        )
    host = in_root(root, final)
    real_root = os.path.realpath(root)
    real_host = os.path.realpath(host)
    if os.path.commonpath([real_root, real_host]) != real_root:
        raise MountError(
            code=1,
            msg=f"Mount target {target} resolves outside {root}",
            context={"root": str(root), "target": target, "resolved": real_host},
        )
    return host


def has_root_layout(root: Union[str, Path]) -> bool:
    r = Path(root)
    return (r / "etc").is_dir() and ((r / "bin").is_dir() or (r / "usr" / "bin").is_dir())


def parse_btrfs_subvolumes(text: str) -> List[str]:
    """
    `btrfs subvolume list` prints
      ID 256 gen 10 top level 5 path @home
    the path is everything from the 9th field on (it may contain spaces).
    """
    out: List[str] = []
    for ln in (text or "").splitlines():
        fields = ln.split()
        if len(fields) < 9:
            continue
        path = " ".join(fields[8:]).strip()
        if path:
            out.append(path)
    return out


class MountManager:
    """
    Mounts the root, companion, virtual and extra filesystems, pushing every
    successful mount onto the session's ResourceStack.
    """

    def __init__(
        self,
        logger: logging.Logger,
        stack: ResourceStack,
        *,
        attempts: int = 3,
        delay_s: float = 1.0,
        umount_attempts: int = 3,
        umount_delay_s: float = 2.0,
    ):
        self.logger = logger
        self.stack = stack
        self.attempts = attempts
        self.delay_s = delay_s
        self.umount_attempts = umount_attempts
        self.umount_delay_s = umount_delay_s

    # -------------------------------------------------------------------------
    # primitives
    # -------------------------------------------------------------------------

    def _mount_once(self, args: Sequence[str], source: str, target: Path) -> None:
        cp = U.run_cmd(self.logger, ["mount", *args, source, str(target)], check=False, capture=True)
        if cp.returncode != 0:
            err = (cp.stderr or cp.stdout or "").strip()
            raise MountError(
                code=1,
                msg=f"Failed to mount {source} to {target}",
                context={"source": source, "target": str(target), "output": err},
                reason=MountFailureReason.from_output(err),
            )

    def mount(
        self,
        spec: MountSpec,
        *,
        target: Optional[Path] = None,
        kind: MountKind = MountKind.EXTRA,
        shared: bool = False,
    ) -> Optional[MountPoint]:
        """
        Mount `spec` (at `target` when given) with bounded fixed-delay retries.

        Returns the pushed handle, or None when something was already mounted
        at the target (we never take ownership of a mount we did not make).
        `shared` marks a filesystem the host also has mounted elsewhere.
        """
        tgt = Path(target) if target is not None else Path(spec.target)
        self.logger.debug("Mounting %s to %s with options: %s", spec.source, tgt, spec.mount_args())
        try:
            tgt.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MountError(
                code=1,
                msg=f"Failed to create mount point: {tgt}",
                cause=e,
                reason=MountFailureReason.PERMISSION_DENIED
                if isinstance(e, PermissionError)
                else MountFailureReason.UNKNOWN,
            ) from e

        if U.is_mountpoint(self.logger, tgt):
            Log.warn(self.logger, f"{tgt} is already mounted")
            return None

        with self.stack.acquiring():
            retry_operation(
                lambda: self._mount_once(spec.mount_args(), spec.source, tgt),
                max_attempts=self.attempts,
                delay_s=self.delay_s,
                exceptions=MountError,
                operation_name=f"mount {spec.source} -> {tgt}",
                logger=self.logger,
                log_level=logging.DEBUG,
            )
            handle = self.stack.push(
                MountPoint(path=str(tgt), source=spec.source, kind=kind, fstype=spec.fstype, shared=shared)
            )
        self.logger.info("Successfully mounted %s to %s", spec.source, tgt)
        return handle

    def unmount(self, handle: MountPoint) -> None:
        target = handle.path
        if not U.is_mountpoint(self.logger, target):
            self.logger.debug("%s is no longer mounted", target)
            return

        def _once() -> None:
            cp = U.run_cmd(self.logger, ["umount", target], check=False, capture=True)
            if cp.returncode != 0:
                err = (cp.stderr or "").strip()
                raise MountError(
                    code=1,
                    msg=f"Failed to unmount {target}",
                    context={"output": err},
                    reason=MountFailureReason.from_output(err),
                )

        try:
            retry_operation(
                _once,
                max_attempts=self.umount_attempts,
                delay_s=self.umount_delay_s,
                exceptions=MountError,
                operation_name=f"umount {target}",
                logger=self.logger,
            )
            self.logger.info("Successfully unmounted %s", target)
            return
        except MountError as e:
            last = e

        Log.warn(self.logger, f"All unmount attempts failed, trying lazy unmount for {target}")
        cp = U.run_cmd(self.logger, ["umount", "-l", target], check=False, capture=True)
        if cp.returncode == 0:
            self.logger.info("Successfully lazy unmounted %s", target)
            return
        raise MountError(
            code=1,
            msg=f"Failed to unmount {target} even with lazy",
            context={"output": (cp.stderr or "").strip()},
            reason=last.reason,
        )

    # -------------------------------------------------------------------------
    # root
    # -------------------------------------------------------------------------

    def _probe_btrfs_subvolumes(self, device: str) -> List[str]:
        probe = Path(tempfile.mkdtemp(prefix="vchroot-probe-"))
        mounted = False
        try:
            cp = U.run_cmd(self.logger, ["mount", "-o", "ro", device, str(probe)], check=False, capture=True)
            if cp.returncode != 0:
                Log.warn(self.logger, f"Cannot mount {device} for probing")
                return []
            mounted = True
            cp = U.run_cmd(self.logger, ["btrfs", "subvolume", "list", str(probe)], check=False, capture=True)
            return parse_btrfs_subvolumes(cp.stdout if cp.returncode == 0 else "")
        finally:
            if mounted:
                U.run_cmd(self.logger, ["umount", str(probe)], check=False, capture=True)
            try:
                os.rmdir(probe)
            except OSError as e:
                self.logger.debug("Could not remove probe dir %s: %s", probe, e)

    def _mount_btrfs_root(self, device: str, root: Path, *, shared: bool = False) -> MountPoint:
        Log.step(self.logger, f"Probing Btrfs partition {device} for subvolumes...")
        root.mkdir(parents=True, exist_ok=True)
        if U.is_mountpoint(self.logger, root):
            raise MountError(code=1, msg=f"{root} is already mounted", reason=MountFailureReason.BUSY)

        candidates: List[str] = list(BTRFS_ROOT_SUBVOLUMES)
        with self.stack.acquiring():
            found = self._probe_btrfs_subvolumes(device)
        for sub in found:
            if sub not in candidates:
                candidates.append(sub)

        def _root_handle() -> MountPoint:
            return MountPoint(path=str(root), source=device, kind=MountKind.ROOT, fstype="btrfs", shared=shared)

        for sub in candidates:
            self.logger.info("Trying Btrfs subvolume candidate: %s", sub)
            with self.stack.acquiring():
                cp = U.run_cmd(
                    self.logger,
                    ["mount", "-t", "btrfs", "-o", f"subvol={sub}", device, str(root)],
                    check=False,
                    capture=True,
                )
                if cp.returncode != 0:
                    continue
                if has_root_layout(root):
                    Log.ok(self.logger, f"Using Btrfs subvolume for root: {sub}")
                    return self.stack.push(_root_handle())
                um = U.run_cmd(self.logger, ["umount", str(root)], check=False, capture=True)
                if um.returncode != 0:
                    # still mounted: hand it to teardown
                    self.stack.push(_root_handle())
                    raise MountError(
                        code=1,
                        msg=f"Could not unmount rejected subvolume {sub} from {root}",
                        reason=MountFailureReason.from_output(um.stderr or ""),
                    )

        self.logger.info("No valid root subvolume found; mounting raw partition")
        handle = self.mount(MountSpec(device, str(root), "btrfs"), target=root, kind=MountKind.ROOT, shared=shared)
        assert handle is not None
        return handle

    def mount_root(
        self, device: str, root: Union[str, Path], fs: FilesystemKind, *, shared: bool = False
    ) -> MountPoint:
        root_p = Path(root)
        Log.step(self.logger, f"Mounting root filesystem {device} on {root_p}")
        if fs.supports_subvolumes:
            handle = self._mount_btrfs_root(device, root_p, shared=shared)
        else:
            mounted = self.mount(MountSpec(device, str(root_p)), target=root_p, kind=MountKind.ROOT, shared=shared)
            if mounted is None:
                raise MountError(
                    code=1,
                    msg=f"{root_p} is already mounted; refusing to reuse it as the chroot root",
                    reason=MountFailureReason.BUSY,
                )
            handle = mounted

        if not has_root_layout(root_p):
            raise MountError(
                code=1,
                msg=f"{device} does not look like a Linux root filesystem (missing /etc or /bin)",
                context={"device": device, "root": str(root_p)},
                reason=MountFailureReason.WRONG_FS_TYPE,
            )
        return handle

    # -------------------------------------------------------------------------
    # companions / virtual / extras
    # -------------------------------------------------------------------------

    def mount_companions(
        self,
        root: Union[str, Path],
        *,
        boot_part: Optional[str] = None,
        efi_part: Optional[str] = None,
    ) -> List[MountPoint]:
        """boot then EFI; failures are warnings, the chroot works without them."""
        out: List[MountPoint] = []
        for label, dev, target in (("boot", boot_part, "/boot"), ("EFI", efi_part, "/boot/efi")):
            if not dev:
                continue
            try:
                h = self.mount(
                    MountSpec(dev, target, required=False),
                    target=mount_target_in_root(root, target),
                    kind=MountKind.COMPANION,
                )
            except MountError as e:
                Log.warn(self.logger, f"Failed to mount {label} partition {dev}: {e.user_message()}")
                continue
            if h is not None:
                out.append(h)
        return out

    def _mount_list(self, root: Union[str, Path], specs: Sequence[MountSpec], *, virtual: bool) -> List[MountPoint]:
        out: List[MountPoint] = []
        for spec in specs:
            bind = spec.is_bind or (not virtual and Path(spec.source).is_dir())
            if bind and not spec.is_bind:
                spec = MountSpec(spec.source, spec.target, "bind", spec.options, spec.required)
            if virtual:
                kind = MountKind.VIRTUAL
            else:
                kind = MountKind.BIND if bind else MountKind.EXTRA
            try:
                h = self.mount(spec, target=mount_target_in_root(root, spec.target), kind=kind)
            except MountError as e:
                if spec.required:
                    raise
                Log.warn(self.logger, f"Failed to bind mount {spec.source} to {spec.target}: {e.user_message()}")
                continue
            if h is not None:
                out.append(h)
        return out

    def mount_virtual(self, root: Union[str, Path]) -> List[MountPoint]:
        Log.step(self.logger, "Mounting virtual filesystems")
        return self._mount_list(root, VIRTUAL_MOUNTS, virtual=True)

    def mount_extras(self, root: Union[str, Path], specs: Sequence[MountSpec]) -> List[MountPoint]:
        if specs:
            Log.step(self.logger, f"Mounting {len(specs)} additional mount(s)")
        return self._mount_list(root, specs, virtual=False)
