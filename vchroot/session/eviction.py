# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/session/eviction.py
from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Set, Union

import psutil

from ..core.logger import Log
from ..core.utils import U


@dataclass(frozen=True)
class ProcessRef:
    pid: int
    command_name: str

    def __str__(self) -> str:
        return f"{self.pid}({self.command_name})"


def _path_is_under(path: str, base: str) -> bool:
    base = base.rstrip("/") or "/"
    if base == "/":
        return True
    return path == base or path.startswith(base + "/")


def _alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def _name(pid: int) -> Optional[str]:
    try:
        return psutil.Process(pid).name()
    except psutil.NoSuchProcess:
        return None
    except psutil.AccessDenied:
        return "?"


class ProcessEvictor:
    """
    Finds and terminates processes that would keep a mount busy.

    Holders of a mount point are gathered from fuser and lsof (merged); when
    neither tool is installed psutil's open-file and cwd tables are scanned
    instead. Chrooted processes are found by reading /proc/<pid>/root.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        grace_s: float = 3.0,
        kill_wait_s: float = 1.0,
        proc_dir: Path = Path("/proc"),
    ):
        self.logger = logger
        self.grace_s = grace_s
        self.kill_wait_s = kill_wait_s
        self.proc_dir = Path(proc_dir)

    # -------------------------------------------------------------------------
    # discovery
    # -------------------------------------------------------------------------

    def _pids_from(self, cmd: List[str]) -> Set[int]:
        cp = U.run_cmd(self.logger, cmd, check=False, capture=True)
        # fuser prints "1234c 5678m" on stdout; lsof -t prints one pid per line
        return {int(m) for m in re.findall(r"\b(\d+)[a-zA-Z]*\b", cp.stdout or "")}

    def _psutil_holders(self, mount_point: str) -> Set[int]:
        pids: Set[int] = set()
        for proc in psutil.process_iter(attrs=["pid"]):
            try:
                if _path_is_under(proc.cwd(), mount_point):
                    pids.add(proc.pid)
                    continue
                for f in proc.open_files():
                    if _path_is_under(f.path, mount_point):
                        pids.add(proc.pid)
                        break
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return pids

    def _refs(self, pids: Iterable[int]) -> List[ProcessRef]:
        me = os.getpid()
        out: List[ProcessRef] = []
        for pid in sorted(set(pids)):
            if pid == me:
                continue
            name = _name(pid)
            if name is not None:
                out.append(ProcessRef(pid=pid, command_name=name))
        return out

    def holders(self, mount_point: Union[str, Path], *, path_scoped: bool = False) -> List[ProcessRef]:
        """
        Processes using `mount_point`.

        `fuser -m` reports every user of the filesystem, wherever it is
        mounted; `path_scoped` restricts discovery to files below `mount_point`.
        """
        mp = str(mount_point)
        pids: Set[int] = set()
        used_tool = False
        if U.which("fuser") and not path_scoped:
            used_tool = True
            pids |= self._pids_from(["fuser", "-m", mp])
        if U.which("lsof"):
            used_tool = True
            pids |= self._pids_from(["lsof", "-t", "+D", mp])
        if not used_tool:
            if path_scoped:
                self.logger.debug("lsof not found; scanning processes below %s with psutil", mp)
            else:
                Log.warn_once(self.logger, "no-fuser-lsof", "fuser and lsof not found; scanning processes with psutil")
            pids |= self._psutil_holders(mp)
        return self._refs(pids)

    def chroot_processes(self, root: Union[str, Path]) -> List[ProcessRef]:
        real = os.path.realpath(str(root))
        pids: Set[int] = set()
        try:
            entries = list(self.proc_dir.iterdir())
        except OSError as e:
            Log.warn(self.logger, f"Cannot scan {self.proc_dir}: {e}")
            return []
        for entry in entries:
            if not entry.name.isdigit():
                continue
            try:
                link = os.readlink(entry / "root")
            except OSError:
                continue
            if _path_is_under(link, real) and real != "/":
                pids.add(int(entry.name))
        return self._refs(pids)

    # -------------------------------------------------------------------------
    # termination
    # -------------------------------------------------------------------------

    def _signal(self, refs: Iterable[ProcessRef], *, force: bool) -> None:
        for ref in refs:
            try:
                p = psutil.Process(ref.pid)
                if force:
                    p.kill()
                else:
                    p.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                Log.warn(self.logger, f"Cannot signal process {ref}: {e}")

    def terminate(self, refs: List[ProcessRef], *, what: str) -> List[ProcessRef]:
        """TERM, grace period, KILL the survivors, short wait. Returns what is still alive."""
        if not refs:
            return []
        Log.warn(self.logger, f"Terminating processes using {what}: {', '.join(str(r) for r in refs)}")
        self._signal(refs, force=False)
        time.sleep(self.grace_s)

        alive = [r for r in refs if _alive(r.pid)]
        if not alive:
            return []
        Log.warn(self.logger, f"Force killing: {', '.join(str(r) for r in alive)}")
        self._signal(alive, force=True)
        time.sleep(self.kill_wait_s)

        survivors = [r for r in alive if _alive(r.pid)]
        if survivors:
            Log.warn(self.logger, f"Processes still alive after KILL: {', '.join(str(r) for r in survivors)}")
        return survivors

    def evict_users(self, mount_point: Union[str, Path], *, path_scoped: bool = False) -> List[ProcessRef]:
        refs = self.holders(mount_point, path_scoped=path_scoped)
        if not refs:
            self.logger.debug("No processes using %s", mount_point)
        return self.terminate(refs, what=str(mount_point))

    def evict_chroot_processes(self, root: Union[str, Path]) -> List[ProcessRef]:
        refs = self.chroot_processes(root)
        if not refs:
            self.logger.debug("No processes chrooted into %s", root)
        return self.terminate(refs, what=f"chroot {root}")
