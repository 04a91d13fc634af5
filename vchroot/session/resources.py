# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/session/resources.py
"""
Resource handles and the LIFO stack that owns them.

A handle is pushed the moment its acquisition call succeeds and popped only
by the teardown walk, so the stack always mirrors what the kernel holds for
this session.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Generator, Iterator, List, Optional, Tuple, Type, TypeVar, Union

from ..core.exceptions import SessionInterrupted


class MountKind(str, Enum):
    ROOT = "root"
    COMPANION = "companion"  # boot / EFI
    VIRTUAL = "virtual"  # proc, sys, dev, devpts, run, tmp
    EXTRA = "extra"  # user-declared device mount
    BIND = "bind"  # user-declared bind of a host directory


@dataclass(frozen=True)
class BackingStore:
    path: str
    device_node: str
    fmt: str

    def describe(self) -> str:
        return f"backing store {self.device_node} ({self.path}, {self.fmt})"


@dataclass(frozen=True)
class EncryptedVolume:
    source_partition: str
    mapper_name: str

    @property
    def mapper_path(self) -> str:
        return f"/dev/mapper/{self.mapper_name}"

    def describe(self) -> str:
        return f"encryption mapping {self.mapper_name} ({self.source_partition})"


@dataclass(frozen=True)
class ActivatedVolumeGroup:
    name: str

    def describe(self) -> str:
        return f"volume group {self.name}"


@dataclass(frozen=True)
class MountPoint:
    path: str
    source: str
    kind: MountKind
    fstype: Optional[str] = None
    shared: bool = False  # the host has this filesystem mounted elsewhere too

    @property
    def needs_eviction(self) -> bool:
        """Only disk-backed mounts get processes killed before unmount."""
        return self.kind not in (MountKind.VIRTUAL, MountKind.BIND)

    def describe(self) -> str:
        return f"mount {self.path} ({self.kind.value}, {self.source})"


@dataclass(frozen=True)
class HostFileOverlay:
    target: str
    backup: Optional[str] = None

    def describe(self) -> str:
        return f"host file copy {self.target}"


@dataclass(frozen=True)
class GuiGrant:
    cookie_path: Optional[str] = None
    xhost_granted: bool = False
    socket_dir: Optional[str] = None
    previous_mode: Optional[int] = None

    def describe(self) -> str:
        return f"GUI access grant (cookie={self.cookie_path}, xhost={self.xhost_granted})"


ResourceHandle = Union[
    BackingStore,
    EncryptedVolume,
    ActivatedVolumeGroup,
    MountPoint,
    HostFileOverlay,
    GuiGrant,
]

H = TypeVar("H")


class ResourceStack:
    def __init__(self) -> None:
        self._items: List[ResourceHandle] = []
        self._acquiring = 0
        self._pending_signal: Optional[int] = None

    # -------------------------------------------------------------------------
    # interruption
    # -------------------------------------------------------------------------

    @contextmanager
    def acquiring(self) -> Generator["ResourceStack", None, None]:
        """
        Scope of one acquire-then-push step. A signal delivered inside it is
        held until the step is over, so a command that already changed kernel
        state always gets its handle recorded before the session unwinds.
        """
        self._acquiring += 1
        try:
            yield self
        finally:
            self._acquiring -= 1
        self.checkpoint()

    def interrupt(self, signum: int) -> None:
        """Signal handler entry: raise now, or later when inside acquiring()."""
        if self._acquiring:
            if self._pending_signal is None:
                self._pending_signal = signum
            return
        raise SessionInterrupted(signum)

    @property
    def interrupt_pending(self) -> bool:
        return self._pending_signal is not None

    def checkpoint(self) -> None:
        if self._acquiring or self._pending_signal is None:
            return
        signum, self._pending_signal = self._pending_signal, None
        raise SessionInterrupted(signum)

    # -------------------------------------------------------------------------
    # handles
    # -------------------------------------------------------------------------

    def push(self, handle: H) -> H:
        self._items.append(handle)  # type: ignore[arg-type]
        return handle

    def pop(self) -> Optional[ResourceHandle]:
        if not self._items:
            return None
        return self._items.pop()

    def peek(self) -> Optional[ResourceHandle]:
        return self._items[-1] if self._items else None

    def snapshot(self) -> Tuple[ResourceHandle, ...]:
        """Handles in acquisition order."""
        return tuple(self._items)

    def of_type(self, cls: Type[H]) -> List[H]:
        return [h for h in self._items if isinstance(h, cls)]

    def root_mount(self) -> Optional[MountPoint]:
        for h in self._items:
            if isinstance(h, MountPoint) and h.kind is MountKind.ROOT:
                return h
        return None

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ResourceHandle]:
        return iter(list(self._items))

    def __repr__(self) -> str:
        return f"ResourceStack({[h.describe() for h in self._items]})"
