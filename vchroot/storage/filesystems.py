# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/storage/filesystems.py
from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple


class FilesystemKind(str, Enum):
    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"
    XFS = "xfs"
    BTRFS = "btrfs"
    F2FS = "f2fs"
    VFAT = "vfat"
    NTFS = "ntfs"
    LUKS = "crypto_LUKS"
    LVM_MEMBER = "LVM2_member"
    SWAP = "swap"
    OTHER = "other"
    UNKNOWN = "unknown"

    @classmethod
    def from_name(cls, name: str) -> "FilesystemKind":
        """Map a blkid/lsblk TYPE string onto a kind; empty means UNKNOWN."""
        t = (name or "").strip()
        if not t or t.lower() == "unknown":
            return cls.UNKNOWN
        kind = _BY_NAME.get(t.lower())
        if kind is not None:
            return kind
        return cls.OTHER

    @classmethod
    def from_file_output(cls, text: str) -> "FilesystemKind":
        """Classify `file -s` descriptive output (last-resort probe)."""
        for needle, kind in _FILE_SIGNATURES:
            if needle in (text or ""):
                return kind
        return cls.UNKNOWN

    @property
    def is_linux_native(self) -> bool:
        return self in _LINUX_NATIVE

    @property
    def is_fat(self) -> bool:
        return self is FilesystemKind.VFAT

    @property
    def supports_subvolumes(self) -> bool:
        return self is FilesystemKind.BTRFS


_LINUX_NATIVE = frozenset(
    {
        FilesystemKind.EXT2,
        FilesystemKind.EXT3,
        FilesystemKind.EXT4,
        FilesystemKind.XFS,
        FilesystemKind.BTRFS,
        FilesystemKind.F2FS,
    }
)

_BY_NAME: Dict[str, FilesystemKind] = {
    "ext2": FilesystemKind.EXT2,
    "ext3": FilesystemKind.EXT3,
    "ext4": FilesystemKind.EXT4,
    "xfs": FilesystemKind.XFS,
    "btrfs": FilesystemKind.BTRFS,
    "f2fs": FilesystemKind.F2FS,
    "vfat": FilesystemKind.VFAT,
    "fat": FilesystemKind.VFAT,
    "fat16": FilesystemKind.VFAT,
    "fat32": FilesystemKind.VFAT,
    "msdos": FilesystemKind.VFAT,
    "ntfs": FilesystemKind.NTFS,
    "ntfs3": FilesystemKind.NTFS,
    "crypto_luks": FilesystemKind.LUKS,
    "lvm2_member": FilesystemKind.LVM_MEMBER,
    "swap": FilesystemKind.SWAP,
}

# order matters: "ext4 filesystem" must not be shadowed by a shorter needle
_FILE_SIGNATURES: Tuple[Tuple[str, FilesystemKind], ...] = (
    ("ext2 filesystem", FilesystemKind.EXT2),
    ("ext3 filesystem", FilesystemKind.EXT3),
    ("ext4 filesystem", FilesystemKind.EXT4),
    ("XFS filesystem", FilesystemKind.XFS),
    ("BTRFS Filesystem", FilesystemKind.BTRFS),
    ("BTRFS filesystem", FilesystemKind.BTRFS),
    ("F2FS filesystem", FilesystemKind.F2FS),
    ("LUKS encrypted file", FilesystemKind.LUKS),
    ("LVM2 PV", FilesystemKind.LVM_MEMBER),
    ("swap file", FilesystemKind.SWAP),
    ("NTFS", FilesystemKind.NTFS),
    ("FAT", FilesystemKind.VFAT),
)
