# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/config/session_config.py
from __future__ import annotations

import argparse
import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

DEFAULT_ROOT_MOUNT = "/mnt/chroot"

_BIND_TOKENS = frozenset({"bind", "--bind", "rbind", "--rbind"})


@dataclass(frozen=True)
class MountSpec:
    """
    One mount request. `target` is absolute for virtual mounts and relative to
    the chroot root (leading slash optional) for user-declared extras.
    fstype "bind" marks a bind mount.
    """
    source: str
    target: str
    fstype: Optional[str] = None
    options: Tuple[str, ...] = ()
    required: bool = True

    @property
    def is_bind(self) -> bool:
        return self.fstype == "bind"

    def mount_args(self) -> list:
        args = []
        if self.is_bind:
            args.append("--bind")
        elif self.fstype:
            args += ["-t", self.fstype]
        if self.options:
            args += ["-o", ",".join(self.options)]
        return args

    @classmethod
    def parse(cls, text: str, *, required: bool = True) -> "MountSpec":
        """Parse `source:target[:options]` (options comma separated; `bind` marks a bind mount)."""
        raw = (text or "").strip()
        parts = raw.split(":", 2)
        if len(parts) < 2 or not parts[0].strip() or not parts[1].strip():
            raise ValueError(f"invalid mount spec {text!r} (expected source:target[:options])")
        source, target = parts[0].strip(), parts[1].strip()
        if ".." in target.split("/"):
            raise ValueError(f"invalid mount spec {text!r} (target may not contain '..')")
        fstype: Optional[str] = None
        opts = []
        if len(parts) == 3:
            for tok in parts[2].replace(" ", ",").split(","):
                tok = tok.strip()
                if not tok:
                    continue
                if tok in _BIND_TOKENS:
                    fstype = "bind"
                elif tok.startswith("type="):
                    fstype = fstype or tok[len("type="):]
                else:
                    opts.append(tok)
        return cls(source=source, target=target, fstype=fstype, options=tuple(opts), required=required)

    def __str__(self) -> str:
        s = f"{self.source}:{self.target}"
        extra = (["bind"] if self.is_bind else []) + list(self.options)
        return f"{s}:{','.join(extra)}" if extra else s


def parse_mount_specs(items: Iterable[str]) -> Tuple[MountSpec, ...]:
    return tuple(MountSpec.parse(x) for x in items if x and x.strip())


@dataclass(frozen=True)
class SessionConfig:
    """Everything the session needs, fixed before the first resource is acquired."""
    root_mount: str = DEFAULT_ROOT_MOUNT
    target_user: str = ""
    shell_override: Optional[str] = None
    gui_enabled: bool = False
    additional_mounts: Tuple[MountSpec, ...] = ()
    quiet: bool = False

    root_device: Optional[str] = None
    image: Optional[str] = None
    efi_part: Optional[str] = None
    boot_part: Optional[str] = None
    luks_keyfile: Optional[str] = None
    luks_passphrase_env: Optional[str] = None
    copy_host_files: bool = True
    install_missing: bool = False
    debug: bool = False

    @property
    def image_mode(self) -> bool:
        return bool(self.image)

    @property
    def switch_user(self) -> bool:
        return bool(self.target_user) and self.target_user != "root"

    def replace(self, **changes: Any) -> "SessionConfig":
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "SessionConfig":
        mounts = getattr(args, "mount", None) or []
        return cls(
            root_mount=str(getattr(args, "root_mount", None) or DEFAULT_ROOT_MOUNT).rstrip("/") or "/",
            target_user=(getattr(args, "user", None) or "").strip(),
            shell_override=getattr(args, "shell", None) or None,
            gui_enabled=bool(getattr(args, "gui", False)),
            additional_mounts=parse_mount_specs(mounts),
            quiet=bool(getattr(args, "quiet", False)),
            root_device=getattr(args, "root_device", None) or None,
            image=getattr(args, "image", None) or None,
            efi_part=getattr(args, "efi_part", None) or None,
            boot_part=getattr(args, "boot_part", None) or None,
            luks_keyfile=getattr(args, "luks_keyfile", None) or None,
            luks_passphrase_env=getattr(args, "luks_passphrase_env", None) or None,
            copy_host_files=not bool(getattr(args, "no_copy_host_files", False)),
            install_missing=bool(getattr(args, "install_missing", False)),
            debug=bool(getattr(args, "debug", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["additional_mounts"] = [str(m) for m in self.additional_mounts]
        return d
