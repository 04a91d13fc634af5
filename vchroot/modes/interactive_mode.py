# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/modes/interactive_mode.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional

from ..config.session_config import DEFAULT_ROOT_MOUNT, MountSpec, SessionConfig
from ..core.exceptions import Fatal
from ..storage.devices import DeviceInfo, DeviceResolver
from ..storage.filesystems import FilesystemKind

UEFI_FIRMWARE_DIR = Path("/sys/firmware/efi")


class InteractiveMode:
    """
    interactive mode:
      - physical device or disk image
      - root device from a table (or an image path)
      - GUI + target user, mount point
      - EFI (UEFI hosts only), boot partition, one additional mount
    Values already configured are offered as defaults.
    """

    def __init__(
        self,
        logger: logging.Logger,
        prompts: Any,
        resolver: DeviceResolver,
        *,
        firmware_dir: Path = UEFI_FIRMWARE_DIR,
    ):
        self.logger = logger
        self.prompts = prompts
        self.resolver = resolver
        self.firmware_dir = Path(firmware_dir)

    def _ask_image(self, default: Optional[str]) -> str:
        while True:
            path = self.prompts.ask_text("Path to the virtual disk image", default)
            if path and Path(path).expanduser().is_file():
                return str(Path(path).expanduser())
            self.prompts.error(f"File not found: {path or '(empty)'}")
            default = None

    def _pick(self, devices: List[DeviceInfo], title: str, *, allow_skip: bool) -> Optional[str]:
        if not devices:
            self.logger.info("No candidate devices for %s", title)
            return None
        return self.prompts.choose_device(devices, title, allow_skip=allow_skip)

    def _ask_extra_mount(self) -> Optional[MountSpec]:
        while True:
            text = self.prompts.ask_text("Additional mount (source:target[:options], empty to skip)")
            if not text:
                return None
            try:
                return MountSpec.parse(text)
            except ValueError as e:
                self.prompts.error(str(e))

    def run(self, cfg: SessionConfig) -> SessionConfig:
        source = self.prompts.ask_choice(
            "Chroot into a physical device or a virtual disk image?",
            ["physical", "image"],
            default="image" if cfg.image_mode else "physical",
        )

        image: Optional[str] = None
        root_device: Optional[str] = cfg.root_device
        devices: List[DeviceInfo] = []
        if source == "image":
            image = self._ask_image(cfg.image)
            root_device = None
        else:
            devices = self.resolver.list_candidate_devices()
            if not root_device:
                root_device = self._pick(devices, "root", allow_skip=False)
            if not root_device:
                raise Fatal(1, "No root device selected")

        gui = self.prompts.confirm("Enable experimental GUI (X11) support?", default=cfg.gui_enabled)
        user = self.prompts.ask_text("User to enter the chroot as (empty for root)", cfg.target_user or None)
        root_mount = self.prompts.ask_text("Mount point", cfg.root_mount or DEFAULT_ROOT_MOUNT)

        efi = cfg.efi_part
        boot = cfg.boot_part
        if source == "physical":
            companions = [d for d in devices if d.path != root_device and not d.mounted]
            if efi is None and self.firmware_dir.is_dir():
                efi = self._pick([d for d in companions if d.fstype.is_fat], "EFI", allow_skip=True)
            if boot is None:
                boot = self._pick(
                    [d for d in companions if d.fstype is not FilesystemKind.NTFS and not d.fstype.is_fat],
                    "boot",
                    allow_skip=True,
                )

        mounts = list(cfg.additional_mounts)
        extra = self._ask_extra_mount()
        if extra is not None:
            mounts.append(extra)

        return cfg.replace(
            image=image,
            root_device=root_device,
            gui_enabled=gui,
            target_user=user,
            root_mount=(root_mount.rstrip("/") or "/") if root_mount else DEFAULT_ROOT_MOUNT,
            efi_part=efi,
            boot_part=boot,
            additional_mounts=tuple(mounts),
        )
