# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/cli/args/groups.py
from __future__ import annotations

import argparse

from ...config.session_config import DEFAULT_ROOT_MOUNT


def _add_global_config_logging(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Global config/logging (two-phase parse relies on these)
    # ------------------------------------------------------------------
    from ... import __version__

    p.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML/JSON or shell-style KEY=value config file (repeatable; later overrides earlier).",
    )
    p.add_argument("--dump-config", action="store_true", help="Print merged normalized config and exit.")
    p.add_argument("--dump-args", action="store_true", help="Print final parsed args and exit.")
    p.add_argument("--version", action="version", version=__version__)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -v, -vv, -vvv (trace)")
    p.add_argument(
        "--log-file",
        dest="log_file",
        default=None,
        help="Session log file (default: <tmpdir>/vchroot-<pid>.log).",
    )
    p.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit NDJSON log lines.")
    p.add_argument(
        "--debug",
        dest="debug",
        action="store_true",
        help="Debug logging on stderr and in the log file (also via env VCHROOT_DEBUG=1); "
        "writes a storage snapshot if setup fails.",
    )
    p.add_argument(
        "--quiet",
        dest="quiet",
        action="store_true",
        help="Unattended: no prompts, configuration values only.",
    )


def _add_source_selection(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # What to chroot into
    # ------------------------------------------------------------------
    g = p.add_argument_group("Source")
    g.add_argument("--root-device", dest="root_device", default=None, help="Root partition or volume (ROOT_DEVICE).")
    g.add_argument(
        "--image",
        dest="image",
        default=None,
        help="Disk image to attach through qemu-nbd instead of a physical device (VIRTUAL_IMAGE).",
    )
    g.add_argument("--efi-part", dest="efi_part", default=None, help="EFI system partition (EFI_PART).")
    g.add_argument("--boot-part", dest="boot_part", default=None, help="Separate /boot partition (BOOT_PART).")


def _add_mount_layout(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Mounts")
    g.add_argument(
        "--root-mount",
        dest="root_mount",
        default=DEFAULT_ROOT_MOUNT,
        help="Where the root filesystem is mounted (ROOT_MOUNT).",
    )
    g.add_argument(
        "--mount",
        dest="mount",
        action="append",
        default=[],
        metavar="SRC:TGT[:OPTS]",
        help="Additional mount inside the chroot, repeatable (ADDITIONAL_MOUNTS). "
        "A directory source, or the option 'bind', makes a bind mount.",
    )
    g.add_argument(
        "--no-copy-host-files",
        dest="no_copy_host_files",
        action="store_true",
        help="Do not copy the host's resolv.conf and hosts into the chroot.",
    )


def _add_session_knobs(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Session")
    g.add_argument("--shell", dest="shell", default=None, help="Preferred shell inside the chroot (CUSTOM_SHELL).")
    g.add_argument("--user", dest="user", default=None, help="Enter the chroot as this user (CHROOT_USER).")
    g.add_argument(
        "--gui",
        dest="gui",
        action="store_true",
        help="Experimental X11 passthrough; relaxes host X11 access control until exit (ENABLE_GUI_SUPPORT).",
    )


def _add_luks_knobs(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("LUKS")
    g.add_argument("--luks-keyfile", dest="luks_keyfile", default=None, help="Key file for encrypted partitions.")
    g.add_argument(
        "--luks-passphrase-env",
        dest="luks_passphrase_env",
        default=None,
        help="Environment variable holding the LUKS passphrase.",
    )


def _add_host_tools(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--install-missing",
        dest="install_missing",
        action="store_true",
        help="Offer to install missing host tools with the system package manager (interactive only).",
    )
