# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/cli/args/validators.py
from __future__ import annotations

import argparse
import os
from typing import Any, Dict

from ...config.session_config import MountSpec
from .helpers import _merged_get, _require


def _validate_source(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    image = _merged_get(args, conf, "image")
    device = _merged_get(args, conf, "root_device")
    if _require(image) and _require(device):
        raise SystemExit("--image and --root-device are mutually exclusive (VIRTUAL_IMAGE vs ROOT_DEVICE).")
    if getattr(args, "quiet", False) and not (_require(image) or _require(device)):
        raise SystemExit("--quiet needs ROOT_DEVICE or VIRTUAL_IMAGE from the config file or the command line.")
    if _require(image) and not os.path.isfile(os.path.expanduser(str(image))):
        raise SystemExit(f"Image file not found: {image}")


def _validate_paths(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    root_mount = _merged_get(args, conf, "root_mount")
    if _require(root_mount) and not str(root_mount).startswith("/"):
        raise SystemExit(f"--root-mount must be an absolute path: {root_mount}")
    if _require(root_mount) and str(root_mount).rstrip("/") == "":
        raise SystemExit("--root-mount cannot be the host root")

    shell = _merged_get(args, conf, "shell")
    if _require(shell) and not str(shell).startswith("/"):
        raise SystemExit(f"--shell must be an absolute path inside the chroot: {shell}")

    keyfile = _merged_get(args, conf, "luks_keyfile")
    if _require(keyfile) and not os.path.isfile(str(keyfile)):
        raise SystemExit(f"--luks-keyfile not found: {keyfile}")


def _validate_mounts(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    for spec in getattr(args, "mount", None) or []:
        try:
            MountSpec.parse(spec)
        except ValueError as e:
            raise SystemExit(f"--mount: {e}")


def validate_args(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    """Static checks only; nothing on the host is touched here."""
    _validate_source(args, conf)
    _validate_paths(args, conf)
    _validate_mounts(args, conf)
