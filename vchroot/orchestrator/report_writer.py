# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/orchestrator/report_writer.py
"""
Session summary report and failure-time debug snapshot.
"""

from __future__ import annotations

import datetime as _dt
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .. import __version__
from ..config.session_config import SessionConfig
from ..core.file_ops import atomic_write, state_dir
from ..core.utils import U
from ..session.resources import ResourceHandle


def summary_path() -> Path:
    return state_dir() / "vchroot_summary.log"


def _json_sidecar_path(base: Path) -> Path:
    return base.with_suffix(".json") if base.suffix else Path(str(base) + ".json")


def _invoking_user() -> str:
    return os.environ.get("SUDO_USER") or os.environ.get("USER") or "unknown"


def build_summary(
    cfg: SessionConfig,
    resources: Sequence[ResourceHandle],
    *,
    root_device: Optional[str],
    efi_part: Optional[str],
    log_file: Optional[str],
) -> Dict[str, Any]:
    return {
        "version": __version__,
        "date": _dt.datetime.now().isoformat(timespec="seconds"),
        "user": _invoking_user(),
        "config": {
            "ROOT_DEVICE": root_device or cfg.root_device,
            "VIRTUAL_IMAGE": cfg.image,
            "ROOT_MOUNT": cfg.root_mount,
            "EFI_PART": efi_part or cfg.efi_part,
            "BOOT_PART": cfg.boot_part,
            "GUI_SUPPORT": cfg.gui_enabled,
            "CHROOT_USER": cfg.target_user or "root",
        },
        "resources": [h.describe() for h in resources],
        "additional_mounts": [str(m) for m in cfg.additional_mounts],
        "log_file": log_file,
    }


def render_summary(summary: Dict[str, Any]) -> str:
    lines: List[str] = [
        "=== Chroot Session Summary ===",
        f"Date: {summary['date']}",
        f"User: {summary['user']}",
        "",
        "Configuration:",
    ]
    for k, v in summary["config"].items():
        lines.append(f"  {k}: {v if v not in (None, '') else 'none'}")
    lines += ["", "Resources Acquired:"]
    lines += [f"  {r}" for r in summary["resources"]] or ["  none"]
    lines += ["", "Additional Mounts:"]
    lines += [f"  {m}" for m in summary["additional_mounts"]] or ["  none"]
    lines += ["", f"Log File: {summary['log_file']}", "=== End of Summary ===", ""]
    return "\n".join(lines)


def write_summary(logger: logging.Logger, summary: Dict[str, Any], path: Optional[Path] = None) -> Path:
    target = Path(path) if path is not None else summary_path()
    with atomic_write(target) as tmp:
        tmp.write_text(render_summary(summary), encoding="utf-8")
    with atomic_write(_json_sidecar_path(target)) as tmp:
        tmp.write_text(U.json_dump(summary) + "\n", encoding="utf-8")
    logger.debug("Summary report created at %s", target)
    return target


_SNAPSHOT_CMDS = (
    ("Block devices", ["lsblk", "-f"]),
    ("Device mapper nodes", ["ls", "-la", "/dev/mapper"]),
    ("LVM Physical Volumes", ["pvs"]),
    ("LVM Volume Groups", ["vgs"]),
    ("LVM Logical Volumes", ["lvs"]),
    ("Mount points", ["findmnt", "-rn", "-o", "SOURCE,TARGET,FSTYPE"]),
)


def write_debug_snapshot(
    logger: logging.Logger,
    resources: Sequence[ResourceHandle],
    *,
    directory: Optional[Path] = None,
) -> Path:
    """Dump host storage state next to the session log after a failed acquisition."""
    target = (Path(directory) if directory else state_dir()) / f"vchroot_debug_{U.now_ts()}.txt"
    parts: List[str] = [f"=== vchroot debug snapshot {_dt.datetime.now().isoformat(timespec='seconds')} ===", ""]
    for title, cmd in _SNAPSHOT_CMDS:
        parts.append(f"=== {title} ===")
        if not U.which(cmd[0]):
            parts += [f"({cmd[0]} not installed)", ""]
            continue
        cp = U.run_cmd(logger, cmd, check=False, capture=True)
        out = (cp.stdout or "").rstrip()
        if title == "Mount points":
            out = "\n".join(ln for ln in out.splitlines() if "mapper" in ln or "nbd" in ln)
        parts += [out or "(none)", ""]
    parts.append("=== Resource stack (acquisition order) ===")
    parts += [f"  {h.describe()}" for h in resources] or ["  (empty)"]
    parts.append("")
    with atomic_write(target) as tmp:
        tmp.write_text("\n".join(parts), encoding="utf-8")
    logger.info("Debug snapshot created: %s", target)
    return target
