# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/cli/args/helpers.py
from __future__ import annotations

import argparse
import os
from typing import Any, Dict, Mapping, Optional

from ...core.logger import session_log_path

DEBUG_ENV = "VCHROOT_DEBUG"


def _require(v: Any) -> bool:
    """True if v is meaningfully present (treats empty/whitespace-only strings as missing)."""
    if v is None:
        return False
    if isinstance(v, str):
        return v.strip() != ""
    return True


def _merged_get(args: argparse.Namespace, conf: Dict[str, Any], key: str) -> Any:
    """Prefer CLI override if present (non-empty), else config."""
    v = getattr(args, key, None)
    if _require(v):
        return v
    return conf.get(key)


def _env_debug(env: Optional[Mapping[str, str]] = None) -> bool:
    e = os.environ if env is None else env
    return (e.get(DEBUG_ENV) or "").strip().lower() in ("1", "true", "yes", "on")


def _resolve_log_file(args0: argparse.Namespace) -> str:
    p = getattr(args0, "log_file", None)
    return str(p) if _require(p) else str(session_log_path())
