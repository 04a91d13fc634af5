# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/config/config_loader.py
"""
Config files come in two shapes:

  * YAML/JSON mappings (PyYAML safe_load):

        root_device: /dev/sdb2
        additional_mounts:
          - /srv/data:/mnt/data:bind

  * the legacy shell-style file:

        ROOT_DEVICE="/dev/sdb2"
        ADDITIONAL_MOUNTS=("/srv/data:/mnt/data:bind" "/dev/sdc1:/home")
        ENABLE_GUI_SUPPORT=true

Keys are case-insensitive and mapped onto argparse dests, so the merged
result can be applied as parser defaults and overridden from the CLI.
"""
from __future__ import annotations

import argparse
import glob
import logging
import re
import shlex
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

import yaml

from ..core.utils import U

# config key -> (argparse dest, kind)
KEY_MAP: Dict[str, tuple] = {
    "ROOT_DEVICE": ("root_device", "str"),
    "ROOT_MOUNT": ("root_mount", "str"),
    "EFI_PART": ("efi_part", "str"),
    "BOOT_PART": ("boot_part", "str"),
    "ADDITIONAL_MOUNTS": ("mount", "list"),
    "CUSTOM_SHELL": ("shell", "str"),
    "ENABLE_GUI_SUPPORT": ("gui", "bool"),
    "CHROOT_USER": ("user", "str"),
    "VIRTUAL_IMAGE": ("image", "str"),
    "LUKS_KEYFILE": ("luks_keyfile", "str"),
    "LUKS_PASSPHRASE_ENV": ("luks_passphrase_env", "str"),
    "COPY_HOST_FILES": ("no_copy_host_files", "negated_bool"),
    "INSTALL_MISSING": ("install_missing", "bool"),
}

_TRUE = frozenset({"1", "true", "yes", "y", "on"})
_FALSE = frozenset({"0", "false", "no", "n", "off", ""})

_YAML_SUFFIXES = frozenset({".yaml", ".yml", ".json"})
_DIR_GLOBS = ("*.yaml", "*.yml", "*.json", "*.conf")

_ASSIGN_RE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _strip_comment(line: str) -> str:
    try:
        toks = shlex.split(line, comments=True)
    except ValueError:
        return line
    return " ".join(toks)


def parse_shell_config(text: str) -> Dict[str, Any]:
    """
    Parse KEY=value / KEY=(a b c) assignments. Arrays may span lines.
    Anything that is not an assignment is ignored.
    """
    out: Dict[str, Any] = {}
    lines = (text or "").splitlines()
    i = 0
    while i < len(lines):
        m = _ASSIGN_RE.match(lines[i])
        i += 1
        if not m:
            continue
        key, rest = m.group(1), m.group(2).strip()
        if rest.startswith("("):
            body = rest[1:]
            while ")" not in _strip_comment(body) and i < len(lines):
                body += "\n" + lines[i]
                i += 1
            body = body[: body.rfind(")")] if ")" in body else body
            out[key] = shlex.split(body, comments=True)
            continue
        toks = shlex.split(rest, comments=True)
        out[key] = " ".join(toks)
    return out


def _looks_like_shell(text: str) -> bool:
    for ln in (text or "").splitlines():
        s = ln.strip()
        if not s or s.startswith("#"):
            continue
        return bool(_ASSIGN_RE.match(s))
    return False


class Config:
    @staticmethod
    def expand_configs(logger: logging.Logger, paths: Sequence[str]) -> List[Path]:
        """Expand ~, globs and directories (sorted *.yaml/*.yml/*.json/*.conf) in order."""
        out: List[Path] = []
        for raw in paths:
            p = Path(raw).expanduser()
            if p.is_dir():
                found = sorted({f for pat in _DIR_GLOBS for f in p.glob(pat)})
                logger.debug("Config dir %s: %s", p, [str(f) for f in found])
                out.extend(found)
                continue
            matches = sorted(glob.glob(str(p)))
            if glob.has_magic(str(p)):
                if not matches:
                    logger.warning("Config glob matched nothing: %s", raw)
                out.extend(Path(m) for m in matches)
                continue
            out.append(p)
        return out

    @staticmethod
    def load_file(logger: logging.Logger, path: Path) -> Dict[str, Any]:
        p = Path(path)
        if not p.is_file():
            U.die(logger, f"Config file not found: {p}", 1)
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            U.die(logger, f"Cannot read config {p}: {e}", 1)

        if p.suffix.lower() not in _YAML_SUFFIXES and _looks_like_shell(text):
            try:
                data: Any = parse_shell_config(text)
            except ValueError as e:
                U.die(logger, f"Invalid shell-style config {p}: {e}", 1)
        else:
            try:
                data = yaml.safe_load(text)
            except yaml.YAMLError as e:
                U.die(logger, f"Invalid YAML/JSON config {p}: {e}", 1)

        if data is None:
            return {}
        if not isinstance(data, dict):
            U.die(logger, f"Config {p} must contain a mapping at top level", 1)
        logger.debug("Loaded config %s (%d key(s))", p, len(data))
        return dict(data)

    @staticmethod
    def normalize(logger: logging.Logger, raw: Mapping[str, Any]) -> Dict[str, Any]:
        """Map config keys onto argparse dests with typed values."""
        out: Dict[str, Any] = {}
        for key, value in raw.items():
            spec = KEY_MAP.get(str(key).strip().upper())
            if spec is None:
                logger.debug("Ignoring unknown config key: %s", key)
                continue
            dest, kind = spec
            try:
                if kind == "bool":
                    out[dest] = parse_bool(value)
                elif kind == "negated_bool":
                    out[dest] = not parse_bool(value)
                elif kind == "list":
                    out[dest] = Config._as_list(value)
                else:
                    s = "" if value is None else str(value).strip()
                    out[dest] = s or None
            except ValueError as e:
                U.die(logger, f"Invalid value for {key}: {e}", 1)
        return out

    @staticmethod
    def _as_list(value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(v).strip() for v in value if str(v).strip()]
        return shlex.split(str(value))

    @staticmethod
    def load_many(logger: logging.Logger, paths: Sequence[Path]) -> Dict[str, Any]:
        """Load and merge in order; later files win key by key."""
        merged: Dict[str, Any] = {}
        for p in paths:
            merged.update(Config.normalize(logger, Config.load_file(logger, p)))
        return merged

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Mapping[str, Any]) -> None:
        known = {a.dest for a in parser._actions}
        defaults: Dict[str, Any] = {}
        for dest, value in conf.items():
            if dest not in known:
                logger.debug("Config value %s has no matching option", dest)
                continue
            defaults[dest] = value
        if defaults:
            parser.set_defaults(**defaults)
            logger.debug("Config defaults applied: %s", sorted(defaults))


def load_config(logger: logging.Logger, paths: Sequence[str]) -> Dict[str, Any]:
    if not paths:
        return {}
    return Config.load_many(logger, Config.expand_configs(logger, list(paths)))
