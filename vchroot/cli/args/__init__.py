# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/cli/args/__init__.py
"""
Argument parser modules for the vchroot CLI.
"""
from __future__ import annotations

from .builder import HelpFormatter, _build_epilog
from .parser import _build_preparser, build_parser, parse_args_with_config
from .validators import validate_args

__all__ = [
    "HelpFormatter",
    "_build_epilog",
    "_build_preparser",
    "build_parser",
    "parse_args_with_config",
    "validate_args",
]
