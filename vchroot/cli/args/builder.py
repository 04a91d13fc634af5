# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/cli/args/builder.py
from __future__ import annotations

import argparse

from ...core.logger import c
from ..help_texts import CONFIG_EXAMPLE, FEATURE_SUMMARY


class HelpFormatter(argparse.RawDescriptionHelpFormatter, argparse.ArgumentDefaultsHelpFormatter):
    """Combines raw description formatting with default value display in help."""


def _build_epilog() -> str:
    return (
        c("Config examples:\n", "cyan", ["bold"])
        + c(CONFIG_EXAMPLE, "cyan")
        + "\n"
        + c("Feature summary:\n", "cyan", ["bold"])
        + c(FEATURE_SUMMARY, "cyan")
    )
