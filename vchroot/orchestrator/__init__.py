# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/orchestrator/__init__.py
from .orchestrator import ChrootSession, Orchestrator

__all__ = ["ChrootSession", "Orchestrator"]
