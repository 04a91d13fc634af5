# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/__main__.py
from __future__ import annotations

import sys
import traceback
from typing import Any, Optional, Sequence

from .cli.args import parse_args_with_config
from .cli.prompts import RichPrompts
from .config.session_config import SessionConfig
from .core.exceptions import Fatal, VChrootError, format_exception_for_cli
from .modes.interactive_mode import InteractiveMode
from .orchestrator.orchestrator import Orchestrator
from .storage.devices import DeviceResolver


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def _safe_log(logger: Any, level: str, msg: str) -> None:
    """Best-effort logging without assuming the logger exists yet."""
    if logger is None:
        _print_stderr(msg)
        return
    fn = getattr(logger, level, None)
    if callable(fn):
        fn(msg)
    else:
        _print_stderr(msg)


def run(argv: Optional[Sequence[str]] = None) -> int:
    logger: Any = None

    # Phase 1: parse (Fatal can happen here)
    try:
        args, _conf, logger = parse_args_with_config(argv)
    except Fatal as e:
        # U.die() already logged it when a logger existed.
        if logger is None:
            _print_stderr(f"💥 ERROR    {e}")
        return e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        return 1

    # Phase 2: run the session
    try:
        cfg = SessionConfig.from_args(args)
        prompts = None if cfg.quiet else RichPrompts()
        rc = Orchestrator(
            logger,
            cfg,
            prompts=prompts,
            log_file=args.log_file,
            verbose=int(getattr(args, "verbose", 0) or 0),
            interactive=InteractiveMode(logger, prompts, DeviceResolver(logger)) if prompts is not None else None,
        ).run()
    except VChrootError as e:
        # raised outside a session: host checks, lock, interactive flow
        _safe_log(logger, "error", format_exception_for_cli(e))
        rc = e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        rc = 1
    except Exception as e:
        _safe_log(logger, "error", f"💥 UNHANDLED {type(e).__name__}: {e}")
        _safe_log(logger, "debug", traceback.format_exc())
        rc = 1

    _safe_log(logger, "info", f"Log file: {args.log_file}")
    return rc


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
