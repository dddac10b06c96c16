# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# kvmigrate/__main__.py
from __future__ import annotations

import sys
import traceback
from typing import Any, Optional

from .cli import COMMANDS, parse_args_with_config
from .core.exceptions import Fatal, KvMigrateError, MigrationError, format_exception_for_cli


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def _safe_log(logger: Any, level: str, msg: str) -> None:
    if logger is None:
        _print_stderr(msg)
        return
    fn = getattr(logger, level, None)
    if callable(fn):
        fn(msg)
    else:
        _print_stderr(msg)


def main(argv: Optional[list] = None) -> None:
    logger: Any = None

    try:
        args, conf, logger = parse_args_with_config(argv)
    except Fatal as e:
        _safe_log(logger, "error", f"💥 ERROR    {e}")
        raise SystemExit(e.code)
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        raise SystemExit(130)

    verbose = getattr(args, "verbose", 0)
    try:
        rc = COMMANDS[args.cmd](args, conf, logger)
    except MigrationError as e:
        # the task log already ends with the TASK ERROR line
        _safe_log(logger, "debug", format_exception_for_cli(e, verbose=2))
        rc = e.code or 1
    except KvMigrateError as e:
        _safe_log(logger, "error", f"💥 ERROR    {format_exception_for_cli(e, verbose=verbose)}")
        rc = e.code or 1
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        rc = 130
    except Exception as e:
        _safe_log(logger, "error", f"💥 UNHANDLED {type(e).__name__}: {e}")
        _safe_log(logger, "debug", traceback.format_exc())
        rc = 1

    raise SystemExit(rc)


if __name__ == "__main__":
    main()
