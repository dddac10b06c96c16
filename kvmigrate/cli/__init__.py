# SPDX-License-Identifier: LGPL-3.0-or-later
from .commands import COMMANDS, run_migrate, run_mtunnel
from .parser import build_parser, parse_args_with_config, validate_args

__all__ = [
    "COMMANDS",
    "run_migrate",
    "run_mtunnel",
    "build_parser",
    "parse_args_with_config",
    "validate_args",
]
