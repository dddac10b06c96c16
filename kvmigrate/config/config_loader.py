# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# kvmigrate/config/config_loader.py
from __future__ import annotations

import argparse
import glob
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

import yaml

from ..core.utils import U


def _deep_merge(base: Dict[str, Any], over: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in over.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = _deep_merge(dict(out[k]), v)
        else:
            out[k] = v
    return out


def _normalize_keys(d: Mapping[str, Any]) -> Dict[str, Any]:
    """`migrate-speed` and `migrate_speed` are the same key at the top level."""
    return {str(k).replace("-", "_"): v for k, v in d.items()}


class Config:
    """
    YAML configuration files, merged in order (later files win) and applied
    as argparse defaults so explicit CLI flags still override them.
    """

    @staticmethod
    def expand_configs(logger: Any, cfgs: Sequence[str]) -> List[Path]:
        out: List[Path] = []
        for raw in cfgs:
            pattern = os.path.expanduser(os.path.expandvars(raw))
            matches = sorted(glob.glob(pattern)) if any(ch in pattern for ch in "*?[") else [pattern]
            if not matches:
                U.die(logger, f"Config pattern matched nothing: {raw}", 2)
            for m in matches:
                p = Path(m)
                if not p.is_file():
                    U.die(logger, f"Config file not found: {p}", 2)
                out.append(p)
        return out

    @staticmethod
    def load_one(logger: Any, path: Path) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            U.die(logger, f"Invalid YAML in {path}: {e}", 2)
        except OSError as e:
            U.die(logger, f"Cannot read config {path}: {e}", 2)
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            U.die(logger, f"Config {path} must be a mapping at the top level", 2)
        logger.debug("Loaded config %s (%d keys)", path, len(data))
        return _normalize_keys(data)

    @staticmethod
    def load_many(logger: Any, paths: Sequence[Path]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for p in paths:
            merged = _deep_merge(merged, Config.load_one(logger, p))
        return merged

    @staticmethod
    def apply_as_defaults(logger: Any, parser: argparse.ArgumentParser, conf: Mapping[str, Any]) -> None:
        """
        Set parser defaults for every config key that matches an argument
        dest. Nested sections (ssh, remote, storage, convergence) stay in the
        config mapping and are read by the components that own them.
        """
        dests = {a.dest for a in parser._actions}
        for sub in parser._actions:
            if isinstance(sub, argparse._SubParsersAction):
                for sp in sub.choices.values():
                    dests.update(a.dest for a in sp._actions)
                    known = {k: v for k, v in conf.items() if k in {a.dest for a in sp._actions}}
                    if known:
                        sp.set_defaults(**known)
        top = {k: v for k, v in conf.items() if k in dests}
        if top:
            parser.set_defaults(**top)
        logger.debug("Applied %d config keys as CLI defaults", len(top))
