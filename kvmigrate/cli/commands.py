# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# kvmigrate/cli/commands.py
from __future__ import annotations

import argparse
import sys
from typing import Any, Dict

from ..core.logger import Log
from ..env import Environment
from ..migrate import MigrationOptions, migrate
from ..tunnel.server import TunnelServer
from ..tunnel.websocket_tunnel import RemoteEndpoint


def _settings(args: argparse.Namespace, conf: Dict[str, Any]) -> Dict[str, Any]:
    """Merged environment settings: CLI flags win over YAML."""
    out = dict(conf)
    for key in ("node", "run_dir", "config_root"):
        value = getattr(args, key, None)
        if value:
            out[key] = value
    return out


def run_migrate(args: argparse.Namespace, conf: Dict[str, Any], logger: Any) -> int:
    settings = _settings(args, conf)
    env = Environment.from_config(settings, logger)

    opts: Dict[str, Any] = {
        "online": args.online,
        "force": args.force,
        "with_local_disks": args.with_local_disks,
        "targetstorage": args.targetstorage,
        "bridgemap": args.bridgemap,
        "migration_type": args.migration_type,
        "migration_network": args.migration_network,
        "bwlimit": args.bwlimit,
        "migrate_downtime": args.migrate_downtime,
        "migrate_speed": args.migrate_speed,
        "convergence": conf.get("convergence"),
    }
    if args.migration_type == "websocket":
        opts["remote"] = RemoteEndpoint.from_mapping(
            conf["remote"],
            node=args.target,
            vmid=args.target_vmid or args.vmid,
        )
    options = MigrationOptions.from_mapping(opts)

    Log.step(logger, f"migrating VM {args.vmid} to '{args.target}'", type=args.migration_type)
    upid = migrate(args.vmid, args.target, options, env, logger)
    Log.ok(logger, f"task {upid} done")
    return 0


def run_mtunnel(args: argparse.Namespace, conf: Dict[str, Any], logger: Any) -> int:
    env = Environment.from_config(_settings(args, conf), logger)
    return TunnelServer(env, stdin=sys.stdin, stdout=sys.stdout, logger=logger).run()


COMMANDS = {
    "migrate": run_migrate,
    "mtunnel": run_mtunnel,
}
