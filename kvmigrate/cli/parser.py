# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# kvmigrate/cli/parser.py
from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, Optional, Sequence, Tuple

from ..config.config_loader import Config
from ..core.exceptions import Fatal
from ..core.logger import Log, c
from ..core.utils import U
from ..env.guest_config import IdMap
from ..migrate.task import MigrationType

YAML_EXAMPLE = """\
  node: pve1
  config_root: /etc/kvmigrate
  run_dir: /run/qemu-server
  launcher: [/usr/libexec/kvmigrate/launch-vm]
  migrate_downtime: 0.1
  bwlimit: 102400
  ssh: {user: root, identity: /root/.ssh/id_ed25519}
  storage:
    local: {type: dir, path: /var/lib/vz, content: [images]}
  convergence: {stall_threshold: 5, poll_interval: 1.0}
  remote: {host: 10.0.0.50, token: "root@pam!mig=<secret>", verify: false}
"""


class HelpFormatter(argparse.RawDescriptionHelpFormatter, argparse.ArgumentDefaultsHelpFormatter):
    pass


def _add_global_flags(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group(c("Config / logging", "cyan", ["bold"]))
    g.add_argument("--config", action="append", default=[], help="YAML config file (repeatable, later files win).")
    g.add_argument("-v", "--verbose", action="count", default=0, help="More output (-vv for debug, -vvv for trace).")
    g.add_argument("-q", "--quiet", action="count", default=0, help="Less output.")
    g.add_argument("--log-file", dest="log_file", default=None, help="Also write the log to this file.")
    g.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit NDJSON log records on stderr.")
    g.add_argument("--dump-config", action="store_true", help="Print the merged config as JSON and exit.")
    g.add_argument("--node", default=None, help="Name of the local node (default: short hostname).")
    g.add_argument("--run-dir", dest="run_dir", default=None, help="Directory with the QMP/QGA sockets and pid files.")
    g.add_argument("--config-root", dest="config_root", default=None, help="Root of the guest config store.")


def _add_migrate(sub: Any) -> None:
    p = sub.add_parser(
        "migrate",
        help="Migrate a guest to another node.",
        formatter_class=HelpFormatter,
        epilog=c("YAML example:\n", "cyan", ["bold"]) + c(YAML_EXAMPLE, "cyan"),
    )
    p.add_argument("vmid", type=int, help="Guest id.")
    p.add_argument("target", help="Target node.")
    p.add_argument("--online", action="store_true", help="Live migrate a running guest.")
    p.add_argument("--force", action="store_true", help="Allow local devices / non-replication targets.")
    p.add_argument(
        "--with-local-disks",
        dest="with_local_disks",
        action="store_true",
        help="Mirror attached local disks of a running guest.",
    )
    p.add_argument("--targetstorage", default=None, help="Storage map: 'src:dst,...' or a single target storage.")
    p.add_argument("--bridgemap", default=None, help="Bridge map for remote migrations: 'src:dst,...'.")
    p.add_argument(
        "--migration-type",
        dest="migration_type",
        choices=[t.value for t in MigrationType],
        default=MigrationType.SECURE.value,
    )
    p.add_argument("--migration-network", dest="migration_network", default=None, help="CIDR of the migration network.")
    p.add_argument("--bwlimit", type=int, default=None, help="Bandwidth limit in KiB/s.")
    p.add_argument("--migrate-downtime", dest="migrate_downtime", type=float, default=0.1, help="Max downtime in s.")
    p.add_argument("--migrate-speed", dest="migrate_speed", type=int, default=None, help="Default speed in MiB/s.")
    p.add_argument("--target-vmid", dest="target_vmid", type=int, default=None, help="Guest id on a remote cluster.")
    p.set_defaults(cmd="migrate")


def _add_mtunnel(sub: Any) -> None:
    p = sub.add_parser("mtunnel", help="Target-side tunnel helper (started by the source over ssh).")
    p.set_defaults(cmd="mtunnel")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="kvmigrate",
        description=c("kvmigrate: move KVM guests between nodes", "green", ["bold"]),
        formatter_class=HelpFormatter,
    )
    _add_global_flags(p)
    sub = p.add_subparsers(dest="cmd")
    _add_migrate(sub)
    _add_mtunnel(sub)
    return p


def _build_preparser() -> argparse.ArgumentParser:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-v", "--verbose", action="count", default=0)
    pre.add_argument("-q", "--quiet", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=None)
    pre.add_argument("--json-logs", dest="json_logs", action="store_true")
    pre.add_argument("--dump-config", action="store_true")
    return pre


def validate_args(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    if not getattr(args, "cmd", None):
        raise Fatal(2, "no command given (use 'migrate' or 'mtunnel')")
    if args.cmd != "migrate":
        return
    if args.vmid <= 0:
        raise Fatal(2, f"invalid vmid {args.vmid}")
    for name in ("targetstorage", "bridgemap"):
        try:
            IdMap.parse(getattr(args, name))
        except ValueError as e:
            raise Fatal(2, f"invalid --{name}: {e}")
    if args.bwlimit is not None and args.bwlimit < 0:
        raise Fatal(2, "--bwlimit must not be negative")
    remote = conf.get("remote")
    if args.migration_type == MigrationType.WEBSOCKET.value:
        if not isinstance(remote, dict) or not remote.get("host") or not remote.get("token"):
            raise Fatal(2, "websocket migration needs a 'remote' section with 'host' and 'token'")
    elif args.target_vmid is not None:
        raise Fatal(2, "--target-vmid is only valid with --migration-type websocket")


def parse_args_with_config(
    argv: Optional[Sequence[str]] = None,
    logger: Any = None,
) -> Tuple[argparse.Namespace, Dict[str, Any], Any]:
    """
    Phase 0: global flags that locate config and set up logging
    Phase 1: load and merge the YAML files
    Phase 2: config values become parser defaults
    Phase 3: full parse, then validation
    """
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)

    parser = build_parser()
    pre = _build_preparser()
    args0, _rest = pre.parse_known_args(argv)

    if logger is None:
        logger = Log.setup(
            args0.verbose,
            args0.log_file,
            quiet=args0.quiet,
            json_logs=args0.json_logs,
        )

    conf: Dict[str, Any] = {}
    if args0.config:
        conf = Config.load_many(logger, Config.expand_configs(logger, args0.config))

    if args0.dump_config:
        print(U.json_dump(conf))
        raise SystemExit(0)

    Config.apply_as_defaults(logger, parser, conf)
    args = parser.parse_args(argv)
    validate_args(args, conf)
    return args, conf, logger
