# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/tunnel/server.py
"""
Target-node side of the tunnel (`kvmigrate mtunnel`).

Reads one JSON command per line on stdin and answers with one JSON object
per line on stdout. Log output goes to stderr so it never mixes with
replies.
"""
from __future__ import annotations

import json
import logging
import os
import socket
import threading
from pathlib import Path
from typing import Any, Callable, Dict, IO, Optional, Set

from ..core.exceptions import KvMigrateError, QMPError
from ..core.utils import U
from ..env import Environment
from ..env.guest_config import parse_drive, print_drive
from .base import WS_TUNNEL_AGE, WS_TUNNEL_VERSION
from .ssh_tunnel import BANNER

logger = logging.getLogger(__name__)


class _DiskImport:
    """One incoming disk stream written straight into a freshly allocated volume."""

    def __init__(self, sock_path: str, dest: str, volid: str, *, logger: Any):
        self.sock_path = sock_path
        self.dest = dest
        self.volid = volid
        self.logger = logger
        self.status = "pending"
        self.msg: Optional[str] = None
        self.received = 0
        U.safe_unlink(Path(sock_path))
        self.listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.listener.bind(sock_path)
        self.listener.listen(1)
        self.thread = threading.Thread(target=self._run, name="disk-import", daemon=True)
        self.thread.start()

    def _run(self) -> None:
        try:
            conn, _ = self.listener.accept()
            with conn, open(self.dest, "wb") as out:
                while True:
                    chunk = conn.recv(1 << 20)
                    if not chunk:
                        break
                    out.write(chunk)
                    self.received += len(chunk)
                out.flush()
                os.fsync(out.fileno())
            self.status = "complete"
        except OSError as e:
            self.status = "error"
            self.msg = str(e)
            self.logger.error("disk import into %s failed: %s", self.volid, e)
        finally:
            self.close()

    def close(self) -> None:
        self.listener.close()
        U.safe_unlink(Path(self.sock_path))


class TunnelServer:
    def __init__(
        self,
        env: Environment,
        *,
        stdin: IO[str],
        stdout: IO[str],
        logger: Any = logger,
    ):
        self.env = env
        self.stdin = stdin
        self.stdout = stdout
        self.logger = logger
        self.imports: Dict[str, _DiskImport] = {}
        # guests whose config was handed over through this tunnel
        self.configured: Set[int] = set()
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "version": self.cmd_version,
            "config": self.cmd_config,
            "start": self.cmd_start,
            "resume": self.cmd_resume,
            "nbdstop": self.cmd_nbdstop,
            "stop": self.cmd_stop,
            "unlock": self.cmd_unlock,
            "fstrim": self.cmd_fstrim,
            "free": self.cmd_free,
            "disk-import": self.cmd_disk_import,
            "query-disk-import": self.cmd_query_disk_import,
        }

    def _reply(self, data: Dict[str, Any]) -> None:
        self.stdout.write(json.dumps(data, sort_keys=True) + "\n")
        self.stdout.flush()

    def run(self) -> int:
        self.stdout.write(BANNER + "\n")
        self.stdout.flush()
        for raw in self.stdin:
            line = raw.strip()
            if not line:
                continue
            try:
                req = json.loads(line)
                if not isinstance(req, dict):
                    raise ValueError("command must be an object")
            except ValueError as e:
                self._reply({"success": False, "msg": f"invalid command: {e}"})
                continue
            cmd = req.pop("cmd", None)
            if cmd == "quit":
                self._reply({"success": True})
                break
            handler = self._handlers.get(cmd)
            if handler is None:
                self._reply({"success": False, "msg": f"unknown command '{cmd}'"})
                continue
            try:
                res = handler(req) or {}
            except (KvMigrateError, OSError, KeyError, ValueError) as e:
                self.logger.error("command '%s' failed: %s", cmd, e)
                self._reply({"success": False, "msg": str(e)})
                continue
            res["success"] = True
            self._reply(res)
        for imp in self.imports.values():
            imp.close()
        return 0

    # --- commands ---------------------------------------------------------------------

    def cmd_version(self, req: Dict[str, Any]) -> Dict[str, Any]:
        return {"api": WS_TUNNEL_VERSION, "age": WS_TUNNEL_AGE}

    def cmd_config(self, req: Dict[str, Any]) -> Dict[str, Any]:
        vmid = int(req["vmid"])
        conf = req["conf"]
        if not isinstance(conf, dict):
            raise ValueError("config must be a mapping")
        self.env.config_store.write_config(vmid, conf)
        self.configured.add(vmid)
        return {}

    def cmd_start(self, req: Dict[str, Any]) -> Dict[str, Any]:
        vmid = int(req["vmid"])
        source = req.get("migratedfrom")
        conf = req.get("conf") or self.env.config_store.load_config(vmid, node=source)

        drives: Dict[str, Dict[str, Any]] = {}
        replicated = []
        allocated = []
        nbd_volids: Dict[str, str] = {}
        for drive_key, info in sorted((req.get("nbd") or {}).items()):
            drive = parse_drive(drive_key, conf.get(drive_key, ""))
            if drive is None:
                raise ValueError(f"drive '{drive_key}' not found in config")
            if info.get("replicated"):
                volid = info["volid"]
                replicated.append(volid)
            else:
                volid = self.env.storage.vdisk_alloc(
                    info["storage"], vmid, info.get("format"), None, int(info.get("size") or 0)
                )
                allocated.append(volid)
                self.logger.info("allocated volume '%s' for drive '%s'", volid, drive_key)
            drive["file"] = volid
            drive.pop("format", None)
            if info.get("format"):
                drive["format"] = info["format"]
            conf[drive_key] = print_drive(drive)
            nbd_volids[drive_key] = volid
            drives[drive_key] = {"drivestr": conf[drive_key]}

        params = {
            "migratedfrom": source,
            "migration_type": req.get("migration_type", "secure"),
            "migration_network": req.get("migration_network"),
            "conf": conf,
            "nbd": nbd_volids,
        }
        try:
            reply = self.env.supervisor.start(vmid, params)
        except KvMigrateError:
            for volid in allocated:
                try:
                    self.env.storage.vdisk_free(volid)
                except KvMigrateError as e:
                    self.logger.warning("failed to free %s - %s", volid, e)
            raise
        if vmid in self.configured:
            # persist the handed-over config with the allocated volumes
            self.env.config_store.write_config(vmid, conf)
        migrate = reply.get("migrate") or {"proto": "unix", "addr": str(self.env.run_dir / f"{vmid}.migrate")}
        started = reply.get("drives") or {}
        for drive_key, entry in drives.items():
            entry["nbd_uri"] = (started.get(drive_key) or {}).get("nbd_uri") or (
                f"nbd:unix:{self.env.run_dir / f'{vmid}_nbd.migrate'}:exportname=drive-{drive_key}"
            )
        return {
            "migrate": migrate,
            "drives": drives,
            "spice_port": reply.get("spice_port"),
            "replicated_volumes": replicated,
        }

    def cmd_resume(self, req: Dict[str, Any]) -> Dict[str, Any]:
        vmid = int(req["vmid"])
        if not self.env.supervisor.is_running(vmid):
            raise KvMigrateError(msg=f"VM {vmid} not running")
        self.env.monitor.mon_cmd(vmid, "cont")
        return {}

    def cmd_nbdstop(self, req: Dict[str, Any]) -> Dict[str, Any]:
        self.env.monitor.mon_cmd(int(req["vmid"]), "nbd-server-stop", timeout=25)
        return {}

    def cmd_stop(self, req: Dict[str, Any]) -> Dict[str, Any]:
        vmid = int(req["vmid"])
        self.env.supervisor.stop(vmid, skiplock=True, nocheck=True)
        return {}

    def cmd_unlock(self, req: Dict[str, Any]) -> Dict[str, Any]:
        vmid = int(req["vmid"])
        with self.env.config_store.lock_config(vmid):
            conf = self.env.config_store.load_config(vmid)
            conf.pop("lock", None)
            self.env.config_store.write_config(vmid, conf)
        return {}

    def cmd_fstrim(self, req: Dict[str, Any]) -> Dict[str, Any]:
        try:
            self.env.monitor.qga_cmd(int(req["vmid"]), "guest-fstrim")
        except QMPError as e:
            return {"warning": f"fstrim failed - {e.msg}"}
        return {}

    def cmd_free(self, req: Dict[str, Any]) -> Dict[str, Any]:
        self.env.storage.vdisk_free(str(req["volid"]))
        return {}

    def cmd_disk_import(self, req: Dict[str, Any]) -> Dict[str, Any]:
        vmid = int(req["vmid"])
        volid = self.env.storage.vdisk_alloc(
            req["storage"], vmid, req.get("format"), None, int(req.get("size") or 0)
        )
        U.ensure_dir(self.env.run_dir)
        sock = str(self.env.run_dir / f"{vmid}.storage-{len(self.imports)}")
        self.imports[volid] = _DiskImport(sock, self.env.storage.path(volid), volid, logger=self.logger)
        return {"socket": sock, "volid": volid}

    def cmd_query_disk_import(self, req: Dict[str, Any]) -> Dict[str, Any]:
        imp = self.imports.get(str(req["volid"]))
        if imp is None:
            raise KeyError(f"no disk import for '{req['volid']}'")
        return {"status": imp.status, "volid": imp.volid, "msg": imp.msg, "received": imp.received}

