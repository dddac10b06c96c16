# SPDX-License-Identifier: GPL-2.0-or-later
"""Tunnel whose remote end is a dict of canned handlers, answered in-process."""
import json
import socket

from kvmigrate.core.exceptions import KvMigrateError
from kvmigrate.tunnel.base import Tunnel


def default_start(params):
    vmid = params["vmid"]
    drives = {}
    replicated = []
    for i, (drive, info) in enumerate(sorted((params.get("nbd") or {}).items())):
        if info.get("replicated"):
            volid = info["volid"]
            replicated.append(volid)
        else:
            volid = f"{info['storage']}:{vmid}/vm-{vmid}-disk-{10 + i}.raw"
        drives[drive] = {
            "drivestr": f"{volid},format=raw",
            "nbd_uri": f"nbd:unix:/run/qemu-server/{vmid}_nbd.migrate:exportname=drive-{drive}",
        }
    return {
        "migrate": {"proto": "unix", "addr": f"/run/qemu-server/{vmid}.migrate"},
        "drives": drives,
        "replicated_volumes": replicated,
    }


class FakeTunnel(Tunnel):
    def __init__(self, handlers=None, *, api=2, age=0, logger=None):
        super().__init__(**({"logger": logger} if logger is not None else {}))
        self.handlers = {
            "version": lambda p: {"api": api, "age": age},
            "start": default_start,
        }
        self.handlers.update(handlers or {})
        self.commands = []
        self.closed_graceful = None
        self._reply = None
        self._listeners = []

    def names(self):
        return [name for name, _ in self.commands]

    def _send_line(self, line):
        req = json.loads(line)
        cmd = req.pop("cmd")
        self.commands.append((cmd, req))
        handler = self.handlers.get(cmd)
        try:
            res = dict(handler(req) or {}) if handler is not None else {}
        except KvMigrateError as e:
            self._reply = json.dumps({"success": False, "msg": e.msg})
            return
        res["success"] = True
        self._reply = json.dumps(res)

    def _read_line(self, timeout):
        line, self._reply = self._reply, None
        return line

    def _close(self, graceful):
        self.closed_graceful = graceful
        for s in self._listeners:
            s.close()
        self._listeners = []

    def forward_unix_socket(self, local, remote):
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        s.bind(local)
        s.listen(1)
        self._listeners.append(s)
        self.forwarded.append(local)
