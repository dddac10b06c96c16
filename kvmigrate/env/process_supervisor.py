# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/env/process_supervisor.py
from __future__ import annotations

import json
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..core.exceptions import KvMigrateError, QMPError
from ..core.utils import U
from ..qmp.monitor import Monitor
from .interfaces import VMSupervisor


class ProcessSupervisor(VMSupervisor):
    """
    Drives an external launcher that knows how to build and spawn the
    hypervisor command line:

        <launcher...> start <vmid>     JSON params on stdin, JSON reply on stdout
        <launcher...> showcmd <vmid>   prints the command line

    Liveness is tracked through `<run_dir>/<vmid>.pid`. Stopping asks the
    guest's monitor to `quit` and falls back to SIGTERM/SIGKILL.
    """

    def __init__(self, run_dir: Path, launcher: Sequence[str], *, monitor: Monitor, logger: Any):
        self.run_dir = Path(run_dir)
        self.launcher = list(launcher)
        self.monitor = monitor
        self.logger = logger

    def pid_file(self, vmid: int) -> Path:
        return self.run_dir / f"{vmid}.pid"

    def is_running(self, vmid: int) -> Optional[int]:
        p = self.pid_file(vmid)
        try:
            pid = int(p.read_text(encoding="utf-8").strip())
        except (FileNotFoundError, ValueError):
            return None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return None
        except PermissionError:
            return pid
        return pid

    def _launch(self, action: str, vmid: int, payload: Optional[Mapping[str, Any]] = None) -> str:
        if not self.launcher:
            raise KvMigrateError(msg="no launcher configured")
        cp = U.run_cmd(
            self.logger,
            self.launcher + [action, str(vmid)],
            capture=True,
            input_text=json.dumps(dict(payload)) if payload is not None else None,
        )
        return cp.stdout or ""

    def start(self, vmid: int, params: Mapping[str, Any]) -> Dict[str, Any]:
        if self.is_running(vmid):
            raise KvMigrateError(msg=f"VM {vmid} already running")
        try:
            out = self._launch("start", vmid, params)
        except subprocess.CalledProcessError as e:
            raise KvMigrateError(msg=f"start failed: {(e.stderr or '').strip() or e}", cause=e)
        out = out.strip()
        if not out:
            return {}
        try:
            reply = json.loads(out.splitlines()[-1])
        except ValueError as e:
            raise KvMigrateError(msg=f"unable to parse launcher reply: {out[:200]}", cause=e)
        if not isinstance(reply, dict):
            raise KvMigrateError(msg="launcher reply is not an object")
        return reply

    def stop(self, vmid: int, *, skiplock: bool = False, nocheck: bool = False, timeout: Optional[float] = None) -> None:
        pid = self.is_running(vmid)
        if not pid:
            return
        timeout = 60.0 if timeout is None else timeout
        try:
            self.monitor.mon_cmd(vmid, "quit")
        except QMPError as e:
            self.logger.debug("quit via monitor failed: %s", e)
            os.kill(pid, signal.SIGTERM)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.is_running(vmid):
                return
            time.sleep(0.5)
        self.logger.warning("VM %s still running after %ss, killing", vmid, timeout)
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    def stop_cleanup(self, vmid: int, conf: Mapping[str, Any]) -> None:
        for suffix in ("pid", "qmp", "qga", "migrate"):
            U.safe_unlink(self.run_dir / f"{vmid}.{suffix}")

    def render_command_line(self, vmid: int) -> List[str]:
        return self._launch("showcmd", vmid).split()
