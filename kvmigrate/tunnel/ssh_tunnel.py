# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/tunnel/ssh_tunnel.py
from __future__ import annotations

import os
import selectors
import subprocess
import time
from pathlib import Path
from typing import Any, Optional, Sequence

from ..core.exceptions import TransportError, TunnelError
from ..core.utils import U
from ..ssh.ssh_config import SSHConfig
from .base import Tunnel, logger

REMOTE_HELPER = ("kvmigrate", "mtunnel")
BANNER = "tunnel online"


class SSHTunnel(Tunnel):
    """
    `ssh <target> kvmigrate mtunnel` as a ControlMaster. The helper's stdin
    and stdout carry the command channel; socket forwards are added later
    through the master socket with `ssh -O forward`.
    """

    def __init__(
        self,
        cfg: SSHConfig,
        *,
        command: Sequence[str] = REMOTE_HELPER,
        logger: Any = logger,
        open_timeout: float = 30.0,
    ):
        super().__init__(logger=logger)
        self.cfg = cfg.with_control_path(Path(self.local_socket("ctl")))
        self.command = list(command)
        self.open_timeout = open_timeout
        self.proc: Optional[subprocess.Popen] = None
        self._buf = b""

    def start(self) -> "SSHTunnel":
        argv = self.cfg.remote_cmd(self.command)
        self.logger.debug("starting ssh tunnel: %s", U._pretty_cmd(argv))
        try:
            self.proc = subprocess.Popen(argv, stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            raise TransportError(msg=f"failed to start ssh tunnel: {e}", cause=e)

        try:
            line = self._read_line(self.open_timeout)
        except TunnelError as e:
            self._kill()
            raise TransportError(msg=f"ssh tunnel to {self.cfg.host} did not come online: {e.msg}", cause=e)
        if line != BANNER:
            err = self._stderr_tail()
            self._kill()
            raise TransportError(
                msg=f"Can't connect to destination address using public key ({self.cfg.host})",
                context={"banner": line, "stderr": err},
            )
        self.logger.info("ssh tunnel online (%s)", self.cfg.describe())
        return self

    def _stderr_tail(self) -> str:
        if self.proc is None or self.proc.stderr is None or self.proc.poll() is None:
            return ""
        return (self.proc.stderr.read() or b"").decode("utf-8", "replace").strip()[-500:]

    def _send_line(self, line: str) -> None:
        if self.proc is None or self.proc.stdin is None:
            raise TunnelError(msg="ssh tunnel not started")
        try:
            self.proc.stdin.write(line.encode("utf-8") + b"\n")
            self.proc.stdin.flush()
        except (BrokenPipeError, OSError) as e:
            raise TunnelError(msg=f"writing to tunnel failed: {e}", cause=e)

    def _read_line(self, timeout: float) -> Optional[str]:
        if self.proc is None or self.proc.stdout is None:
            raise TunnelError(msg="ssh tunnel not started")
        fd = self.proc.stdout.fileno()
        deadline = time.monotonic() + timeout
        with selectors.DefaultSelector() as sel:
            sel.register(fd, selectors.EVENT_READ)
            while b"\n" not in self._buf:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TunnelError(msg="reading from tunnel failed: got timeout")
                if not sel.select(remaining):
                    continue
                chunk = os.read(fd, 4096)
                if not chunk:
                    if self._buf:
                        line, self._buf = self._buf, b""
                        return line.decode("utf-8", "replace").strip()
                    return None
                self._buf += chunk
        line, self._buf = self._buf.split(b"\n", 1)
        return line.decode("utf-8", "replace").strip()

    def forward_unix_socket(self, local: str, remote: str) -> None:
        U.safe_unlink(Path(local))
        argv = self.cfg.control_cmd("forward", "-L", f"{local}:{remote}")
        try:
            U.run_cmd(self.logger, argv, capture=True, timeout=30)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise TunnelError(msg=f"failed to forward socket {local} -> {remote}", cause=e)
        self.forwarded.append(local)

    def _kill(self) -> None:
        if self.proc is not None and self.proc.poll() is None:
            self.proc.kill()
            self.proc.wait(timeout=5)

    def _close(self, graceful: bool) -> None:
        if self.proc is None:
            return
        if self.proc.stdin is not None:
            try:
                self.proc.stdin.close()
            except OSError:
                pass
        try:
            self.proc.wait(timeout=10 if graceful else 0.5)
        except subprocess.TimeoutExpired:
            self.logger.warning("ssh tunnel did not exit, killing it")
            self.proc.terminate()
            try:
                self.proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._kill()
        if self.cfg.control_path and Path(self.cfg.control_path).exists():
            U.run_cmd(self.logger, self.cfg.control_cmd("exit"), check=False, capture=True, timeout=10)

