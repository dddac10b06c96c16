# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/tunnel/base.py
"""
Command channel to the `kvmigrate mtunnel` helper on the target node.

Both backends speak the same line protocol: the source writes one JSON
object per line (`{"cmd": "start", ...}`) and the helper answers with one
JSON object (`{"success": true, ...}` or `{"success": false, "msg": "..."}`).
"""
from __future__ import annotations

import json
import logging
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..core.exceptions import KvMigrateError, TunnelCompatibilityError, TunnelError
from ..core.retry import poll_until
from ..core.utils import U

logger = logging.getLogger(__name__)

# compared against the remote end's minimum version (api - age)
WS_TUNNEL_VERSION = 2
# age of this end: oldest peer api we still talk to is WS_TUNNEL_VERSION - WS_TUNNEL_AGE
WS_TUNNEL_AGE = 0

DEFAULT_TIMEOUT = 30.0


@dataclass
class TunnelInfo:
    """Where the target listens for the memory stream."""
    proto: str
    addr: str
    port: Optional[int] = None
    unix_sockets: Set[str] = field(default_factory=set)

    @classmethod
    def from_reply(cls, data: Dict[str, Any]) -> "TunnelInfo":
        proto = data.get("proto")
        if proto not in ("unix", "tcp"):
            raise TunnelError(msg=f"unsupported protocol in migration URI: {proto}")
        port = data.get("port")
        return cls(proto=proto, addr=str(data["addr"]), port=int(port) if port is not None else None)

    @property
    def migrate_uri(self) -> str:
        if self.proto == "unix":
            return f"unix:{self.addr}"
        addr = f"[{self.addr}]" if ":" in self.addr else self.addr
        return f"tcp:{addr}:{self.port}"

    def all_sockets(self) -> List[str]:
        socks = sorted(self.unix_sockets)
        if self.proto == "unix":
            socks.append(self.addr)
        return socks


class Tunnel(ABC):
    def __init__(self, *, logger: Any = logger):
        self.logger = logger
        self.version: Optional[int] = None
        self.age: Optional[int] = None
        self.forwarded: List[str] = []
        self.closed = False
        self._socket_dir: Optional[Path] = None

    # --- transport --------------------------------------------------------------------

    @abstractmethod
    def _send_line(self, line: str) -> None:
        ...

    @abstractmethod
    def _read_line(self, timeout: float) -> Optional[str]:
        """Next reply line, or None on EOF. Raises TunnelError on timeout."""

    @abstractmethod
    def _close(self, graceful: bool) -> None:
        ...

    @abstractmethod
    def forward_unix_socket(self, local: str, remote: str) -> None:
        ...

    # --- protocol ---------------------------------------------------------------------

    def write(self, command: str, timeout: Optional[float] = None, **params: Any) -> Dict[str, Any]:
        if self.closed:
            raise TunnelError(msg=f"tunnel already closed, can't send '{command}'")
        payload = {"cmd": command}
        payload.update(params)
        self.logger.debug("tunnel -> %s", command)
        self._send_line(json.dumps(payload, sort_keys=True))
        line = self._read_line(timeout or DEFAULT_TIMEOUT)
        if line is None:
            raise TunnelError(msg=f"no reply to command '{command}': tunnel closed")
        try:
            reply = json.loads(line)
        except ValueError as e:
            raise TunnelError(msg=f"unexpected reply to '{command}': {line[:200]}", cause=e)
        if not isinstance(reply, dict):
            raise TunnelError(msg=f"unexpected reply to '{command}': {line[:200]}")
        if not reply.get("success"):
            raise TunnelError(
                msg=f"tunnel replied '{reply.get('msg') or 'ERR'}' to command '{command}'",
                context={"command": command},
            )
        return reply

    def negotiate_version(self) -> None:
        reply = self.write("version", timeout=10)
        self.version = int(reply.get("api", 0))
        self.age = int(reply.get("age", 0))
        check_version(self.version, self.age, logger=self.logger)

    def local_socket(self, name: str) -> str:
        """Path for a locally forwarded socket, unique to this tunnel."""
        if self._socket_dir is None:
            self._socket_dir = Path(tempfile.mkdtemp(prefix="kvmigrate-tunnel-"))
        return str(self._socket_dir / name)

    def finish(self, graceful: bool = True) -> None:
        if self.closed:
            return
        if graceful:
            try:
                self.write("quit", timeout=10)
            except KvMigrateError as e:
                self.logger.warning("tunnel quit failed - %s", e)
        self.closed = True
        try:
            self._close(graceful)
        finally:
            for sock in self.forwarded:
                U.safe_unlink(Path(sock))
            self.forwarded = []
            if self._socket_dir is not None:
                shutil.rmtree(self._socket_dir, ignore_errors=True)
                self._socket_dir = None


def check_version(remote_api: int, remote_age: int, *, logger: Any = logger) -> None:
    min_version = remote_api - remote_age
    logger.info("local WS tunnel version: %d", WS_TUNNEL_VERSION)
    logger.info("remote WS tunnel version: %d", remote_api)
    logger.info("minimum required WS tunnel version: %d", min_version)
    if WS_TUNNEL_VERSION < min_version:
        raise TunnelCompatibilityError(msg="Remote tunnel endpoint not compatible, upgrade required")
    if WS_TUNNEL_VERSION > remote_api:
        raise TunnelCompatibilityError(msg="Remote tunnel endpoint too old, upgrade required")


def wait_for_sockets(
    paths: Iterable[str],
    *,
    retries: int = 100,
    interval: float = 0.05,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    wanted = [Path(p) for p in paths]
    return poll_until(lambda: all(p.is_socket() for p in wanted), retries=retries, interval=interval, sleep=sleep)
