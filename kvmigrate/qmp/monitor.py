# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/qmp/monitor.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from ..core.exceptions import QMPError
from .client import DEFAULT_RUN_DIR, EventCallback, Peer, PeerKind, QMPClient


class Monitor:
    """
    One-shot command helpers on top of QMPClient.

    Every call opens, uses and closes its own connection, so callers never
    hold the VM's single monitor slot between commands.
    """

    def __init__(
        self,
        run_dir: Path = DEFAULT_RUN_DIR,
        *,
        event_callback: Optional[EventCallback] = None,
        logger: Optional[Any] = None,
    ):
        self.run_dir = Path(run_dir)
        self.event_callback = event_callback
        self.logger = logger

    def client(self) -> QMPClient:
        return QMPClient(run_dir=self.run_dir, event_callback=self.event_callback, logger=self.logger)

    def socket_exists(self, vmid: int, kind: PeerKind = PeerKind.QMP) -> bool:
        return Peer(vmid, kind).socket_path(self.run_dir).exists()

    def _cmd(
        self,
        peer: Peer,
        execute: str,
        arguments: Optional[Dict[str, Any]],
        timeout: Optional[float],
        no_error: bool,
    ) -> Any:
        if not self.socket_exists(peer.vmid, peer.kind):
            raise QMPError(
                msg="unable to open monitor socket" if peer.kind is PeerKind.QMP else "No QEMU guest agent configured",
                context={"vmid": peer.vmid},
            )
        return self.client().cmd(peer, execute, arguments, timeout=timeout, no_error=no_error)

    def mon_cmd(
        self,
        vmid: int,
        execute: str,
        arguments: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        no_error: bool = False,
    ) -> Any:
        return self._cmd(Peer(vmid, PeerKind.QMP), execute, arguments, timeout, no_error)

    def qga_cmd(
        self,
        vmid: int,
        execute: str,
        arguments: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        no_error: bool = False,
    ) -> Any:
        return self._cmd(Peer(vmid, PeerKind.QGA), execute, arguments, timeout, no_error)
