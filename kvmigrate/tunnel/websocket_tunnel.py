# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/tunnel/websocket_tunnel.py
"""
Tunnel to a node of another cluster through its HTTPS API.

A ticket is requested with a POST to `/nodes/<node>/qemu/<vmid>/mtunnel`;
the control channel is then a websocket on `.../mtunnelwebsocket`, carrying
one JSON command or reply per text frame. Each forwarded unix socket is a
local listener; every accepted connection gets its own websocket opened
with `forward=<remote path>` and is relayed byte-for-byte by two threads.
"""
from __future__ import annotations

import os
import socket
import ssl
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import quote

import requests
import websocket

from ..core.exceptions import TransportError, TunnelError
from ..core.retry import retry_operation
from ..core.utils import U
from .base import Tunnel, logger

_RELAY_CHUNK = 65536


@dataclass(frozen=True)
class RemoteEndpoint:
    host: str
    node: str
    vmid: int
    token: str
    port: int = 8006
    verify: Union[bool, str] = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, node: str, vmid: int) -> "RemoteEndpoint":
        if not data.get("host") or not data.get("token"):
            raise TransportError(msg="remote endpoint needs 'host' and 'token'")
        return cls(
            host=str(data["host"]),
            node=str(data.get("node") or node),
            vmid=int(data.get("vmid") or vmid),
            token=str(data["token"]),
            port=int(data.get("port", 8006)),
            verify=data.get("verify", True),
        )

    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"https://{host}:{self.port}/api2/json"

    @property
    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"PVEAPIToken={self.token}"}

    def sslopt(self) -> Dict[str, Any]:
        if self.verify is False:
            return {"cert_reqs": ssl.CERT_NONE}
        if isinstance(self.verify, str):
            return {"ca_certs": self.verify}
        return {}


class WebSocketTunnel(Tunnel):
    def __init__(
        self,
        remote: RemoteEndpoint,
        *,
        storages: Optional[List[str]] = None,
        bridges: Optional[List[str]] = None,
        logger: Any = logger,
        timeout: float = 30.0,
    ):
        super().__init__(logger=logger)
        self.remote = remote
        self.storages = sorted(storages or [])
        self.bridges = sorted(bridges or [])
        self.timeout = timeout
        self.ws: Optional[websocket.WebSocket] = None
        self._ticket: Optional[Dict[str, Any]] = None
        self._listeners: List[socket.socket] = []
        self._relays: List[websocket.WebSocket] = []
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()

    # --- setup ------------------------------------------------------------------------

    def _request_ticket(self) -> Dict[str, Any]:
        url = f"{self.remote.base_url}/nodes/{self.remote.node}/qemu/{self.remote.vmid}/mtunnel"
        with requests.Session() as session:
            session.headers.update(self.remote.auth_header)
            session.verify = self.remote.verify
            resp = retry_operation(
                lambda: session.post(
                    url,
                    data={"storages": ",".join(self.storages), "bridges": ",".join(self.bridges)},
                    timeout=self.timeout,
                ),
                max_attempts=3,
                base_backoff_s=1.0,
                exceptions=(requests.ConnectionError, requests.Timeout),
                operation_name="mtunnel ticket",
                logger=self.logger,
            )
        if resp.status_code != 200:
            raise TransportError(
                msg=f"failed to request tunnel ticket: HTTP {resp.status_code} {resp.reason}",
                context={"url": url},
            )
        data = (resp.json() or {}).get("data") or {}
        if not data.get("ticket") or not data.get("socket"):
            raise TransportError(msg="tunnel ticket reply is missing 'ticket' or 'socket'")
        return data

    def _ws_url(self, forward: Optional[str] = None) -> str:
        assert self._ticket is not None
        url = (
            f"{self.remote.base_url.replace('https://', 'wss://', 1)}/nodes/{self.remote.node}"
            f"/qemu/{self.remote.vmid}/mtunnelwebsocket"
            f"?socket={quote(self._ticket['socket'], safe='')}&ticket={quote(self._ticket['ticket'], safe='')}"
        )
        if forward:
            url += f"&forward={quote(forward, safe='')}"
        return url

    def _connect(self, forward: Optional[str] = None) -> websocket.WebSocket:
        try:
            return websocket.create_connection(
                self._ws_url(forward),
                sslopt=self.remote.sslopt(),
                header=self.remote.auth_header,
                timeout=self.timeout,
            )
        except (websocket.WebSocketException, OSError) as e:
            raise TransportError(msg=f"websocket connection to {self.remote.host} failed: {e}", cause=e)

    def start(self) -> "WebSocketTunnel":
        try:
            self._ticket = self._request_ticket()
        except requests.RequestException as e:
            raise TransportError(msg=f"failed to request tunnel ticket: {e}", cause=e)
        self.ws = self._connect()
        self.logger.info("websocket tunnel started")
        return self

    # --- line protocol ----------------------------------------------------------------

    def _send_line(self, line: str) -> None:
        if self.ws is None:
            raise TunnelError(msg="websocket tunnel not started")
        try:
            self.ws.send(line)
        except (websocket.WebSocketException, OSError) as e:
            raise TunnelError(msg=f"writing to tunnel failed: {e}", cause=e)

    def _read_line(self, timeout: float) -> Optional[str]:
        if self.ws is None:
            raise TunnelError(msg="websocket tunnel not started")
        self.ws.settimeout(timeout)
        try:
            data = self.ws.recv()
        except websocket.WebSocketTimeoutException as e:
            raise TunnelError(msg="reading from tunnel failed: got timeout", cause=e)
        except websocket.WebSocketConnectionClosedException:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8", "replace")
        return data.strip()

    # --- socket forwarding ------------------------------------------------------------

    def forward_unix_socket(self, local: str, remote: str) -> None:
        U.safe_unlink(Path(local))
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        listener.bind(local)
        listener.listen(8)
        os.chmod(local, 0o600)
        self._listeners.append(listener)
        self.forwarded.append(local)
        t = threading.Thread(target=self._accept_loop, args=(listener, remote), name=f"fwd-{Path(local).name}", daemon=True)
        self._threads.append(t)
        t.start()

    def _accept_loop(self, listener: socket.socket, remote: str) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                return
            try:
                ws = self._connect(forward=remote)
            except TransportError as e:
                self.logger.error("forward to %s failed - %s", remote, e)
                conn.close()
                continue
            ws.settimeout(None)
            self._relays.append(ws)
            for target, name in ((self._pump_to_ws, "up"), (self._pump_from_ws, "down")):
                t = threading.Thread(target=target, args=(conn, ws), name=f"relay-{name}", daemon=True)
                self._threads.append(t)
                t.start()

    def _pump_to_ws(self, conn: socket.socket, ws: websocket.WebSocket) -> None:
        try:
            while True:
                data = conn.recv(_RELAY_CHUNK)
                if not data:
                    break
                ws.send_binary(data)
        except (OSError, websocket.WebSocketException) as e:
            if not self._stop.is_set():
                self.logger.debug("relay to websocket ended: %s", e)
        finally:
            try:
                ws.close()
            except (OSError, websocket.WebSocketException):
                pass

    def _pump_from_ws(self, conn: socket.socket, ws: websocket.WebSocket) -> None:
        try:
            while True:
                data = ws.recv()
                if not data:
                    break
                conn.sendall(data if isinstance(data, bytes) else data.encode("utf-8"))
        except websocket.WebSocketConnectionClosedException:
            pass
        except (OSError, websocket.WebSocketException) as e:
            if not self._stop.is_set():
                self.logger.debug("relay from websocket ended: %s", e)
        finally:
            conn.close()

    def _close(self, graceful: bool) -> None:
        self._stop.set()
        for listener in self._listeners:
            # wakes a blocked accept()
            try:
                listener.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            listener.close()
        for ws in self._relays + ([self.ws] if self.ws is not None else []):
            try:
                ws.close()
            except (OSError, websocket.WebSocketException):
                pass
        for t in self._threads:
            t.join(timeout=1.0)
        self._listeners, self._relays, self._threads = [], [], []
