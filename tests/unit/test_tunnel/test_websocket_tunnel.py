# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import os
import queue
import socket
import ssl
import stat
import threading
from unittest.mock import MagicMock, patch

import pytest
import requests
import websocket

from fakes.fake_logger import FakeLogger

from kvmigrate.core.exceptions import TransportError
from kvmigrate.tunnel import RemoteEndpoint, WebSocketTunnel

REMOTE = {"host": "10.0.0.50", "token": "root@pam!mig=abc", "verify": False}


def _session(resp=None, side_effect=None):
    session = MagicMock()
    session.post.return_value = resp
    session.post.side_effect = side_effect
    factory = MagicMock()
    factory.return_value.__enter__.return_value = session
    return factory, session


def _resp(status=200, data=None):
    resp = MagicMock(status_code=status, reason="OK" if status == 200 else "Forbidden")
    resp.json.return_value = {"data": data}
    return resp


class TestRemoteEndpoint:
    def test_from_mapping(self):
        ep = RemoteEndpoint.from_mapping(REMOTE, node="node2", vmid=100)
        assert (ep.node, ep.vmid, ep.port) == ("node2", 100, 8006)
        assert ep.base_url == "https://10.0.0.50:8006/api2/json"
        assert ep.auth_header == {"Authorization": "PVEAPIToken=root@pam!mig=abc"}
        assert ep.sslopt() == {"cert_reqs": ssl.CERT_NONE}

    def test_overrides_and_ipv6(self):
        ep = RemoteEndpoint.from_mapping(
            {"host": "fd00::50", "token": "t", "node": "pve9", "vmid": 300, "verify": "/etc/ca.pem"}, node="x", vmid=1
        )
        assert ep.base_url == "https://[fd00::50]:8006/api2/json"
        assert (ep.node, ep.vmid) == ("pve9", 300)
        assert ep.sslopt() == {"ca_certs": "/etc/ca.pem"}

    def test_requires_host_and_token(self):
        with pytest.raises(TransportError):
            RemoteEndpoint.from_mapping({"host": "10.0.0.50"}, node="n", vmid=1)


class TestWebSocketTunnel:
    def _tunnel(self):
        ep = RemoteEndpoint.from_mapping(REMOTE, node="node2", vmid=200)
        return WebSocketTunnel(ep, storages=["fast", "big"], bridges=["vmbr0"], logger=FakeLogger())

    def test_ticket_and_websocket_url(self):
        tunnel = self._tunnel()
        factory, session = _session(_resp(data={"ticket": "T/1+2", "socket": "/run/qemu-server/200.mtunnel"}))
        conn = MagicMock()
        with patch("kvmigrate.tunnel.websocket_tunnel.requests.Session", factory), patch(
            "kvmigrate.tunnel.websocket_tunnel.websocket.create_connection", return_value=conn
        ) as create:
            tunnel.start()

        url, = session.post.call_args[0]
        assert url == "https://10.0.0.50:8006/api2/json/nodes/node2/qemu/200/mtunnel"
        assert session.post.call_args[1]["data"] == {"storages": "big,fast", "bridges": "vmbr0"}
        ws_url = create.call_args[0][0]
        assert ws_url.startswith("wss://10.0.0.50:8006/api2/json/nodes/node2/qemu/200/mtunnelwebsocket?")
        assert "socket=%2Frun%2Fqemu-server%2F200.mtunnel" in ws_url
        assert "ticket=T%2F1%2B2" in ws_url
        assert tunnel.ws is conn
        assert tunnel._ws_url("/run/qemu-server/200.migrate").endswith("&forward=%2Frun%2Fqemu-server%2F200.migrate")

    def test_ticket_http_error(self):
        tunnel = self._tunnel()
        factory, _ = _session(_resp(status=403))
        with patch("kvmigrate.tunnel.websocket_tunnel.requests.Session", factory):
            with pytest.raises(TransportError, match="HTTP 403 Forbidden"):
                tunnel.start()

    def test_ticket_connection_errors_are_retried(self):
        tunnel = self._tunnel()
        factory, session = _session(side_effect=requests.ConnectionError("refused"))
        with patch("kvmigrate.tunnel.websocket_tunnel.requests.Session", factory), patch(
            "kvmigrate.core.retry.time.sleep"
        ):
            with pytest.raises(TransportError, match="failed to request tunnel ticket"):
                tunnel.start()
        assert session.post.call_count == 3

    def test_line_protocol_over_websocket(self):
        tunnel = self._tunnel()
        tunnel.ws = MagicMock()
        tunnel.ws.recv.return_value = '{"success": true, "api": 2, "age": 0}'
        tunnel.negotiate_version()
        assert tunnel.ws.send.call_args[0][0] == '{"cmd": "version"}'
        assert tunnel.version == 2


class RelaySocket:
    """Stands in for a forwarding websocket: records uploads, serves `replies`, then blocks until closed."""

    def __init__(self, replies=()):
        self.sent = []
        self.incoming = queue.Queue()
        for chunk in replies:
            self.incoming.put(chunk)
        self.closed = threading.Event()

    def settimeout(self, timeout):
        pass

    def send_binary(self, data):
        self.sent.append(bytes(data))

    def recv(self):
        item = self.incoming.get(timeout=10)
        if item is None:
            raise websocket.WebSocketConnectionClosedException("closed")
        return item

    def close(self):
        if not self.closed.is_set():
            self.closed.set()
            self.incoming.put(None)


def _read_all(sock):
    out = b""
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return out
        out += chunk


class TestSocketRelay:
    def _tunnel(self):
        ep = RemoteEndpoint.from_mapping(REMOTE, node="node2", vmid=200)
        return WebSocketTunnel(ep, logger=FakeLogger())

    def test_bytes_relayed_both_ways(self):
        tunnel = self._tunnel()
        relay = RelaySocket([b"from-", b"target"])
        payload = os.urandom(300_000)
        local = tunnel.local_socket("200.migrate")
        try:
            with patch.object(tunnel, "_connect", return_value=relay) as connect:
                tunnel.forward_unix_socket(local, "/run/qemu-server/200.migrate")
                assert stat.S_IMODE(os.stat(local).st_mode) == 0o600
                with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
                    s.connect(local)
                    s.sendall(payload)
                    s.shutdown(socket.SHUT_WR)
                    assert _read_all(s) == b"from-target"
            assert relay.closed.wait(5)
            assert b"".join(relay.sent) == payload
            connect.assert_called_once_with(forward="/run/qemu-server/200.migrate")
        finally:
            tunnel.finish(graceful=False)
        assert not os.path.exists(local)
        assert tunnel.forwarded == []

    def test_each_connection_gets_its_own_websocket(self):
        tunnel = self._tunnel()
        relays = [RelaySocket([b"a"]), RelaySocket([b"b"])]
        local = tunnel.local_socket("200.storage-0")
        try:
            with patch.object(tunnel, "_connect", side_effect=relays):
                tunnel.forward_unix_socket(local, "/run/qemu-server/200.storage-0")
                for relay, tag in zip(relays, (b"a", b"b")):
                    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
                        s.connect(local)
                        s.sendall(tag * 10)
                        s.shutdown(socket.SHUT_WR)
                        assert _read_all(s) == tag
                    assert relay.closed.wait(5)
                    assert b"".join(relay.sent) == tag * 10
        finally:
            tunnel.finish(graceful=False)

    def test_failed_forward_drops_connection(self):
        tunnel = self._tunnel()
        local = tunnel.local_socket("200.migrate")
        err = TransportError(msg="websocket connection to 10.0.0.50 failed: 401")
        try:
            with patch.object(tunnel, "_connect", side_effect=err):
                tunnel.forward_unix_socket(local, "/run/qemu-server/200.migrate")
                with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
                    s.connect(local)
                    s.settimeout(5)
                    assert _read_all(s) == b""
        finally:
            tunnel.finish(graceful=False)
        assert tunnel.logger.has("forward to /run/qemu-server/200.migrate failed", "error")
