# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/tunnel/__init__.py
from .base import WS_TUNNEL_AGE, WS_TUNNEL_VERSION, Tunnel, TunnelInfo, check_version, wait_for_sockets
from .ssh_tunnel import SSHTunnel
from .websocket_tunnel import RemoteEndpoint, WebSocketTunnel

__all__ = [
    "WS_TUNNEL_AGE",
    "WS_TUNNEL_VERSION",
    "Tunnel",
    "TunnelInfo",
    "check_version",
    "wait_for_sockets",
    "SSHTunnel",
    "RemoteEndpoint",
    "WebSocketTunnel",
]
