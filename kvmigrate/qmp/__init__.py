# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/qmp/__init__.py
from .client import DEFAULT_RUN_DIR, ErrorMode, Peer, PeerKind, QMPClient
from .commands import CommandSpec, resolve
from .monitor import Monitor

__all__ = ["DEFAULT_RUN_DIR", "ErrorMode", "Peer", "PeerKind", "QMPClient", "CommandSpec", "resolve", "Monitor"]
