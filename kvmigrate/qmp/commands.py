# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/qmp/commands.py
"""
Per-command metadata for the control channel.

Timeouts reflect how long the hypervisor may legitimately block on a
command: freezing guest filesystems or polling a running migration can take
a long time, while interactive queries should return almost immediately.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet

DEFAULT_TIMEOUT = 5.0
QUEUE_TIMEOUT = 3.0

_MINUTE = 60.0
_HOUR = 60 * _MINUTE

_TIMEOUTS: Dict[str, float] = {
    "query-migrate": _HOUR,
    "guest-fsfreeze-freeze": _HOUR,
    "guest-fsfreeze-thaw": 3 * _MINUTE,
    "blockdev-snapshot-internal-sync": _HOUR,
    "blockdev-snapshot-delete-internal-sync": _HOUR,
}
for _name in ("blockdev-add", "device_add", "device_del", "netdev_add", "netdev_del", "object-add", "object-del"):
    _TIMEOUTS[_name] = _MINUTE
for _name in (
    "backup-cancel",
    "blockdev-del",
    "blockdev-mirror",
    "block-job-cancel",
    "job-complete",
    "drive-mirror",
    "guest-fstrim",
    "guest-shutdown",
    "query-backup",
    "query-block-jobs",
    "query-savevm",
    "savevm-end",
    "savevm-start",
):
    _TIMEOUTS[_name] = 10 * _MINUTE

# QGA commands that may close the connection without sending a response.
ALLOW_CLOSE: FrozenSet[str] = frozenset(
    {"guest-shutdown", "guest-suspend-ram", "guest-suspend-disk", "guest-suspend-hybrid"}
)

# Commands whose `fd` argument travels as SCM_RIGHTS ancillary data.
PASSES_FD: FrozenSet[str] = frozenset({"add-fd", "getfd"})


@dataclass(frozen=True)
class CommandSpec:
    name: str
    timeout: float = DEFAULT_TIMEOUT
    allow_close: bool = False
    passes_fd: bool = False


def resolve(name: str) -> CommandSpec:
    if not name:
        raise ValueError("no command name specified")
    if name in _TIMEOUTS:
        timeout = _TIMEOUTS[name]
    elif name.startswith(("eject", "change")):
        # cdrom media changes are slow
        timeout = _MINUTE
    else:
        timeout = DEFAULT_TIMEOUT
    return CommandSpec(
        name=name,
        timeout=timeout,
        allow_close=name in ALLOW_CLOSE,
        passes_fd=name in PASSES_FD,
    )
