# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/migrate/task.py
from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..env.guest_config import IdMap
from ..env.interfaces import ReplicationJob
from ..storage.mirror import BlockJobs
from ..storage.volumes import TargetDrive, VolumeSet
from ..tunnel.base import Tunnel
from ..tunnel.websocket_tunnel import RemoteEndpoint
from .convergence import ConvergencePolicy


class MigrationType(str, Enum):
    SECURE = "secure"
    INSECURE = "insecure"
    WEBSOCKET = "websocket"


class Phase(str, Enum):
    PREPARE = "prepare"
    EXECUTE = "execute"
    FINALIZE = "finalize"
    DONE = "done"


@dataclass
class MigrationOptions:
    online: bool = False
    force: bool = False
    with_local_disks: bool = False
    storagemap: IdMap = field(default_factory=IdMap)
    bridgemap: IdMap = field(default_factory=IdMap)
    migration_type: MigrationType = MigrationType.SECURE
    migration_network: Optional[str] = None
    # KiB/s
    bwlimit: Optional[int] = None
    remote: Optional[RemoteEndpoint] = None
    migrate_downtime: float = 0.1
    migrate_speed: Optional[int] = None
    convergence: ConvergencePolicy = field(default_factory=ConvergencePolicy)
    user: str = "root@pam"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MigrationOptions":
        """Build options from merged CLI/YAML settings (dashes or underscores)."""
        d = {str(k).replace("-", "_"): v for k, v in data.items()}
        mtype = MigrationType(d.get("migration_type") or MigrationType.SECURE.value)
        storagemap = d.get("targetstorage") or d.get("storagemap")
        bridgemap = d.get("bridgemap")
        bwlimit = d.get("bwlimit")
        speed = d.get("migrate_speed")
        return cls(
            online=bool(d.get("online")),
            force=bool(d.get("force")),
            with_local_disks=bool(d.get("with_local_disks")),
            storagemap=storagemap if isinstance(storagemap, IdMap) else IdMap.parse(storagemap),
            bridgemap=bridgemap if isinstance(bridgemap, IdMap) else IdMap.parse(bridgemap),
            migration_type=mtype,
            migration_network=d.get("migration_network"),
            bwlimit=int(bwlimit) if bwlimit is not None else None,
            remote=d.get("remote") if isinstance(d.get("remote"), RemoteEndpoint) else None,
            migrate_downtime=float(d.get("migrate_downtime") if d.get("migrate_downtime") is not None else 0.1),
            migrate_speed=int(speed) if speed else None,
            convergence=ConvergencePolicy.from_mapping(d.get("convergence")),
            user=str(d.get("user") or "root@pam"),
        )


@dataclass
class MigrationTask:
    """State of one migration; created per run and never persisted."""
    vmid: int
    target_node: str
    options: MigrationOptions
    source_node: str = ""
    target_address: str = ""
    phase: Phase = Phase.PREPARE
    errors: bool = False
    conf: Dict[str, Any] = field(default_factory=dict)
    running: Optional[int] = None
    vm_was_paused: bool = False
    replication_job: Optional[ReplicationJob] = None
    is_replicated: bool = False
    volumes: VolumeSet = field(default_factory=VolumeSet)
    target_drives: Dict[str, TargetDrive] = field(default_factory=dict)
    tunnel: Optional[Tunnel] = None
    block_jobs: Optional[BlockJobs] = None
    storage_migration: bool = False
    livemigration: bool = False
    stopnbd: bool = False
    started_at: float = field(default_factory=time.time)

    @property
    def remote(self) -> bool:
        return self.options.remote is not None

    @property
    def remote_vmid(self) -> int:
        if self.options.remote is not None:
            return self.options.remote.vmid
        return self.vmid

    @property
    def upid(self) -> str:
        return "UPID:%s:%08X:%08X:qmigrate:%d:%s:" % (
            self.source_node,
            os.getpid(),
            int(self.started_at),
            self.vmid,
            self.options.user,
        )
