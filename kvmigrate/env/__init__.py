# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/env/__init__.py
from __future__ import annotations

import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

from ..qmp.client import DEFAULT_RUN_DIR
from ..qmp.monitor import Monitor
from .dir_storage import DirStorage
from .file_config_store import FileConfigStore
from .interfaces import (
    ConfigStore,
    Replication,
    ReplicationJob,
    StorageConfig,
    StorageLayer,
    StorageMigrateOptions,
    TargetNode,
    VMSupervisor,
    VolumeName,
)
from .process_supervisor import ProcessSupervisor
from .replication import NoReplication


@dataclass
class Environment:
    """Everything on the local node the engine talks to."""
    node: str
    supervisor: VMSupervisor
    config_store: ConfigStore
    storage: StorageLayer
    replication: Replication
    monitor: Monitor
    run_dir: Path = DEFAULT_RUN_DIR
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, conf: Mapping[str, Any], logger: Any) -> "Environment":
        """Build the reference environment from merged YAML/CLI settings."""
        node = str(conf.get("node") or socket.gethostname().split(".")[0])
        run_dir = Path(conf.get("run_dir") or DEFAULT_RUN_DIR)
        monitor = Monitor(run_dir, logger=logger)
        launcher = conf.get("launcher") or []
        if isinstance(launcher, str):
            launcher = launcher.split()
        return cls(
            node=node,
            supervisor=ProcessSupervisor(run_dir, launcher, monitor=monitor, logger=logger),
            config_store=FileConfigStore(Path(conf.get("config_root") or "/etc/kvmigrate"), node, logger=logger),
            storage=DirStorage(conf.get("storage") or {}, logger=logger, ssh_defaults=conf.get("ssh") or {}),
            replication=NoReplication(),
            monitor=monitor,
            run_dir=run_dir,
            settings=dict(conf),
        )


__all__ = [
    "Environment",
    "ConfigStore",
    "Replication",
    "ReplicationJob",
    "StorageConfig",
    "StorageLayer",
    "StorageMigrateOptions",
    "TargetNode",
    "VMSupervisor",
    "VolumeName",
    "DirStorage",
    "FileConfigStore",
    "ProcessSupervisor",
    "NoReplication",
]
