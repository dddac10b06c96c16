# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/env/interfaces.py
"""
Collaborators the migration engine consumes but does not own.

The engine talks to the hypervisor process supervisor, the guest
configuration store, the storage layer and the replication subsystem only
through these interfaces. Reference implementations live next to this module;
tests substitute fakes from tests/fakes.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from ..core.exceptions import ValidationError
from ..ssh.ssh_config import SSHConfig

# --------------------------------------------------------------------------------------
# Data types
# --------------------------------------------------------------------------------------

MIGRATABLE_STORAGE_TYPES = frozenset({"dir", "btrfs", "zfspool", "lvmthin", "lvm"})


@dataclass(frozen=True)
class StorageConfig:
    sid: str
    type: str
    path: Optional[str] = None
    content: FrozenSet[str] = frozenset({"images"})
    shared: bool = False
    nodes: Optional[FrozenSet[str]] = None
    disable: bool = False
    bwlimit: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, sid: str, data: Mapping[str, Any]) -> "StorageConfig":
        content = data.get("content") or ["images"]
        if isinstance(content, str):
            content = [c.strip() for c in content.split(",") if c.strip()]
        nodes = data.get("nodes")
        if isinstance(nodes, str):
            nodes = [n.strip() for n in nodes.split(",") if n.strip()]
        return cls(
            sid=sid,
            type=str(data.get("type", "dir")),
            path=data.get("path"),
            content=frozenset(content),
            shared=bool(data.get("shared", False)),
            nodes=frozenset(nodes) if nodes else None,
            disable=bool(data.get("disable", False)),
            bwlimit=dict(data.get("bwlimit") or {}),
        )

    def available_on(self, node: str) -> bool:
        return not self.disable and (self.nodes is None or node in self.nodes)


@dataclass(frozen=True)
class VolumeName:
    """Decoded storage-relative volume name."""
    vtype: str
    name: str
    owner: Optional[int]
    basename: Optional[str] = None
    basevmid: Optional[int] = None
    is_base: bool = False
    format: Optional[str] = None


@dataclass(frozen=True)
class TargetNode:
    """Where an offline copy goes."""
    node: str
    address: str
    ssh: Optional[SSHConfig] = None


@dataclass(frozen=True)
class StorageMigrateOptions:
    ratelimit_bps: Optional[int] = None
    insecure: bool = False
    with_snapshots: bool = False
    allow_rename: bool = True
    snapshot: Optional[str] = None


@dataclass(frozen=True)
class ReplicationJob:
    id: str
    target: str
    remove_job: Optional[str] = None


# --------------------------------------------------------------------------------------
# Interfaces
# --------------------------------------------------------------------------------------


class VMSupervisor(ABC):
    """Starts, stops and inspects the hypervisor process of a guest."""

    @abstractmethod
    def start(self, vmid: int, params: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Start a guest. With `params["migratedfrom"]` set the guest waits for an
        incoming migration; the reply then carries the migration endpoint and
        per-drive NBD exports:

            {"migrate": {"proto": "unix", "addr": "/run/qemu-server/100.migrate"},
             "drives": {"scsi0": {"drivestr": "...", "nbd_uri": "nbd:unix:...:exportname=drive-scsi0"}},
             "spice_port": None}
        """

    @abstractmethod
    def stop(self, vmid: int, *, skiplock: bool = False, nocheck: bool = False, timeout: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def stop_cleanup(self, vmid: int, conf: Mapping[str, Any]) -> None:
        ...

    @abstractmethod
    def is_running(self, vmid: int) -> Optional[int]:
        """pid of the running hypervisor process, or None."""

    def render_command_line(self, vmid: int) -> List[str]:
        raise NotImplementedError


class ConfigStore(ABC):
    """Per-node guest configuration with an advisory per-guest lock."""

    node: str

    @abstractmethod
    def load_config(self, vmid: int, node: Optional[str] = None) -> Dict[str, Any]:
        ...

    @abstractmethod
    def write_config(self, vmid: int, conf: Mapping[str, Any], node: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def move_config_to_node(self, vmid: int, target: str) -> None:
        ...

    @abstractmethod
    @contextmanager
    def lock_config(self, vmid: int, timeout: float = 10.0) -> Iterator[None]:
        ...

    @abstractmethod
    def get_mapping(self, kind: str, name: str) -> Optional[Dict[str, Any]]:
        """Cluster-wide hardware mapping (`pci`, `usb`, `dir`) by name."""

    @abstractmethod
    def node_address(self, node: str) -> str:
        ...

    def check_lock(self, conf: Mapping[str, Any]) -> None:
        lock = conf.get("lock")
        if lock:
            raise ValidationError(msg=f"VM is locked ({lock})", context={"lock": lock})


class StorageLayer(ABC):
    """Volume id resolution, copies between nodes and bandwidth limits."""

    @abstractmethod
    def storage_config(self, sid: str) -> StorageConfig:
        ...

    def check_enabled(self, sid: str, node: str) -> StorageConfig:
        scfg = self.storage_config(sid)
        if scfg.disable:
            raise ValidationError(msg=f"storage '{sid}' is disabled", context={"storage": sid})
        if not scfg.available_on(node):
            raise ValidationError(msg=f"storage '{sid}' is not available on node '{node}'", context={"storage": sid})
        return scfg

    def parse_volume_id(self, volid: str, noerr: bool = False) -> Optional[Tuple[str, str]]:
        if ":" in volid and not volid.startswith("/"):
            sid, volname = volid.split(":", 1)
            if sid and volname:
                return sid, volname
        if noerr:
            return None
        raise ValidationError(msg=f"unable to parse volume ID '{volid}'", context={"volid": volid})

    @abstractmethod
    def parse_volname(self, volid: str) -> VolumeName:
        ...

    @abstractmethod
    def path(self, volid: str) -> str:
        ...

    @abstractmethod
    def volume_size_info(self, volid: str, timeout: float = 5.0) -> Tuple[int, Optional[str]]:
        """(size in bytes, format)"""

    @abstractmethod
    def volume_is_base_and_used(self, volid: str) -> bool:
        ...

    @abstractmethod
    def vdisk_alloc(self, sid: str, vmid: int, fmt: Optional[str], name: Optional[str], size: int) -> str:
        ...

    @abstractmethod
    def storage_migrate(
        self,
        volid: str,
        target: TargetNode,
        target_sid: str,
        opts: StorageMigrateOptions,
        logger: Any,
    ) -> str:
        """Copy a volume to `target_sid` on the target node; returns the new volid."""

    @abstractmethod
    def vdisk_free(self, volid: str) -> None:
        ...

    def deactivate_volumes(self, volids: Iterable[str]) -> None:
        pass

    def get_bandwidth_limit(self, operation: str, sids: Iterable[str], override: Optional[int] = None) -> Optional[int]:
        """KiB/s limit for `operation`; the smallest per-storage limit wins, an override replaces them."""
        if override is not None:
            return int(override) or None
        limits = []
        for sid in set(sids):
            lim = self.storage_config(sid).bwlimit
            value = lim.get(operation, lim.get("default"))
            if value:
                limits.append(int(value))
        return min(limits) if limits else None

    def check_connection(self, sid: str) -> bool:
        return True


class Replication(ABC):
    @abstractmethod
    def find_local_job(self, vmid: int, target: str) -> Optional[ReplicationJob]:
        """The job replicating `vmid` from this node to `target`, if any."""

    @abstractmethod
    def has_jobs(self, vmid: int) -> bool:
        ...

    @abstractmethod
    def replicatable_volumes(self, vmid: int, conf: Mapping[str, Any]) -> Set[str]:
        ...

    @abstractmethod
    def run_replication(self, vmid: int, job: ReplicationJob, logger: Any) -> Set[str]:
        """Run one replication pass; returns the volids now current on the target."""

    @abstractmethod
    def transfer_state(self, vmid: int, target: str) -> None:
        ...

    @abstractmethod
    def switch_job_target(self, vmid: int, source: str, target: str) -> None:
        ...
