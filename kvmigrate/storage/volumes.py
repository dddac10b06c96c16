# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/storage/volumes.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional


class MigrationMode(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class RefKind(str, Enum):
    """Where a local volume is referenced; later members win during a scan."""
    CONFIG = "config"
    PENDING = "pending"
    SNAPSHOT = "snapshot"
    UNUSED = "unused"
    ATTACHED = "attached"
    GENERATED = "generated"


@dataclass
class LocalVolume:
    volid: str
    sid: str
    target_sid: str
    size: Optional[int] = None
    format: Optional[str] = None
    replicated: bool = False
    migration_mode: MigrationMode = MigrationMode.OFFLINE
    bwlimit: Optional[int] = None
    ref: RefKind = RefKind.CONFIG
    drivename: Optional[str] = None
    is_vmstate: bool = False
    with_snapshots: bool = False

    def describe(self) -> str:
        kind = "local, replicated" if self.replicated else "local"
        if self.ref is RefKind.ATTACHED:
            return f"found {kind} disk '{self.volid}' (attached)"
        if self.ref is RefKind.UNUSED:
            return f"found {kind} disk '{self.volid}' (unused)"
        if self.ref is RefKind.SNAPSHOT:
            return f"found {kind} disk '{self.volid}' (referenced by snapshot(s))"
        if self.ref is RefKind.PENDING:
            return f"found {kind} disk '{self.volid}' (pending change)"
        if self.ref is RefKind.GENERATED:
            return f"found generated disk '{self.volid}' (in current VM config)"
        return f"found {kind} disk '{self.volid}'"


@dataclass
class TargetDrive:
    """A disk exposed by the target VM for mirroring."""
    drive: str
    drivestr: Optional[str] = None
    nbd_uri: Optional[str] = None
    bitmap: Optional[str] = None

    @property
    def volid(self) -> Optional[str]:
        if not self.drivestr:
            return None
        return self.drivestr.split(",", 1)[0]


@dataclass
class VolumeSet:
    """Result of a volume scan plus the copies made so far."""
    volumes: Dict[str, LocalVolume] = field(default_factory=dict)
    # source volid -> target volid, filled by offline copies and target drives
    volume_map: Dict[str, str] = field(default_factory=dict)

    def __contains__(self, volid: str) -> bool:
        return volid in self.volumes

    def __getitem__(self, volid: str) -> LocalVolume:
        return self.volumes[volid]

    def __len__(self) -> int:
        return len(self.volumes)

    def filter(self, mode: Optional[MigrationMode] = None, replicated: Optional[bool] = None) -> List[str]:
        return filter_local_volumes(self.volumes, mode, replicated)


def filter_local_volumes(
    volumes: Mapping[str, LocalVolume],
    mode: Optional[MigrationMode] = None,
    replicated: Optional[bool] = None,
) -> List[str]:
    """Sorted volids matching `mode` and `replicated` (None matches anything)."""
    out = []
    for volid in sorted(volumes):
        vol = volumes[volid]
        if mode is not None and vol.migration_mode is not mode:
            continue
        if replicated is not None and vol.replicated != replicated:
            continue
        out.append(volid)
    return out
