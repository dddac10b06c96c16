# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/storage/scanner.py
"""
Classify every volume a guest references before anything is touched.

The scan collects all problems first, logs one warning per volume and then
fails once, so an operator sees the complete list in a single task log.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from ..core.exceptions import KvMigrateError, ValidationError
from ..env.guest_config import (
    IdMap,
    VolumeAttrs,
    foreach_drive,
    foreach_volid,
    format_size,
    parse_drive,
    parse_size,
    print_drive,
)
from ..env.interfaces import MIGRATABLE_STORAGE_TYPES, StorageConfig, StorageLayer
from .volumes import LocalVolume, MigrationMode, RefKind, VolumeSet

logger = logging.getLogger(__name__)

EFIVARS_SIZE_2M = 128 * 1024
EFIVARS_SIZE_4M = 540672
TPMSTATE_DISK_SIZE = 4 * 1024 * 1024

_CLOUDINIT_RE = re.compile(r"vm-\d+-cloudinit")


class _VolumeRejected(Exception):
    pass


@dataclass
class ScanRequest:
    vmid: int
    conf: Mapping[str, Any]
    target_node: str
    running: bool = False
    storagemap: IdMap = field(default_factory=IdMap)
    remote: bool = False
    with_local_disks: bool = False
    replicatable: Optional[Set[str]] = None


class VolumeScanner:
    def __init__(self, storage: StorageLayer, *, logger: Any = logger):
        self.storage = storage
        self.logger = logger

    def map_target_sid(self, scfg: StorageConfig, storagemap: IdMap, remote: bool) -> str:
        # local migrations keep shared storage ids, remote ones map them too
        if not scfg.shared or remote:
            return storagemap.map(scfg.sid)
        return scfg.sid

    def target_storage_check_available(self, target_sid: str, volid: str, target_node: str, remote: bool) -> None:
        if remote:
            return
        tcfg = self.storage.check_enabled(target_sid, target_node)
        vtype = self.storage.parse_volname(volid).vtype
        if vtype not in tcfg.content:
            raise ValidationError(msg=f"{volid}: content type '{vtype}' is not available on storage '{target_sid}'")

    def check_storages(self, volids: List[str], *, target_node: str, local_node: str, storagemap: IdMap, remote: bool) -> Set[str]:
        """Every storage used by the guest is enabled here and its mapped id on the target."""
        targets: Set[str] = set()
        for volid in volids:
            parsed = self.storage.parse_volume_id(volid, noerr=True)
            if parsed is None:
                continue
            sid, _ = parsed
            scfg = self.storage.check_enabled(sid, local_node)
            target_sid = self.map_target_sid(scfg, storagemap, remote)
            targets.add(target_sid)
            self.target_storage_check_available(target_sid, volid, target_node, remote)
            if scfg.shared and not self.storage.check_connection(sid):
                self.logger.warning("Used shared storage '%s' is not online on source node!", sid)
        return targets

    def scan(self, req: ScanRequest, *, local_node: str) -> VolumeSet:
        result = VolumeSet()
        volumes = result.volumes
        volume_errors: Dict[str, str] = {}
        other_errors: List[str] = []
        path_to_volids: Dict[str, Set[str]] = {}
        replicatable = req.replicatable or set()

        for volid, attrs in sorted(foreach_volid(req.conf).items()):
            try:
                self._test_volume(req, volid, attrs, volumes, path_to_volids, local_node, replicatable, other_errors)
            except _VolumeRejected as e:
                volume_errors[volid] = str(e)
            except KvMigrateError as e:
                volume_errors[volid] = e.msg

        for path, volids in sorted(path_to_volids.items()):
            if len(volids) > 1:
                raise ValidationError(
                    msg="detected not supported aliased volumes: '" + "', '".join(sorted(volids)) + "'",
                )

        for volid in sorted(volumes):
            vol = volumes[volid]
            if vol.ref is RefKind.ATTACHED and req.running and not req.with_local_disks:
                volume_errors[volid] = "can't live migrate attached local disks without with-local-disks option"
            self.logger.info("%s", vol.describe())

        for volid in sorted(volume_errors):
            self.logger.warning("can't migrate local disk '%s': %s", volid, volume_errors[volid])
        for err in other_errors:
            self.logger.warning("%s", err)
        if volume_errors or other_errors:
            raise ValidationError(
                msg="Problem found while scanning volumes - can't migrate VM - check log",
                context={"vmid": req.vmid, "volumes": sorted(volume_errors)},
            )

        for volid, vol in volumes.items():
            scfg = self.storage.storage_config(vol.sid)
            if scfg.type not in MIGRATABLE_STORAGE_TYPES and not req.remote:
                raise ValidationError(msg=f"can't migrate '{volid}' - storage type '{scfg.type}' not supported")
            basename = self.storage.parse_volname(volid).basename
            if basename:
                raise ValidationError(msg=f"can't migrate '{volid}' as it's a clone of '{basename}'")

        for vol in volumes.values():
            if req.running and vol.ref is RefKind.ATTACHED:
                vol.migration_mode = MigrationMode.ONLINE
            else:
                vol.migration_mode = MigrationMode.OFFLINE
        return result

    def _test_volume(
        self,
        req: ScanRequest,
        volid: str,
        attrs: VolumeAttrs,
        volumes: Dict[str, LocalVolume],
        path_to_volids: Dict[str, Set[str]],
        local_node: str,
        replicatable: Set[str],
        other_errors: List[str],
    ) -> None:
        if volid.startswith("/"):
            if attrs.shared:
                return
            raise _VolumeRejected("local file/device")

        if attrs.cdrom:
            if volid == "cdrom":
                msg = "can't migrate local cdrom drive"
                if attrs.referenced_in_snapshot and not attrs.is_attached:
                    msg += f" (referenced in snapshot - {', '.join(sorted(attrs.referenced_in_snapshot))})"
                other_errors.append(msg)
                return
            if volid == "none":
                return

        sid, _ = self.storage.parse_volume_id(volid)
        scfg = self.storage.check_enabled(sid, local_node)
        target_sid = self.map_target_sid(scfg, req.storagemap, req.remote)
        self.target_storage_check_available(target_sid, volid, req.target_node, req.remote)
        if scfg.shared and not req.remote:
            return

        ref = RefKind.CONFIG
        if attrs.referenced_in_pending:
            ref = RefKind.PENDING
        if attrs.referenced_in_snapshot:
            ref = RefKind.SNAPSHOT
        if attrs.is_unused:
            ref = RefKind.UNUSED
        if attrs.is_attached:
            ref = RefKind.ATTACHED
        if attrs.is_tpmstate:
            ref = RefKind.GENERATED

        size, fmt = self.storage.volume_size_info(volid)
        vol = LocalVolume(
            volid=volid,
            sid=sid,
            target_sid=target_sid,
            size=size,
            format=fmt,
            replicated=volid in replicatable,
            ref=ref,
            drivename=attrs.drivename,
            is_vmstate=attrs.is_vmstate,
            bwlimit=self.storage.get_bandwidth_limit("migration", [sid, target_sid]),
            # raw+size streams can't carry qcow2/vmdk snapshots
            with_snapshots=(fmt or "") in ("qcow2", "vmdk"),
        )
        volumes[volid] = vol

        if attrs.cdrom:
            if _CLOUDINIT_RE.search(volid):
                vol.ref = RefKind.GENERATED
                return
            raise _VolumeRejected("local cdrom image")

        owner = self.storage.parse_volname(volid).owner
        if owner != req.vmid:
            raise _VolumeRejected(f"owned by other VM (owner = VM {owner})")

        path_to_volids.setdefault(self.storage.path(volid), set()).add(volid)

        if attrs.is_vmstate:
            return

        if attrs.referenced_in_snapshot:
            vol.with_snapshots = True
            if req.running and not vol.replicated:
                raise _VolumeRejected("online storage migration not possible if non-replicated snapshot exists")
            if req.remote:
                raise _VolumeRejected("remote migration with snapshots not supported yet")
            if not (
                scfg.type == "zfspool"
                or (scfg.type == "btrfs" and vol.format == "raw")
                or vol.format == "qcow2"
            ):
                raise _VolumeRejected("non-migratable snapshot exists")

        if self.storage.volume_is_base_and_used(volid):
            raise _VolumeRejected("referenced by linked clone(s)")


def efivars_size(drive: Mapping[str, str]) -> int:
    return EFIVARS_SIZE_4M if drive.get("efitype") == "4m" else EFIVARS_SIZE_2M


def update_local_disksizes(conf: Dict[str, Any], volumes: VolumeSet, *, logger: Any = logger) -> None:
    """
    Write each local drive's actual size into the config so the target
    allocates matching volumes. EFI vars and TPM state get fixed sizes.
    """
    for key, drive in list(foreach_drive(conf)):
        if key in ("efidisk0", "tpmstate0"):
            continue
        volid = drive["file"]
        if volid not in volumes:
            continue
        new = volumes[volid].size
        old = drive.get("size")
        if new is None or new == (parse_size(old) or 0):
            continue
        drive["size"] = format_size(new)
        conf[key] = print_drive(drive)
        logger.info("drive '%s': size of disk '%s' updated from %s to %s", key, volid, old or 0, drive["size"])

    if conf.get("efidisk0"):
        drive = parse_drive("efidisk0", conf["efidisk0"])
        if drive:
            drive["size"] = format_size(efivars_size(drive))
            conf["efidisk0"] = print_drive(drive)

    if conf.get("tpmstate0"):
        drive = parse_drive("tpmstate0", conf["tpmstate0"])
        if drive:
            drive["size"] = format_size(TPMSTATE_DISK_SIZE)
            conf["tpmstate0"] = print_drive(drive)

