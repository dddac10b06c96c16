# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/storage/replication.py
from __future__ import annotations

from typing import Any, Dict, Optional

from ..core.exceptions import StorageError, ValidationError
from ..env.interfaces import Replication, ReplicationJob
from ..qmp.monitor import Monitor
from .volumes import MigrationMode, TargetDrive, VolumeSet


def bitmap_name(drive: str) -> str:
    return f"repl_{drive}"


def handle_replication(
    *,
    vmid: int,
    volumes: VolumeSet,
    job: Optional[ReplicationJob],
    running: bool,
    remote: bool,
    monitor: Monitor,
    replication: Replication,
    target_drives: Dict[str, TargetDrive],
    logger: Any,
) -> None:
    """
    Run one replication pass before copying anything else. For a running
    guest, dirty tracking starts first so the later incremental mirror covers
    every write made during and after the pass.
    """
    if job is None:
        return
    if remote:
        raise ValidationError(msg="can't migrate VM with replicated volumes to remote cluster/node")

    if running:
        for volid in volumes.filter(MigrationMode.ONLINE, True):
            drive = volumes[volid].drivename
            if drive is None:
                raise StorageError(msg=f"internal error - no drive for '{volid}'")
            bitmap = bitmap_name(drive)
            logger.info("%s: start tracking writes using block-dirty-bitmap '%s'", drive, bitmap)
            monitor.mon_cmd(vmid, "block-dirty-bitmap-add", {"node": f"drive-{drive}", "name": bitmap})
            target_drives.setdefault(drive, TargetDrive(drive=drive)).bitmap = bitmap

    logger.info("replicating disk images")
    replicated = replication.run_replication(vmid, job, logger)

    for volid in volumes.filter(replicated=True):
        if volid not in replicated:
            raise StorageError(msg=f"expected volume '{volid}' to get replicated, but it wasn't")


def cleanup_bitmaps(vmid: int, target_drives: Dict[str, TargetDrive], monitor: Monitor, logger: Any) -> None:
    for drive, td in sorted(target_drives.items()):
        if not td.bitmap:
            continue
        logger.info("%s: removing block-dirty-bitmap '%s'", drive, td.bitmap)
        monitor.mon_cmd(vmid, "block-dirty-bitmap-remove", {"node": f"drive-{drive}", "name": td.bitmap})
