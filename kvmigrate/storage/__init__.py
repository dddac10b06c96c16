# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/storage/__init__.py
from .mirror import BlockJobs, Completion
from .offline import OfflineSync
from .replication import cleanup_bitmaps, handle_replication
from .scanner import ScanRequest, VolumeScanner, update_local_disksizes
from .volumes import LocalVolume, MigrationMode, RefKind, TargetDrive, VolumeSet, filter_local_volumes

__all__ = [
    "BlockJobs",
    "Completion",
    "OfflineSync",
    "cleanup_bitmaps",
    "handle_replication",
    "ScanRequest",
    "VolumeScanner",
    "update_local_disksizes",
    "LocalVolume",
    "MigrationMode",
    "RefKind",
    "TargetDrive",
    "VolumeSet",
    "filter_local_volumes",
]
