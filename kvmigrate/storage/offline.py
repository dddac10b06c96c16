# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/storage/offline.py
from __future__ import annotations

import logging
import socket
import time
from pathlib import Path
from typing import Any, Callable, Optional

from ..core.exceptions import KvMigrateError, StorageError
from ..core.logging_utils import log_step
from ..core.utils import transfer_progress
from ..env.interfaces import StorageLayer, StorageMigrateOptions, TargetNode
from ..tunnel.base import Tunnel, wait_for_sockets
from .volumes import LocalVolume, MigrationMode, VolumeSet

logger = logging.getLogger(__name__)

_CHUNK = 1 << 20


class OfflineSync:
    """
    Copy every offline, non-replicated local volume to the target before the
    guest moves. Within one cluster the storage layer does the copy; for a
    remote cluster the disk is streamed through the tunnel into a volume
    the target allocates.
    """

    def __init__(
        self,
        storage: StorageLayer,
        *,
        logger: Any = logger,
        sleep: Callable[[float], None] = time.sleep,
        import_poll_retries: int = 600,
    ):
        self.storage = storage
        self.logger = logger
        self.sleep = sleep
        self.import_poll_retries = import_poll_retries

    def run(
        self,
        volumes: VolumeSet,
        *,
        target: TargetNode,
        insecure: bool = False,
        tunnel: Optional[Tunnel] = None,
        remote_vmid: Optional[int] = None,
    ) -> None:
        volids = volumes.filter(MigrationMode.OFFLINE, False)
        if volids:
            self.logger.info("copying local disk images")
        for volid in volids:
            vol = volumes[volid]
            if tunnel is not None and remote_vmid is not None:
                new_volid = self._import_through_tunnel(vol, tunnel, remote_vmid)
            else:
                new_volid = self._storage_migrate(vol, target, insecure)
            volumes.volume_map[volid] = new_volid
            self.logger.info("volume '%s' is '%s' on the target", volid, new_volid)
            try:
                self.storage.deactivate_volumes([volid])
            except KvMigrateError as e:
                self.logger.warning("%s", e)

    def _storage_migrate(self, vol: LocalVolume, target: TargetNode, insecure: bool) -> str:
        opts = StorageMigrateOptions(
            ratelimit_bps=vol.bwlimit * 1024 if vol.bwlimit else None,
            insecure=insecure,
            with_snapshots=vol.with_snapshots,
            allow_rename=not vol.is_vmstate,
        )
        try:
            with log_step(self.logger, f"copying local disk '{vol.volid}'"):
                return self.storage.storage_migrate(vol.volid, target, vol.target_sid, opts, self.logger)
        except KvMigrateError as e:
            raise StorageError(
                msg=f"storage migration for '{vol.volid}' to storage '{vol.target_sid}' failed - {e.msg}",
                cause=e,
            )

    def _import_through_tunnel(self, vol: LocalVolume, tunnel: Tunnel, remote_vmid: int) -> str:
        reply = tunnel.write(
            "disk-import",
            timeout=600,
            vmid=remote_vmid,
            storage=vol.target_sid,
            format=vol.format,
            size=vol.size,
            **{"with-snapshots": vol.with_snapshots, "allow-rename": not vol.is_vmstate},
        )
        new_volid = reply["volid"]
        local = tunnel.local_socket(f"import-{Path(reply['socket']).name}")
        tunnel.forward_unix_socket(local, reply["socket"])
        if not wait_for_sockets([local], sleep=self.sleep):
            raise StorageError(msg=f"Timeout, import socket {local} did not get ready")

        src = self.storage.path(vol.volid)
        sent = 0
        with transfer_progress(f"{vol.volid}", vol.size) as progress:
            with open(src, "rb") as f, socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
                s.connect(local)
                while True:
                    chunk = f.read(_CHUNK)
                    if not chunk:
                        break
                    s.sendall(chunk)
                    sent += len(chunk)
                    progress.update(sent)
                s.shutdown(socket.SHUT_WR)

        for _ in range(self.import_poll_retries):
            status = tunnel.write("query-disk-import", volid=new_volid)
            if status.get("status") == "complete":
                return new_volid
            if status.get("status") == "error":
                raise StorageError(msg=f"import of '{vol.volid}' failed on target - {status.get('msg')}")
            self.sleep(1)
        raise StorageError(msg=f"import of '{vol.volid}' did not finish in time")
