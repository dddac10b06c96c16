# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/env/dir_storage.py
from __future__ import annotations

import json
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from ..core.exceptions import StorageError, ValidationError
from ..core.utils import U
from ..ssh.ssh_client import SSHClient
from ..ssh.ssh_config import SSHConfig
from .interfaces import StorageConfig, StorageLayer, StorageMigrateOptions, TargetNode, VolumeName

# <vmid>/vm-<vmid>-disk-0.qcow2
# <basevmid>/base-<basevmid>-disk-0.qcow2/<vmid>/vm-<vmid>-disk-0.qcow2
_IMAGE_RE = re.compile(
    r"^(?:(?P<basevmid>\d+)/(?P<basename>base-\d+-[^/\s]+)/)?"
    r"(?P<owner>\d+)/(?P<name>(?P<prefix>vm|base)-(?P=owner)-[^/\s]+?)(?:\.(?P<fmt>raw|qcow2|vmdk))?$"
)
# block-device storages (lvm, zfspool): vm-<vmid>-disk-0
_BLOCK_RE = re.compile(r"^(?P<name>(?P<prefix>vm|base)-(?P<owner>\d+)-[^/\s]+)$")
_ISO_RE = re.compile(r"^iso/(?P<name>[^/]+\.(?:iso|img))$", re.IGNORECASE)
_DISK_NUM_RE = re.compile(r"-disk-(\d+)")

FILE_BASED_TYPES = ("dir", "btrfs")


class DirStorage(StorageLayer):
    """
    Storage layer for directory-backed storages described in the YAML config:

        storage:
          local:
            type: dir
            path: /var/lib/vz
            content: [images, iso]
          nfs-shared:
            type: dir
            path: /mnt/pve/nfs
            shared: true
            bwlimit: {migration: 102400}

    Images live at `<path>/images/<vmid>/<name>`. Copies to other nodes go
    through rsync over ssh into the same storage path on the target.
    """

    def __init__(
        self,
        storages: Mapping[str, Mapping[str, Any]],
        *,
        logger: Any,
        ssh_defaults: Optional[Mapping[str, Any]] = None,
    ):
        self.storages: Dict[str, StorageConfig] = {
            sid: StorageConfig.from_mapping(sid, data or {}) for sid, data in (storages or {}).items()
        }
        self.logger = logger
        self.ssh_defaults = dict(ssh_defaults or {})

    def storage_config(self, sid: str) -> StorageConfig:
        scfg = self.storages.get(sid)
        if scfg is None:
            raise ValidationError(msg=f"storage '{sid}' does not exist", context={"storage": sid})
        return scfg

    def parse_volname(self, volid: str) -> VolumeName:
        sid, volname = self.parse_volume_id(volid)
        scfg = self.storage_config(sid)
        m = _ISO_RE.match(volname)
        if m:
            return VolumeName(vtype="iso", name=m.group("name"), owner=None, format="raw")
        regex = _IMAGE_RE if scfg.type in FILE_BASED_TYPES else _BLOCK_RE
        m = regex.match(volname)
        if not m:
            raise ValidationError(msg=f"unable to parse volume name '{volname}'", context={"volid": volid})
        gd = m.groupdict()
        fmt = gd.get("fmt") or "raw"
        basevmid = gd.get("basevmid")
        return VolumeName(
            vtype="images",
            name=gd["name"] + (f".{gd['fmt']}" if gd.get("fmt") else ""),
            owner=int(gd["owner"]),
            basename=gd.get("basename"),
            basevmid=int(basevmid) if basevmid else None,
            is_base=gd["prefix"] == "base",
            format=fmt,
        )

    def _image_path(self, scfg: StorageConfig, vol: VolumeName) -> Path:
        if not scfg.path:
            raise StorageError(msg=f"storage '{scfg.sid}' has no path")
        if vol.vtype == "iso":
            return Path(scfg.path) / "template" / "iso" / vol.name
        return Path(scfg.path) / "images" / str(vol.owner) / vol.name

    def path(self, volid: str) -> str:
        sid, _ = self.parse_volume_id(volid)
        scfg = self.storage_config(sid)
        vol = self.parse_volname(volid)
        if scfg.type not in FILE_BASED_TYPES:
            return f"/dev/{sid}/{vol.name}"
        return str(self._image_path(scfg, vol))

    def volume_size_info(self, volid: str, timeout: float = 5.0) -> Tuple[int, Optional[str]]:
        path = self.path(volid)
        try:
            cp = U.run_cmd(self.logger, ["qemu-img", "info", "--output=json", path], capture=True, timeout=timeout)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise StorageError(msg=f"unable to get size of volume '{volid}'", cause=e, context={"volid": volid})
        info = json.loads(cp.stdout or "{}")
        return int(info.get("virtual-size", 0)), info.get("format")

    def volume_is_base_and_used(self, volid: str) -> bool:
        vol = self.parse_volname(volid)
        if not vol.is_base:
            return False
        sid, _ = self.parse_volume_id(volid)
        scfg = self.storage_config(sid)
        if not scfg.path:
            return False
        images = Path(scfg.path) / "images"
        needle = f"/{vol.owner}/{vol.name}"
        for candidate in images.glob("*/*"):
            if candidate.name == vol.name:
                continue
            try:
                cp = U.run_cmd(
                    self.logger, ["qemu-img", "info", "--output=json", str(candidate)], capture=True, check=False
                )
            except subprocess.TimeoutExpired:
                continue
            backing = json.loads(cp.stdout or "{}").get("backing-filename") or ""
            if backing.endswith(needle):
                return True
        return False

    def _next_free_name(self, scfg: StorageConfig, vmid: int, fmt: str, exists) -> str:
        n = 0
        while True:
            name = f"vm-{vmid}-disk-{n}.{fmt}"
            if not exists(Path(scfg.path or "/") / "images" / str(vmid) / name):
                return name
            n += 1

    def vdisk_alloc(self, sid: str, vmid: int, fmt: Optional[str], name: Optional[str], size: int) -> str:
        scfg = self.storage_config(sid)
        fmt = fmt or "raw"
        if scfg.type not in FILE_BASED_TYPES:
            raise StorageError(msg=f"storage type '{scfg.type}' does not support allocation here")
        if not name:
            name = self._next_free_name(scfg, vmid, fmt, lambda p: p.exists())
        path = Path(scfg.path or "/") / "images" / str(vmid) / name
        if path.exists():
            raise StorageError(msg=f"disk image '{path}' already exists")
        U.ensure_dir(path.parent)
        U.run_cmd(self.logger, ["qemu-img", "create", "-f", fmt, str(path), str(size)], capture=True)
        return f"{sid}:{vmid}/{name}"

    def _ssh(self, target: TargetNode) -> SSHClient:
        cfg = target.ssh or SSHConfig.from_mapping(target.address, self.ssh_defaults)
        return SSHClient(self.logger, cfg)

    def storage_migrate(
        self,
        volid: str,
        target: TargetNode,
        target_sid: str,
        opts: StorageMigrateOptions,
        logger: Any,
    ) -> str:
        src_path = self.path(volid)
        vol = self.parse_volname(volid)
        tcfg = self.storage_config(target_sid)
        if tcfg.type not in FILE_BASED_TYPES:
            raise StorageError(msg=f"storage type '{tcfg.type}' not supported as copy target")
        ssh = self._ssh(target)
        name = vol.name
        dest = Path(tcfg.path or "/") / "images" / str(vol.owner) / name
        if ssh.exists(str(dest)):
            if not opts.allow_rename:
                raise StorageError(msg=f"volume '{target_sid}:{vol.owner}/{name}' already exists on '{target.node}'")
            name = self._next_free_name(tcfg, int(vol.owner or 0), vol.format or "raw", lambda p: ssh.exists(str(p)))
            dest = dest.parent / name
            logger.info("target volume exists, renaming to '%s'", name)
        bwlimit_kib = (opts.ratelimit_bps // 1024) if opts.ratelimit_bps else None
        try:
            ssh.copy_to(src_path, str(dest), bwlimit_kib=bwlimit_kib)
        except subprocess.CalledProcessError as e:
            raise StorageError(msg=f"copy of '{volid}' failed: {(e.stderr or '').strip()}", cause=e)
        return f"{target_sid}:{vol.owner}/{name}"

    def vdisk_free(self, volid: str) -> None:
        path = Path(self.path(volid))
        if not path.exists():
            raise StorageError(msg=f"volume '{volid}' does not exist", context={"volid": volid})
        U.safe_unlink(path)
        self.logger.debug("freed volume %s", volid)

    def deactivate_volumes(self, volids: Iterable[str]) -> None:
        # nothing to deactivate for plain files
        return None

    def check_connection(self, sid: str) -> bool:
        scfg = self.storage_config(sid)
        return bool(scfg.path) and Path(scfg.path).is_dir()
