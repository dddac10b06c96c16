# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/env/guest_config.py
"""
Helpers for the subset of the guest configuration the migration engine
reads and rewrites: drives, unused volumes, network bridges and a few
scalar options.

A configuration is a plain dict. Drive values are option strings such as
`local:100/vm-100-disk-0.qcow2,size=32G,format=qcow2`; snapshots live under
`conf["snapshots"][name]` and pending changes under `conf["pending"]`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Set, Tuple

DRIVE_KEY_RE = re.compile(r"^(ide|sata|scsi|virtio|efidisk|tpmstate)\d+$")
UNUSED_KEY_RE = re.compile(r"^unused\d+$")
NET_KEY_RE = re.compile(r"^net\d+$")

_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT])?$")
_SIZE_UNITS = {None: 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def is_valid_drivename(key: str) -> bool:
    return bool(DRIVE_KEY_RE.match(key))


def parse_size(value: Optional[str]) -> Optional[int]:
    """`32G` -> bytes; None for missing or unparsable values."""
    if not value:
        return None
    m = _SIZE_RE.match(str(value).strip())
    if not m:
        return None
    return int(float(m.group(1)) * _SIZE_UNITS[m.group(2)])


def format_size(size: int) -> str:
    for unit in ("T", "G", "M", "K"):
        mult = _SIZE_UNITS[unit]
        if size >= mult and size % mult == 0:
            return f"{size // mult}{unit}"
    return str(size)


def parse_drive(key: str, value: str) -> Optional[Dict[str, str]]:
    """
    Split a drive option string into a dict with `file` plus its options.
    The first element may itself be `file=...`.
    """
    if not value:
        return None
    drive: Dict[str, str] = {}
    for i, part in enumerate(str(value).split(",")):
        part = part.strip()
        if not part:
            continue
        if "=" in part:
            k, v = part.split("=", 1)
            drive[k.strip()] = v.strip()
        elif i == 0:
            drive["file"] = part
        else:
            return None
    if "file" not in drive:
        return None
    drive["interface"] = re.sub(r"\d+$", "", key)
    drive["key"] = key
    return drive


def print_drive(drive: Mapping[str, str]) -> str:
    opts = [f"{k}={v}" for k, v in drive.items() if k not in ("file", "interface", "key")]
    return ",".join([drive["file"], *opts])


def drive_is_cdrom(drive: Mapping[str, str]) -> bool:
    return drive.get("media") == "cdrom"


def parse_net(value: str, default_key: Optional[str] = None) -> Dict[str, str]:
    """`key=value` list; a bare token is stored under `default_key` when given."""
    out: Dict[str, str] = {}
    for part in str(value or "").split(","):
        if "=" in part:
            k, v = part.split("=", 1)
            out[k.strip()] = v.strip()
        elif part.strip() and default_key and default_key not in out:
            out[default_key] = part.strip()
    return out


def print_net(net: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in net.items())


@dataclass(frozen=True)
class IdMap:
    """
    Source-id -> target-id mapping as given on the command line:
    `local-lvm:fast,local:slow` or a single default target id (`fast`).
    """
    entries: Mapping[str, str] = field(default_factory=dict)
    default: Optional[str] = None

    @classmethod
    def parse(cls, spec: Optional[str]) -> "IdMap":
        entries: Dict[str, str] = {}
        default: Optional[str] = None
        for item in (spec or "").split(","):
            item = item.strip()
            if not item:
                continue
            if ":" in item:
                src, dst = item.split(":", 1)
                if not src or not dst:
                    raise ValueError(f"invalid mapping entry '{item}'")
                if src in entries:
                    raise ValueError(f"duplicate mapping for '{src}'")
                entries[src] = dst
            elif default is None:
                default = item
            else:
                raise ValueError("multiple default mappings given")
        return cls(entries=entries, default=default)

    def map(self, source: str) -> str:
        if source in self.entries:
            return self.entries[source]
        return self.default or source

    def __bool__(self) -> bool:
        return bool(self.entries) or self.default is not None


@dataclass
class VolumeAttrs:
    """How a volume is referenced across the current config, snapshots and pending changes."""
    cdrom: bool = True
    shared: bool = False
    replicate: bool = False
    is_unused: bool = False
    is_attached: bool = False
    is_vmstate: bool = False
    is_tpmstate: bool = False
    referenced_in_pending: bool = False
    referenced_in_snapshot: Set[str] = field(default_factory=set)
    size: Optional[int] = None
    drivename: Optional[str] = None


def _iter_volume_entries(conf: Mapping[str, Any]) -> Iterator[Tuple[str, Dict[str, str]]]:
    for key in sorted(conf):
        value = conf.get(key)
        if not isinstance(value, str):
            continue
        if is_valid_drivename(key):
            drive = parse_drive(key, value)
            if drive:
                yield key, drive
        elif UNUSED_KEY_RE.match(key) or key == "vmstate":
            yield key, {"file": value, "key": key}


def foreach_drive(conf: Mapping[str, Any]) -> Iterator[Tuple[str, Dict[str, str]]]:
    """Attached drives of the current config (no unused/vmstate entries)."""
    for key, drive in _iter_volume_entries(conf):
        if is_valid_drivename(key):
            yield key, drive


def foreach_volid(conf: Mapping[str, Any]) -> Dict[str, VolumeAttrs]:
    """Collect every referenced volume with its reference attributes."""
    volumes: Dict[str, VolumeAttrs] = {}

    def visit(section: Mapping[str, Any], snapname: Optional[str], pending: bool) -> None:
        for key, drive in _iter_volume_entries(section):
            volid = drive.get("file")
            if not volid:
                continue
            attrs = volumes.setdefault(volid, VolumeAttrs())
            if "media" in drive or is_valid_drivename(key):
                if not drive_is_cdrom(drive):
                    attrs.cdrom = False
            else:
                attrs.cdrom = False
            if drive.get("replicate", "1") not in ("0", "no", "off"):
                attrs.replicate = True
            if drive.get("shared") in ("1", "on", "yes"):
                attrs.shared = True
            if UNUSED_KEY_RE.match(key):
                attrs.is_unused = True
            if not attrs.is_unused and snapname is None and not pending:
                attrs.is_attached = True
            if snapname is not None:
                attrs.referenced_in_snapshot.add(snapname)
            if pending:
                attrs.referenced_in_pending = True
            if attrs.size is None:
                attrs.size = parse_size(drive.get("size"))
            if key == "vmstate":
                attrs.is_vmstate = True
            if key == "tpmstate0":
                attrs.is_tpmstate = True
            if is_valid_drivename(key):
                attrs.drivename = key

    visit(conf, None, False)
    pending = conf.get("pending")
    if isinstance(pending, Mapping) and pending:
        visit(pending, None, True)
    for snapname, snap in sorted((conf.get("snapshots") or {}).items()):
        if isinstance(snap, Mapping):
            visit(snap, snapname, False)
    return volumes


def update_volume_ids(conf: Dict[str, Any], volume_map: Mapping[str, str]) -> None:
    """Rewrite volume ids in the current config, pending section and snapshots."""
    if not volume_map:
        return

    def rewrite(section: Dict[str, Any]) -> None:
        for key in list(section):
            value = section[key]
            if not isinstance(value, str):
                continue
            if is_valid_drivename(key):
                drive = parse_drive(key, value)
                if drive and drive["file"] in volume_map:
                    drive["file"] = volume_map[drive["file"]]
                    section[key] = print_drive(drive)
            elif (UNUSED_KEY_RE.match(key) or key == "vmstate") and value in volume_map:
                section[key] = volume_map[value]

    rewrite(conf)
    if isinstance(conf.get("pending"), dict):
        rewrite(conf["pending"])
    for snap in (conf.get("snapshots") or {}).values():
        if isinstance(snap, dict):
            rewrite(snap)


def map_bridges(conf: Dict[str, Any], bridgemap: IdMap, *, scan_only: bool = False) -> Dict[str, Dict[str, str]]:
    """
    Map network bridges through `bridgemap`. Returns
    {target_bridge: {netX: source_bridge}}; rewrites conf unless scan_only.
    """
    bridges: Dict[str, Dict[str, str]] = {}
    for key in sorted(conf):
        if not NET_KEY_RE.match(key) or not conf.get(key):
            continue
        net = parse_net(conf[key])
        if not net.get("bridge"):
            continue
        target = bridgemap.map(net["bridge"])
        bridges.setdefault(target, {})[key] = net["bridge"]
        if not scan_only:
            net["bridge"] = target
            conf[key] = print_net(net)
    return bridges


def get_current_memory(conf: Mapping[str, Any], default_mib: int = 512) -> int:
    """Configured memory in MiB; accepts `4096` and `current=4096,...`."""
    value = conf.get("memory")
    if value is None:
        return default_mib
    text = str(value)
    if "current=" in text:
        text = parse_net(text).get("current", "")
    try:
        return int(text)
    except ValueError:
        return default_mib


def drive_lookup(conf: Mapping[str, Any], pred: Callable[[str, Dict[str, str]], bool]) -> Optional[Tuple[str, Dict[str, str]]]:
    for key, drive in foreach_drive(conf):
        if pred(key, drive):
            return key, drive
    return None
