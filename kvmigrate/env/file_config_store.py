# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/env/file_config_store.py
from __future__ import annotations

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional

import yaml

from ..core.exceptions import ValidationError
from ..core.utils import U
from .interfaces import ConfigStore


class FileConfigStore(ConfigStore):
    """
    Guest configs as YAML files below a shared root:

        <root>/nodes/<node>/qemu/<vmid>.yaml
        <root>/nodes/<node>/node.yaml          (address: 10.0.0.2)
        <root>/mapping/<kind>.yaml             (pci / usb / dir mappings)
        <root>/lock/<node>/<vmid>.lock

    The root is expected to be visible from every node, so moving a config
    to another node is a rename.
    """

    def __init__(self, root: Path, node: str, *, logger: Optional[Any] = None):
        self.root = Path(root)
        self.node = node
        self.logger = logger

    def config_path(self, vmid: int, node: Optional[str] = None) -> Path:
        return self.root / "nodes" / (node or self.node) / "qemu" / f"{vmid}.yaml"

    def _lock_path(self, vmid: int) -> Path:
        return self.root / "lock" / self.node / f"{vmid}.lock"

    def load_config(self, vmid: int, node: Optional[str] = None) -> Dict[str, Any]:
        path = self.config_path(vmid, node)
        if not path.exists():
            raise ValidationError(
                msg=f"Configuration file '{path.relative_to(self.root)}' does not exist",
                context={"vmid": vmid},
            )
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ValidationError(msg=f"unable to parse config of VM {vmid}: {e}", cause=e)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError(msg=f"config of VM {vmid} must be a mapping")
        return data

    def write_config(self, vmid: int, conf: Mapping[str, Any], node: Optional[str] = None) -> None:
        text = yaml.safe_dump(dict(conf), sort_keys=True, default_flow_style=False)
        U.atomic_write_text(self.config_path(vmid, node), text)

    def move_config_to_node(self, vmid: int, target: str) -> None:
        src = self.config_path(vmid)
        dst = self.config_path(vmid, target)
        if dst.exists():
            raise ValidationError(msg=f"config file for VM {vmid} already exists on node '{target}'")
        U.ensure_dir(dst.parent)
        os.rename(src, dst)

    @contextmanager
    def lock_config(self, vmid: int, timeout: float = 10.0) -> Iterator[None]:
        path = self._lock_path(vmid)
        U.ensure_dir(path.parent)
        with path.open("a+", encoding="utf-8") as fp:
            deadline = time.monotonic() + timeout
            while True:
                try:
                    fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise ValidationError(msg=f"can't lock file '{path}' - got timeout", context={"vmid": vmid})
                    time.sleep(0.1)
            try:
                yield
            finally:
                fcntl.flock(fp.fileno(), fcntl.LOCK_UN)

    def get_mapping(self, kind: str, name: str) -> Optional[Dict[str, Any]]:
        path = self.root / "mapping" / f"{kind}.yaml"
        if not path.exists():
            return None
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        entry = data.get(name)
        return dict(entry) if isinstance(entry, dict) else None

    def node_address(self, node: str) -> str:
        path = self.root / "nodes" / node / "node.yaml"
        if path.exists():
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            if data.get("address"):
                return str(data["address"])
        return node

    def node_exists(self, node: str) -> bool:
        return (self.root / "nodes" / node).is_dir()
