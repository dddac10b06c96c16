# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import threading

import pytest
import yaml

from kvmigrate.core.exceptions import ValidationError
from kvmigrate.env import FileConfigStore


@pytest.fixture
def store(tmp_path):
    return FileConfigStore(tmp_path, "node1")


class TestFileConfigStore:
    def test_write_then_load(self, store):
        store.write_config(100, {"memory": 2048, "scsi0": "local:100/vm-100-disk-0.raw,size=4G"})
        assert store.load_config(100) == {"memory": 2048, "scsi0": "local:100/vm-100-disk-0.raw,size=4G"}
        assert store.config_path(100).name == "100.yaml"

    def test_missing_config(self, store):
        with pytest.raises(ValidationError, match="Configuration file 'nodes/node1/qemu/101.yaml' does not exist"):
            store.load_config(101)

    def test_not_a_mapping(self, store):
        path = store.config_path(100)
        path.parent.mkdir(parents=True)
        path.write_text("- 1\n")
        with pytest.raises(ValidationError, match="must be a mapping"):
            store.load_config(100)

    def test_move_to_node(self, store):
        store.write_config(100, {"memory": 1024})
        store.move_config_to_node(100, "node2")
        assert not store.config_path(100).exists()
        assert store.load_config(100, node="node2") == {"memory": 1024}
        assert store.node_exists("node2")

    def test_move_refuses_to_overwrite(self, store):
        store.write_config(100, {"memory": 1024})
        store.write_config(100, {"memory": 4096}, node="node2")
        with pytest.raises(ValidationError, match="already exists on node 'node2'"):
            store.move_config_to_node(100, "node2")

    def test_lock_times_out_while_held(self, store):
        held = threading.Event()
        release = threading.Event()

        def holder():
            with store.lock_config(100):
                held.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        try:
            assert held.wait(5)
            # flock locks are per open file description, so a second open conflicts
            with pytest.raises(ValidationError, match="got timeout"):
                with store.lock_config(100, timeout=0.2):
                    pass
        finally:
            release.set()
            t.join()

        with store.lock_config(100, timeout=0.2):
            pass

    def test_lock_file_is_per_node(self, tmp_path):
        a = FileConfigStore(tmp_path, "node1")
        b = FileConfigStore(tmp_path, "node2")
        with a.lock_config(100), b.lock_config(100, timeout=0.2):
            pass
        assert (tmp_path / "lock" / "node1" / "100.lock").exists()
        assert (tmp_path / "lock" / "node2" / "100.lock").exists()

    def test_mappings_and_addresses(self, store, tmp_path):
        (tmp_path / "mapping").mkdir()
        (tmp_path / "mapping" / "pci.yaml").write_text(
            yaml.safe_dump({"gpu0": {"node2": {"path": "0000:01:00.0"}}})
        )
        (tmp_path / "nodes" / "node2").mkdir(parents=True)
        (tmp_path / "nodes" / "node2" / "node.yaml").write_text("address: 10.0.0.2\n")

        assert store.get_mapping("pci", "gpu0") == {"node2": {"path": "0000:01:00.0"}}
        assert store.get_mapping("pci", "gpu9") is None
        assert store.get_mapping("usb", "x") is None
        assert store.node_address("node2") == "10.0.0.2"
        assert store.node_address("node3") == "node3"

    def test_check_lock(self, store):
        store.check_lock({"memory": 1})
        with pytest.raises(ValidationError, match=r"VM is locked \(backup\)"):
            store.check_lock({"lock": "backup"})
