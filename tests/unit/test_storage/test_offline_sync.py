# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import pytest

from fakes.fake_env import FakeStorage
from fakes.fake_logger import FakeLogger

from kvmigrate.core.exceptions import StorageError
from kvmigrate.env.interfaces import TargetNode
from kvmigrate.storage import LocalVolume, MigrationMode, OfflineSync, VolumeSet

STORAGES = {"local": {"type": "dir", "path": "/var/lib/vz"}, "fast": {"type": "lvmthin", "bwlimit": {"migration": 512}}}
TARGET = TargetNode(node="node2", address="10.0.0.2")


def _volumes(*vols):
    return VolumeSet(volumes={v.volid: v for v in vols})


class TestOfflineSync:
    def test_copies_offline_non_replicated_only(self):
        storage = FakeStorage(STORAGES)
        volumes = _volumes(
            LocalVolume("local:100/vm-100-disk-0.raw", "local", "fast", bwlimit=512),
            LocalVolume("local:100/vm-100-disk-1.raw", "local", "local", replicated=True),
            LocalVolume("local:100/vm-100-disk-2.raw", "local", "local", migration_mode=MigrationMode.ONLINE),
        )
        log = FakeLogger()

        OfflineSync(storage, logger=log).run(volumes, target=TARGET, insecure=True)

        assert len(storage.migrated) == 1
        volid, node, target_sid, opts = storage.migrated[0]
        assert (volid, node, target_sid) == ("local:100/vm-100-disk-0.raw", "node2", "fast")
        assert opts.ratelimit_bps == 512 * 1024
        assert opts.insecure
        assert opts.allow_rename
        assert volumes.volume_map == {"local:100/vm-100-disk-0.raw": "fast:100/vm-100-disk-0.raw"}
        assert storage.deactivated == ["local:100/vm-100-disk-0.raw"]
        assert log.has("copying local disk images")
        assert log.has("volume 'local:100/vm-100-disk-0.raw' is 'fast:100/vm-100-disk-0.raw' on the target")

    def test_vmstate_keeps_its_name(self):
        storage = FakeStorage(STORAGES)
        volumes = _volumes(LocalVolume("local:100/vm-100-state-s1.raw", "local", "local", is_vmstate=True))
        OfflineSync(storage, logger=FakeLogger()).run(volumes, target=TARGET)
        assert storage.migrated[0][3].allow_rename is False

    def test_nothing_to_copy_is_quiet(self):
        log = FakeLogger()
        OfflineSync(FakeStorage(STORAGES), logger=log).run(VolumeSet(), target=TARGET)
        assert log.records == []

    def test_copy_failure_names_volume_and_storage(self):
        storage = FakeStorage(STORAGES)

        def broken(volid, target, target_sid, opts, logger):
            raise StorageError(msg="ssh: connect to host 10.0.0.2 port 22: No route to host")

        storage.storage_migrate = broken
        volumes = _volumes(LocalVolume("local:100/vm-100-disk-0.raw", "local", "fast"))
        with pytest.raises(StorageError) as ei:
            OfflineSync(storage, logger=FakeLogger()).run(volumes, target=TARGET)
        assert ei.value.msg.startswith(
            "storage migration for 'local:100/vm-100-disk-0.raw' to storage 'fast' failed - ssh: connect"
        )
        assert volumes.volume_map == {}
