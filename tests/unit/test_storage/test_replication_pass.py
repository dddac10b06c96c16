# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import pytest

from fakes.fake_env import FakeReplication, ScriptedMonitor
from fakes.fake_logger import FakeLogger

from kvmigrate.core.exceptions import StorageError, ValidationError
from kvmigrate.env.interfaces import ReplicationJob
from kvmigrate.storage import LocalVolume, MigrationMode, TargetDrive, VolumeSet, cleanup_bitmaps, handle_replication

JOB = ReplicationJob(id="100-0", target="node2")
VOL = "local:100/vm-100-disk-0.raw"


def _replicated(mode=MigrationMode.ONLINE):
    vol = LocalVolume(VOL, "local", "local", replicated=True, migration_mode=mode, drivename="scsi0")
    return VolumeSet(volumes={VOL: vol})


def _run(volumes, replication, *, job=JOB, running=True, remote=False, monitor=None):
    monitor = monitor or ScriptedMonitor()
    drives = {}
    handle_replication(
        vmid=100,
        volumes=volumes,
        job=job,
        running=running,
        remote=remote,
        monitor=monitor,
        replication=replication,
        target_drives=drives,
        logger=FakeLogger(),
    )
    return monitor, drives


class TestHandleReplication:
    def test_no_job_does_nothing(self):
        repl = FakeReplication(volumes={VOL})
        monitor, drives = _run(_replicated(), repl, job=None)
        assert repl.runs == [] and monitor.calls == [] and drives == {}

    def test_running_guest_tracks_dirty_blocks_first(self):
        repl = FakeReplication(job=JOB, volumes={VOL})
        monitor, drives = _run(_replicated(), repl)

        assert monitor.args_of("block-dirty-bitmap-add") == [{"node": "drive-scsi0", "name": "repl_scsi0"}]
        assert drives == {"scsi0": TargetDrive(drive="scsi0", bitmap="repl_scsi0")}
        assert repl.runs == ["100-0"]

    def test_stopped_guest_needs_no_bitmap(self):
        repl = FakeReplication(job=JOB, volumes={VOL})
        monitor, drives = _run(_replicated(MigrationMode.OFFLINE), repl, running=False)
        assert monitor.calls == []
        assert drives == {}
        assert repl.runs == ["100-0"]

    def test_remote_is_rejected(self):
        with pytest.raises(ValidationError, match="replicated volumes to remote"):
            _run(_replicated(), FakeReplication(job=JOB), remote=True)

    def test_volume_missing_after_pass(self):
        repl = FakeReplication(job=JOB, volumes=set())
        with pytest.raises(StorageError, match=f"expected volume '{VOL}' to get replicated"):
            _run(_replicated(), repl)


def test_cleanup_bitmaps_only_touches_tracked_drives():
    monitor = ScriptedMonitor()
    drives = {
        "scsi0": TargetDrive(drive="scsi0", bitmap="repl_scsi0"),
        "scsi1": TargetDrive(drive="scsi1"),
    }
    cleanup_bitmaps(100, drives, monitor, FakeLogger())
    assert monitor.args_of("block-dirty-bitmap-remove") == [{"node": "drive-scsi0", "name": "repl_scsi0"}]
