# SPDX-License-Identifier: LGPL-3.0-or-later
"""The target-side helper driven through its stdin/stdout line protocol."""
from __future__ import annotations

import io
import json

from fakes.fake_env import FakeStorage, FakeSupervisor, MemoryConfigStore, ScriptedMonitor, make_env
from fakes.fake_logger import FakeLogger

from kvmigrate.core.exceptions import KvMigrateError, QMPError
from kvmigrate.tunnel.server import TunnelServer
from kvmigrate.tunnel.ssh_tunnel import BANNER

STORAGES = {"local": {"type": "dir", "path": "/var/lib/vz"}, "fast": {"type": "lvmthin"}}
CONF = {"memory": 2048, "scsi0": "local:100/vm-100-disk-0.raw,size=4G", "lock": "migrate"}


def _serve(commands, tmp_path, *, store=None, storage=None, supervisor=None, monitor=None):
    env = make_env(
        tmp_path,
        config_store=store or MemoryConfigStore("node2", {100: CONF}),
        storage=storage or FakeStorage(STORAGES),
        supervisor=supervisor,
        monitor=monitor,
        node="node2",
    )
    stdin = io.StringIO("".join(json.dumps(c) + "\n" for c in commands))
    stdout = io.StringIO()
    rc = TunnelServer(env, stdin=stdin, stdout=stdout, logger=FakeLogger()).run()
    lines = stdout.getvalue().splitlines()
    assert rc == 0
    assert lines[0] == BANNER
    return env, [json.loads(line) for line in lines[1:]]


class TestTunnelServer:
    def test_version_and_quit(self, tmp_path):
        _, replies = _serve([{"cmd": "version"}, {"cmd": "quit"}, {"cmd": "version"}], tmp_path)
        assert replies == [{"api": 2, "age": 0, "success": True}, {"success": True}]

    def test_unknown_and_invalid(self, tmp_path):
        env = make_env(
            tmp_path,
            config_store=MemoryConfigStore("node2"),
            storage=FakeStorage(STORAGES),
            node="node2",
        )
        stdin = io.StringIO('{"cmd": "bogus"}\nnot json\n[1]\n\n')
        stdout = io.StringIO()
        TunnelServer(env, stdin=stdin, stdout=stdout, logger=FakeLogger()).run()
        replies = [json.loads(line) for line in stdout.getvalue().splitlines()[1:]]
        assert replies[0] == {"success": False, "msg": "unknown command 'bogus'"}
        assert replies[1]["success"] is False and replies[1]["msg"].startswith("invalid command")
        assert replies[2] == {"success": False, "msg": "invalid command: command must be an object"}

    def test_start_allocates_target_volumes(self, tmp_path):
        supervisor = FakeSupervisor(start_reply={"migrate": {"proto": "unix", "addr": "/run/x/100.migrate"}})
        storage = FakeStorage(STORAGES)
        env, replies = _serve(
            [
                {
                    "cmd": "start",
                    "vmid": 100,
                    "migratedfrom": "node1",
                    "conf": dict(CONF),
                    "nbd": {"scsi0": {"storage": "fast", "format": "raw", "size": 4 << 30}},
                }
            ],
            tmp_path,
            storage=storage,
            supervisor=supervisor,
        )
        reply = replies[0]
        assert reply["success"] is True
        assert storage.allocated == ["fast:100/vm-100-disk-10.raw"]
        assert reply["migrate"] == {"proto": "unix", "addr": "/run/x/100.migrate"}
        assert reply["drives"]["scsi0"]["drivestr"] == "fast:100/vm-100-disk-10.raw,size=4G,format=raw"
        assert reply["drives"]["scsi0"]["nbd_uri"] == f"nbd:unix:{tmp_path}/100_nbd.migrate:exportname=drive-scsi0"
        vmid, params = supervisor.started[0]
        assert vmid == 100
        assert params["migratedfrom"] == "node1"
        assert params["nbd"] == {"scsi0": "fast:100/vm-100-disk-10.raw"}

    def test_handed_over_config_references_allocated_volumes(self, tmp_path):
        store = MemoryConfigStore("node2")
        storage = FakeStorage(STORAGES)
        _, replies = _serve(
            [
                {"cmd": "config", "vmid": 100, "conf": dict(CONF)},
                {
                    "cmd": "start",
                    "vmid": 100,
                    "migratedfrom": "node1",
                    "conf": dict(CONF),
                    "nbd": {"scsi0": {"storage": "fast", "format": "raw", "size": 4 << 30}},
                },
                {"cmd": "unlock", "vmid": 100},
                {"cmd": "quit"},
            ],
            tmp_path,
            store=store,
            storage=storage,
        )
        assert all(r["success"] for r in replies)
        assert storage.allocated == ["fast:100/vm-100-disk-10.raw"]
        saved = store.load_config(100)
        assert saved["scsi0"] == "fast:100/vm-100-disk-10.raw,size=4G,format=raw"
        assert "lock" not in saved

    def test_start_leaves_unowned_config_alone(self, tmp_path):
        store = MemoryConfigStore("node2")
        _serve(
            [{"cmd": "start", "vmid": 100, "conf": dict(CONF), "nbd": {"scsi0": {"storage": "fast", "size": 1}}}],
            tmp_path,
            store=store,
        )
        assert store.writes == []

    def test_start_reuses_replicated_volume(self, tmp_path):
        storage = FakeStorage(STORAGES)
        _, replies = _serve(
            [
                {
                    "cmd": "start",
                    "vmid": 100,
                    "conf": dict(CONF),
                    "nbd": {"scsi0": {"replicated": True, "volid": "local:100/vm-100-disk-0.raw"}},
                }
            ],
            tmp_path,
            storage=storage,
        )
        assert storage.allocated == []
        assert replies[0]["replicated_volumes"] == ["local:100/vm-100-disk-0.raw"]

    def test_failed_start_frees_allocations(self, tmp_path):
        class Broken(FakeSupervisor):
            def start(self, vmid, params):
                raise KvMigrateError(msg="start failed: QEMU exited with code 1")

        storage = FakeStorage(STORAGES)
        _, replies = _serve(
            [{"cmd": "start", "vmid": 100, "conf": dict(CONF), "nbd": {"scsi0": {"storage": "fast", "size": 1}}}],
            tmp_path,
            storage=storage,
            supervisor=Broken(),
        )
        assert replies[0] == {"success": False, "msg": "start failed: QEMU exited with code 1"}
        assert storage.freed == storage.allocated == ["fast:100/vm-100-disk-10.raw"]

    def test_resume_unlock_stop(self, tmp_path):
        store = MemoryConfigStore("node2", {100: CONF})
        supervisor = FakeSupervisor(running={100: 99})
        monitor = ScriptedMonitor(status="paused")
        env, replies = _serve(
            [{"cmd": "nbdstop", "vmid": 100}, {"cmd": "resume", "vmid": 100}, {"cmd": "unlock", "vmid": 100}, {"cmd": "stop", "vmid": 100}],
            tmp_path,
            store=store,
            supervisor=supervisor,
            monitor=monitor,
        )
        assert all(r["success"] for r in replies)
        assert monitor.names() == ["nbd-server-stop", "cont"]
        assert "lock" not in store.load_config(100)
        assert store.locked == [100]
        assert supervisor.stopped == [(100, True, True)]

    def test_resume_needs_running_vm(self, tmp_path):
        _, replies = _serve([{"cmd": "resume", "vmid": 100}], tmp_path)
        assert replies[0] == {"success": False, "msg": "VM 100 not running"}

    def test_fstrim_failure_is_a_warning(self, tmp_path):
        class NoAgent(ScriptedMonitor):
            def qga_cmd(self, vmid, execute, arguments=None, **kw):
                raise QMPError(msg="No QEMU guest agent configured")

        _, replies = _serve([{"cmd": "fstrim", "vmid": 100}], tmp_path, monitor=NoAgent())
        assert replies[0] == {"success": True, "warning": "fstrim failed - No QEMU guest agent configured"}

    def test_config_and_free(self, tmp_path):
        store = MemoryConfigStore("node2")
        storage = FakeStorage(STORAGES)
        _, replies = _serve(
            [
                {"cmd": "config", "vmid": 200, "conf": {"memory": 1024}},
                {"cmd": "free", "volid": "fast:200/vm-200-disk-10.raw"},
                {"cmd": "config", "vmid": 200, "conf": "nope"},
            ],
            tmp_path,
            store=store,
            storage=storage,
        )
        assert [r["success"] for r in replies] == [True, True, False]
        assert store.load_config(200) == {"memory": 1024}
        assert storage.freed == ["fast:200/vm-200-disk-10.raw"]

    def test_query_unknown_import(self, tmp_path):
        _, replies = _serve([{"cmd": "query-disk-import", "volid": "fast:1"}], tmp_path)
        assert replies[0]["success"] is False
        assert "no disk import for 'fast:1'" in replies[0]["msg"]
