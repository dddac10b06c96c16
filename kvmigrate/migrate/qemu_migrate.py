# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/migrate/qemu_migrate.py
"""
Migration of one guest to another node.

Prepare only reads: config, device and storage checks, the volume scan and
opening the tunnel. Execute locks the guest, copies offline disks and, for a
running guest, starts it on the target, mirrors the online disks and moves
the memory. Finalize completes the mirrors, hands the config over, resumes
the target and tears the source down; from the first step after `commit()`
on, failures are only logged.
"""
from __future__ import annotations

import copy
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..core.exceptions import (
    KvMigrateError,
    MigrationError,
    QMPError,
    StorageError,
    TransportError,
    TunnelError,
    ValidationError,
)
from ..core.logger import Log
from ..core.utils import U
from ..env import Environment
from ..env.guest_config import (
    foreach_volid,
    get_current_memory,
    map_bridges,
    parse_drive,
    parse_net,
    update_volume_ids,
)
from ..env.interfaces import TargetNode
from ..ssh.ssh_config import SSHConfig
from ..storage import (
    BlockJobs,
    Completion,
    MigrationMode,
    OfflineSync,
    ScanRequest,
    TargetDrive,
    VolumeScanner,
    cleanup_bitmaps,
    handle_replication,
    update_local_disksizes,
)
from ..tunnel.base import Tunnel, TunnelInfo, wait_for_sockets
from ..tunnel.ssh_tunnel import REMOTE_HELPER, SSHTunnel
from ..tunnel.websocket_tunnel import WebSocketTunnel
from .convergence import ConvergenceMonitor
from .phases import Interruptible, PhasedMigration
from .task import MigrationOptions, MigrationTask, MigrationType

logger = logging.getLogger(__name__)

# QEMU defaults to 128 MiB/s
FALLBACK_MAX_BANDWIDTH = 16 << 30

_LOCAL_RESOURCE_RE = re.compile(r"^(usb|hostpci|serial|parallel|virtiofs)\d+$")
_NBD_UNIX_RE = re.compile(r"^nbd:unix:(?P<path>[^:]+):exportname=(?P<export>\S+)$")

TunnelFactory = Callable[[MigrationTask, Set[str], Set[str]], Tunnel]


class QemuMigrate(PhasedMigration):
    def __init__(
        self,
        env: Environment,
        task: MigrationTask,
        *,
        logger: Any = logger,
        tunnel_factory: Optional[TunnelFactory] = None,
        interrupt: Optional[Interruptible] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(task, logger=logger, interrupt=interrupt or Interruptible(sleep=sleep, logger=logger))
        self.env = env
        self.tunnel_factory = tunnel_factory or self._open_tunnel
        self.scanner = VolumeScanner(env.storage, logger=logger)
        self.offline = OfflineSync(env.storage, logger=logger, sleep=self.interrupt.sleep)
        self.target_started = False
        self._remote_conf: Optional[Dict[str, Any]] = None

    @property
    def vmid(self) -> int:
        return self.task.vmid

    @property
    def opts(self) -> MigrationOptions:
        return self.task.options

    def mon_cmd(self, execute: str, arguments: Optional[Dict[str, Any]] = None, **kw: Any) -> Any:
        return self.env.monitor.mon_cmd(self.vmid, execute, arguments, **kw)

    def _log_err(self, msg: str, *args: Any) -> None:
        self.logger.error(msg, *args)
        self.task.errors = True

    # ----------------------------------------------------------------------------------
    # Prepare
    # ----------------------------------------------------------------------------------

    def prepare(self) -> None:
        t = self.task
        env = self.env

        if t.remote and self.opts.migration_type is not MigrationType.WEBSOCKET:
            raise ValidationError(msg="insecure migration to remote cluster not implemented")
        if not t.remote and t.target_node == env.node:
            raise ValidationError(msg="target is local node.")

        conf = t.conf = env.config_store.load_config(self.vmid)
        if not t.remote:
            t.target_address = env.config_store.node_address(t.target_node)
        else:
            t.target_address = self.opts.remote.host  # type: ignore[union-attr]

        if not t.remote:
            t.replication_job = env.replication.find_local_job(self.vmid, t.target_node)
        t.is_replicated = env.replication.has_jobs(self.vmid)
        if t.replication_job is not None and t.replication_job.remove_job is not None:
            raise ValidationError(msg="refusing to migrate replicated VM whose replication job is marked for removal")

        env.config_store.check_lock(conf)

        pid = env.supervisor.is_running(self.vmid)
        if pid:
            if not self.opts.online:
                raise ValidationError(msg="can't migrate running VM without --online")
            t.running = pid
            if t.is_replicated and t.replication_job is None:
                if self.opts.force:
                    self.logger.warning(
                        "WARNING: Node '%s' is not a replication target. Existing replication "
                        "jobs will fail after migration!",
                        t.target_node,
                    )
                else:
                    raise ValidationError(
                        msg=f"Cannot live-migrate replicated VM to node '{t.target_node}' - not a "
                        "replication target. Use 'force' to override.",
                    )
            # a suspended guest may wake up during the migration, so it does not count as paused
            t.vm_was_paused = self._vm_is_paused()
        else:
            self._cleanup_leftovers()

        self.check_local_resources(conf, bool(t.running))

        vga = parse_net(conf.get("vga") or "", "type")
        if t.running and vga.get("clipboard") == "vnc":
            raise ValidationError(msg="VMs with 'clipboard' set to 'vnc' are not live migratable!")

        storages = self.scanner.check_storages(
            sorted(foreach_volid(conf)),
            target_node=t.target_node,
            local_node=env.node,
            storagemap=self.opts.storagemap,
            remote=t.remote,
        )

        replicatable = None
        if t.replication_job is not None:
            replicatable = env.replication.replicatable_volumes(self.vmid, conf)
        t.volumes = self.scanner.scan(
            ScanRequest(
                vmid=self.vmid,
                conf=conf,
                target_node=t.target_node,
                running=bool(t.running),
                storagemap=self.opts.storagemap,
                remote=t.remote,
                with_local_disks=self.opts.with_local_disks,
                replicatable=replicatable,
            ),
            local_node=env.node,
        )

        bridges = set(map_bridges(conf, self.opts.bridgemap, scan_only=True))
        self.interrupt.checkpoint()
        t.tunnel = self.tunnel_factory(t, storages, bridges)
        t.tunnel.negotiate_version()

    def prepare_cleanup(self, err: BaseException) -> None:
        tunnel = self.task.tunnel
        if tunnel is None or tunnel.closed:
            return
        try:
            tunnel.finish()
        except KvMigrateError as e:
            self.logger.error("%s", e)

    def _vm_is_paused(self) -> bool:
        try:
            status = self.mon_cmd("query-status") or {}
        except QMPError as e:
            self.logger.warning("query-status failed - %s", e)
            return False
        return status.get("status") == "paused"

    def _cleanup_leftovers(self) -> None:
        """Sockets of an earlier aborted incoming migration of this guest."""
        for name in (f"{self.vmid}.migrate", f"{self.vmid}_nbd.migrate"):
            path = Path(self.env.run_dir) / name
            if not path.exists():
                continue
            try:
                U.safe_unlink(path)
                self.logger.info("removed left-over migration socket '%s'", path)
            except OSError as e:
                self.logger.warning("attempt to clean up left-over migration socket failed - %s", e)

    def check_local_resources(self, conf: Dict[str, Any], running: bool) -> None:
        """Refuse devices that only exist on this node, unless mapped on the target."""
        local: List[str] = []
        mapped: Dict[str, Dict[str, Any]] = {}
        missing: List[str] = []
        target = self.task.target_node

        def lookup(kind: str, key: str, name: str) -> Optional[Dict[str, Any]]:
            entry = self.env.config_store.get_mapping(kind, name)
            if entry is None or target not in (entry.get("nodes") or {}):
                missing.append(key)
            return entry

        if running and conf.get("amd-sev"):
            local.append("amd-sev")
        for key in ("hostusb", "hostpci", "ivshmem"):
            if conf.get(key):
                local.append(key)

        for key in sorted(conf):
            m = _LOCAL_RESOURCE_RE.match(key)
            if not m:
                continue
            value = str(conf[key])
            kind = m.group(1)
            props = parse_net(value, "dirid" if kind == "virtiofs" else "host")
            if kind == "usb":
                if props.get("host", "").lower() == "spice":
                    continue
                if props.get("mapping"):
                    lookup("usb", key, props["mapping"])
                    mapped[key] = {"name": props["mapping"]}
            elif kind == "hostpci" and props.get("mapping"):
                entry = lookup("pci", key, props["mapping"])
                mapped[key] = {"name": props["mapping"]}
                if entry and entry.get("live-migration-capable"):
                    mapped[key]["live-migration"] = True
                    continue
                if not running:
                    continue
            elif kind == "virtiofs":
                dirid = props.get("dirid", "")
                lookup("dir", key, dirid)
                mapped[key] = {"name": dirid}
            elif kind == "serial" and value == "socket":
                continue
            local.append(key)

        blocking = [res for res in local if res not in mapped]
        if blocking:
            if running or not self.opts.force:
                raise ValidationError(msg="can't migrate VM which uses local devices: " + ", ".join(blocking))
            self.logger.info("migrating VM which uses local devices")

        if mapped:
            not_live = [f"{key}:{mapped[key]['name']}" for key in sorted(mapped) if not mapped[key].get("live-migration")]
            if missing:
                raise ValidationError(
                    msg=f"can't migrate to '{target}': missing mapped devices " + ", ".join(sorted(missing))
                )
            if running and not_live:
                raise ValidationError(
                    msg="can't live migrate running VM which uses following mapped devices: " + ", ".join(not_live)
                )
            self.logger.info("migrating VM which uses mapped local devices")

    def _open_tunnel(self, task: MigrationTask, storages: Set[str], bridges: Set[str]) -> Tunnel:
        if task.options.remote is not None:
            return WebSocketTunnel(
                task.options.remote,
                storages=sorted(storages),
                bridges=sorted(bridges),
                logger=self.logger,
            ).start()
        settings = self.env.settings
        cfg = SSHConfig.from_mapping(task.target_address, settings.get("ssh") or {})
        command = settings.get("mtunnel_command") or list(REMOTE_HELPER)
        if isinstance(command, str):
            command = command.split()
        return SSHTunnel(cfg, command=command, logger=self.logger).start()

    # ----------------------------------------------------------------------------------
    # Execute
    # ----------------------------------------------------------------------------------

    def execute(self) -> None:
        t = self.task
        conf = t.conf
        store = self.env.config_store

        self.logger.info("starting migration of VM %d to node '%s' (%s)", self.vmid, t.target_node, t.target_address)

        conf["lock"] = "migrate"
        store.write_config(self.vmid, conf)

        # target allocations follow the sizes in the config
        update_local_disksizes(conf, t.volumes, logger=self.logger)
        store.write_config(self.vmid, conf)

        handle_replication(
            vmid=self.vmid,
            volumes=t.volumes,
            job=t.replication_job,
            running=bool(t.running),
            remote=t.remote,
            monitor=self.env.monitor,
            replication=self.env.replication,
            target_drives=t.target_drives,
            logger=self.logger,
        )

        self.offline.run(
            t.volumes,
            target=self._target_node(),
            insecure=self.opts.migration_type is MigrationType.INSECURE,
            tunnel=t.tunnel if t.remote else None,
            remote_vmid=t.remote_vmid if t.remote else None,
        )
        if t.remote:
            self._send_remote_config()

        if not t.running:
            return

        self.interrupt.checkpoint()
        online = t.volumes.filter(MigrationMode.ONLINE)
        t.storage_migration = bool(online)

        info = self._start_target(online)
        if t.storage_migration:
            self._start_mirrors(online)

        migrate_uri = info.migrate_uri
        self.logger.info("starting online/live migration on %s", migrate_uri)
        t.livemigration = True

        self._set_migration_caps()
        downtime_ms = self._set_migration_params()

        self.logger.info("start migrate command to %s", migrate_uri)
        merr: Optional[str] = None
        try:
            self.mon_cmd("migrate", {"uri": migrate_uri})
        except QMPError as e:
            merr = e.msg
            self.logger.info("migrate uri => %s failed: %s", migrate_uri, merr)

        ConvergenceMonitor(
            lambda: self.mon_cmd("query-migrate"),
            lambda ms: self.mon_cmd("migrate-set-parameters", {"downtime-limit": ms}),
            policy=self.opts.convergence,
            sleep=self.interrupt.sleep,
            logger=self.logger,
        ).run(downtime_ms, migrate_error=merr)

    def _target_node(self) -> TargetNode:
        t = self.task
        if t.remote:
            return TargetNode(node=t.target_node, address=t.target_address)
        ssh = SSHConfig.from_mapping(t.target_address, self.env.settings.get("ssh") or {})
        return TargetNode(node=t.target_node, address=t.target_address, ssh=ssh)

    def _send_remote_config(self) -> None:
        t = self.task
        assert t.tunnel is not None
        remote_conf = copy.deepcopy(t.conf)
        update_volume_ids(remote_conf, t.volumes.volume_map)
        bridges = map_bridges(remote_conf, self.opts.bridgemap)
        for target in sorted(bridges):
            for nic, old in sorted(bridges[target].items()):
                self.logger.info("mapped: %s from %s to %s", nic, old, target)
        t.tunnel.write("config", timeout=10, vmid=t.remote_vmid, conf=remote_conf)
        self._remote_conf = remote_conf

    def _start_timeout(self) -> float:
        # like a regular start with some overhead for the incoming side
        return 30 + get_current_memory(self.task.conf) // 1024 + 10

    def _start_target(self, online: List[str]) -> TunnelInfo:
        t = self.task
        assert t.tunnel is not None
        tunnel = t.tunnel

        self.logger.info("starting VM %d on remote node '%s'", self.vmid, t.target_node)

        nbd: Dict[str, Dict[str, Any]] = {}
        for volid in online:
            vol = t.volumes[volid]
            if vol.drivename is None:
                raise StorageError(msg=f"internal error - no drive for '{volid}'")
            nbd[vol.drivename] = {
                "volid": volid,
                "format": vol.format,
                "size": vol.size,
                "storage": vol.target_sid,
                "replicated": vol.replicated,
            }

        if self._remote_conf is not None:
            start_conf = copy.deepcopy(self._remote_conf)
        else:
            start_conf = copy.deepcopy(t.conf)
            update_volume_ids(start_conf, t.volumes.volume_map)

        reply = tunnel.write(
            "start",
            timeout=self._start_timeout(),
            vmid=t.remote_vmid,
            migratedfrom=self.env.node,
            migration_type=self.opts.migration_type.value,
            migration_network=self.opts.migration_network,
            conf=start_conf,
            nbd=nbd,
        )
        self.target_started = True

        info = TunnelInfo.from_reply(reply.get("migrate") or {})
        if t.remote and info.proto != "unix":
            raise TunnelError(msg="only UNIX sockets are supported for remote migration")

        nbd_paths: Dict[str, Tuple[str, str]] = {}
        for drive, entry in sorted((reply.get("drives") or {}).items()):
            t.stopnbd = True
            td = t.target_drives.setdefault(drive, TargetDrive(drive=drive))
            td.drivestr = entry["drivestr"]
            td.nbd_uri = entry["nbd_uri"]
            m = _NBD_UNIX_RE.match(td.nbd_uri or "")
            if m:
                info.unix_sockets.add(m.group("path"))
                nbd_paths[drive] = (m.group("path"), m.group("export"))

            source = parse_drive(drive, t.conf.get(drive, ""))
            if source is None:
                raise StorageError(msg=f"target exported unknown drive '{drive}'")
            t.volumes.volume_map[source["file"]] = td.volid or source["file"]
            self.logger.info("volume '%s' is '%s' on the target", source["file"], td.volid)

        replicated = t.volumes.filter(MigrationMode.ONLINE, True)
        if len(reply.get("replicated_volumes") or []) != len(replicated):
            raise StorageError(
                msg="number of replicated disks on source and target node do not match - target node too old?"
            )

        local_for: Dict[str, str] = {}
        for remote_path in info.all_sockets():
            local = tunnel.local_socket(Path(remote_path).name)
            self.logger.info("Setting up tunnel for '%s'", local)
            tunnel.forward_unix_socket(local, remote_path)
            local_for[remote_path] = local
        if local_for and not wait_for_sockets(local_for.values(), sleep=self.interrupt.sleep):
            raise TransportError(msg="Timeout, server socket(s) did not get ready")

        if info.proto == "unix":
            info.addr = local_for[info.addr]
        for drive, (remote_path, export) in nbd_paths.items():
            t.target_drives[drive].nbd_uri = f"nbd:unix:{local_for[remote_path]}:exportname={export}"
        return info

    def _qemu_at_least(self, major: int, minor: int) -> bool:
        version = (self.mon_cmd("query-version") or {}).get("qemu") or {}
        return (int(version.get("major", 0)), int(version.get("minor", 0))) >= (major, minor)

    def _start_mirrors(self, online: List[str]) -> None:
        t = self.task
        self.logger.info("starting storage migration")
        if len(t.target_drives) != len(online):
            raise StorageError(msg="The number of local disks does not match between the source and the destination.")

        jobs = t.block_jobs = BlockJobs(self.env.monitor, self.vmid, logger=self.logger, sleep=self.interrupt.sleep)
        for drive in sorted(t.target_drives):
            td = t.target_drives[drive]
            source = parse_drive(drive, t.conf.get(drive, "")) or {}
            vol = t.volumes.volumes.get(source.get("file", ""))
            self.logger.info("%s: start migration to %s", drive, td.nbd_uri)
            jobs.drive_mirror(
                drive,
                td.nbd_uri or "",
                bwlimit=vol.bwlimit if vol else None,
                bitmap=td.bitmap,
                completion=Completion.SKIP,
            )

        if self._qemu_at_least(8, 2):
            self.logger.info("switching mirror jobs to actively synced mode")
            jobs.switch_to_active_mode()

    def _set_migration_caps(self) -> None:
        self.logger.info("set migration capabilities")
        try:
            try:
                support = self.mon_cmd("query-proxmox-support") or {}
            except QMPError:
                support = {}
            enabled = {
                "auto-converge": True,
                "xbzrle": True,
                "dirty-bitmaps": bool(support.get("pbs-dirty-bitmap-migration")),
            }
            supported = self.mon_cmd("query-migrate-capabilities") or []
            caps = [
                {"capability": c["capability"], "state": bool(enabled.get(c["capability"]))}
                for c in supported
            ]
            self.mon_cmd("migrate-set-capabilities", {"capabilities": caps})
        except QMPError as e:
            self.logger.warning("%s", e)

    def migration_speed(self) -> int:
        """max-bandwidth in B/s: the lower of bwlimit and migrate_speed, else a fixed fallback."""
        t = self.task
        bwlimit = self.env.storage.get_bandwidth_limit(
            "migration",
            {v.sid for v in t.volumes.volumes.values()},
            override=self.opts.bwlimit,
        )
        # migrate_speed is in MiB/s, bwlimit in KiB/s
        speed = int(t.conf.get("migrate_speed") or 0) * 1024
        if bwlimit and speed:
            speed = min(bwlimit, speed)
        else:
            speed = speed or (bwlimit or 0)
        speed = speed or (self.opts.migrate_speed or 0) * 1024
        if speed:
            speed *= 1024
            self.logger.info("migration speed limit: %s/s", U.human_bytes(speed))
            return int(speed)
        return FALLBACK_MAX_BANDWIDTH

    def _set_migration_params(self) -> int:
        t = self.task
        params: Dict[str, Any] = {"max-bandwidth": self.migration_speed()}

        downtime = self.opts.migrate_downtime
        if t.conf.get("migrate_downtime") is not None:
            downtime = float(t.conf["migrate_downtime"])
        downtime_ms = int(downtime * 1000)
        self.logger.info("migration downtime limit: %d ms", downtime_ms)
        params["downtime-limit"] = downtime_ms

        # xbzrle cache: 10% of guest memory
        cachesize = U.round_powerof2(int(get_current_memory(t.conf) * 1048576 / 10))
        self.logger.info("migration cachesize: %s", U.human_bytes(cachesize))
        params["xbzrle-cache-size"] = cachesize

        self.logger.info("set migration parameters")
        try:
            self.mon_cmd("migrate-set-parameters", params)
        except QMPError as e:
            self.logger.info("migrate-set-parameters error: %s", e)
        return downtime_ms

    def execute_cleanup(self, err: BaseException) -> None:
        t = self.task
        self.logger.info("aborting migration - cleanup resources")

        if t.running and t.livemigration:
            self.logger.info("migrate_cancel")
            try:
                self.mon_cmd("migrate_cancel")
            except QMPError as e:
                self.logger.info("migrate_cancel error: %s", e)

            status = None
            try:
                status = (self.mon_cmd("query-status") or {}).get("status")
                if not status:
                    raise QMPError(msg="no 'status' in result")
            except QMPError as e:
                self.logger.error("query-status error: %s", e)
            # converged guests end up in postmigrate; there is no way back to paused from there
            if status == "postmigrate":
                if not t.vm_was_paused:
                    try:
                        self.mon_cmd("cont")
                    except QMPError as e:
                        self.logger.error("resuming VM failed: %s", e)
                else:
                    self.logger.error("VM was paused, but ended in postmigrate state")

        t.conf.pop("lock", None)
        try:
            self.env.config_store.write_config(self.vmid, t.conf)
        except (KvMigrateError, OSError) as e:
            self.logger.error("%s", e)

        if t.block_jobs:
            # rollback waits ignore pending interrupts
            t.block_jobs.sleep = self.interrupt.plain_sleep
            try:
                t.block_jobs.cancel_all()
            except KvMigrateError as e:
                self.logger.error("%s", e)

        try:
            cleanup_bitmaps(self.vmid, t.target_drives, self.env.monitor, self.logger)
        except KvMigrateError as e:
            self.logger.error("%s", e)

        tunnel = t.tunnel
        if self.target_started and tunnel is not None and not tunnel.closed:
            try:
                tunnel.write("stop", timeout=10, vmid=t.remote_vmid)
            except KvMigrateError as e:
                self._log_err("%s", e)

        # target disks stay in use until the target VM has stopped
        self._cleanup_remote_disks()

        if tunnel is not None and not tunnel.closed:
            try:
                tunnel.finish()
            except KvMigrateError as e:
                self._log_err("%s", e)

    def _cleanup_remote_disks(self) -> None:
        t = self.task
        tunnel = t.tunnel
        if tunnel is None or tunnel.closed:
            return
        for source, target in sorted(t.volumes.volume_map.items()):
            vol = t.volumes.volumes.get(source)
            if vol is not None and vol.replicated:
                continue
            try:
                tunnel.write("free", timeout=60, volid=target)
            except KvMigrateError as e:
                self._log_err("%s", e)

    # ----------------------------------------------------------------------------------
    # Finalize
    # ----------------------------------------------------------------------------------

    def finalize(self) -> None:
        t = self.task
        env = self.env
        tunnel = t.tunnel

        if t.storage_migration and t.block_jobs is not None:
            # block-job-cancel on a ready mirror detaches the source from the NBD export
            try:
                t.block_jobs.monitor_jobs(Completion.CANCEL)
            except KvMigrateError as e:
                raise StorageError(msg=f"Failed to complete storage migration: {e.msg}", cause=e)

        self.commit()

        conf = t.conf
        oldconf = copy.deepcopy(conf)

        if t.volumes.volume_map and not t.remote:
            for drive in t.target_drives:
                conf.pop(drive, None)
            update_volume_ids(conf, t.volumes.volume_map)
            for drive, td in t.target_drives.items():
                if td.drivestr:
                    conf[drive] = td.drivestr
            self._step("writing config failed", lambda: env.config_store.write_config(self.vmid, conf))

        if not t.remote:
            if t.is_replicated:
                self._step(
                    "transferring replication state failed",
                    lambda: env.replication.transfer_state(self.vmid, t.target_node),
                )
            self._step(
                "moving config to node '%s' failed" % t.target_node,
                lambda: env.config_store.move_config_to_node(self.vmid, t.target_node),
            )
            if t.is_replicated:
                self._step(
                    "switching replication job target failed",
                    lambda: env.replication.switch_job_target(self.vmid, env.node, t.target_node),
                )

        if t.livemigration and tunnel is not None:
            if t.stopnbd:
                self.logger.info("stopping NBD storage migration server on target.")
                self._step("nbdstop failed", lambda: tunnel.write("nbdstop", timeout=30, vmid=t.remote_vmid))

            if not t.vm_was_paused:
                self._step("resume failed", lambda: tunnel.write("resume", timeout=30, vmid=t.remote_vmid))

            agent = parse_net(str(conf.get("agent") or ""), "enabled")
            if t.storage_migration and agent.get("fstrim_cloned_disks") in ("1", "on", "yes") and t.running:
                if not t.vm_was_paused:
                    self.logger.info("issuing guest fstrim")
                    self._step("fstrim failed", lambda: tunnel.write("fstrim", timeout=600, vmid=t.remote_vmid))
                else:
                    self.logger.info("skipping guest fstrim, because VM is paused")

        # the config lives on the target now, so skip the ownership check
        if t.running:
            self._step(
                "stopping vm failed",
                lambda: env.supervisor.stop(self.vmid, skiplock=True, nocheck=True),
            )
            self._step(
                "Cleanup after stopping VM failed",
                lambda: env.supervisor.stop_cleanup(self.vmid, oldconf),
            )

        if not t.remote:
            for volid in t.volumes.filter(replicated=False):
                self._step("removing local copy of '%s' failed" % volid, lambda v=volid: env.storage.vdisk_free(v))
        else:
            conf.pop("lock", None)
            self._step("removing migrate lock failed", lambda: env.config_store.write_config(self.vmid, conf))

        if tunnel is not None and not tunnel.closed:
            self._step("failed to clear migrate lock", lambda: tunnel.write("unlock", timeout=10, vmid=t.remote_vmid))
            self._step("closing tunnel failed", tunnel.finish)

    def _step(self, what: str, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except (KvMigrateError, OSError) as e:
            self._log_err("%s - %s", what, e)


def migrate(
    vmid: int,
    target_node: str,
    options: MigrationOptions,
    env: Environment,
    logger: Any = None,
    *,
    tunnel_factory: Optional[TunnelFactory] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Migrate guest `vmid` to `target_node` and return the task id.

    Raises MigrationError after rollback; a migration that finished with
    cleanup problems returns normally and logs so.
    """
    task = MigrationTask(vmid=vmid, target_node=target_node, options=options, source_node=env.node)
    base = logger or logging.getLogger("kvmigrate.migrate")
    log = Log.bind(base, vmid=vmid, target=target_node) if isinstance(base, logging.Logger) else base
    start = time.monotonic()

    log.info("task %s started", task.upid)
    try:
        with env.config_store.lock_config(vmid):
            QemuMigrate(env, task, logger=log, tunnel_factory=tunnel_factory, sleep=sleep).migrate()
    except (KvMigrateError, OSError) as e:
        msg = e.msg if isinstance(e, KvMigrateError) else str(e)
        log.error("migration aborted (duration %s): %s", U.render_duration(time.monotonic() - start), msg)
        log.error("TASK ERROR: %s", msg)
        raise MigrationError(
            code=e.code if isinstance(e, KvMigrateError) else 1,
            msg=msg,
            cause=e,
            context={"vmid": vmid, "target": target_node, "phase": task.phase.value, "upid": task.upid},
        )

    duration = U.render_duration(time.monotonic() - start)
    if task.errors:
        log.error("migration finished with problems (duration %s)", duration)
    else:
        log.info("migration finished successfully (duration %s)", duration)
    return task.upid
