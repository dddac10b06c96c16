# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/storage/mirror.py
"""
Block-mirror jobs from running source disks to NBD exports on the target.

Jobs are started with auto-dismiss disabled so a failed job stays visible as
`concluded` and its error can be reported; every concluded job is dismissed
here.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..core.exceptions import KvMigrateError, QMPError, StorageError
from ..core.utils import U
from ..qmp.monitor import Monitor

logger = logging.getLogger(__name__)


class Completion(str, Enum):
    COMPLETE = "complete"  # block-job-complete: switch the source to the target
    CANCEL = "cancel"  # block-job-cancel on a ready job: target stays consistent, source keeps its disk
    SKIP = "skip"  # return with every job ready
    AUTO = "auto"  # wait until the jobs disappear on their own


@dataclass
class MirrorJob:
    device: str
    ready: bool = False
    complete: bool = False
    cancel: bool = False


class BlockJobs:
    def __init__(
        self,
        monitor: Monitor,
        vmid: int,
        *,
        logger: Any = logger,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        op: str = "mirror",
        max_complete_attempts: int = 300,
    ):
        self.monitor = monitor
        self.vmid = vmid
        self.logger = logger
        self.sleep = sleep
        self.clock = clock
        self.op = op
        self.max_complete_attempts = max_complete_attempts
        self.jobs: Dict[str, MirrorJob] = {}

    def __bool__(self) -> bool:
        return bool(self.jobs)

    def _query(self) -> Dict[str, Dict[str, Any]]:
        stats = self.monitor.mon_cmd(self.vmid, "query-block-jobs") or []
        return {s["device"]: s for s in stats if s.get("type", self.op) == self.op}

    def _handle_concluded(self, job_id: str, info: Dict[str, Any]) -> None:
        try:
            self.monitor.mon_cmd(self.vmid, "job-dismiss", {"id": job_id})
        except QMPError as e:
            self.logger.warning("%s: failed to dismiss job - %s", job_id, e)
        if info.get("error"):
            raise StorageError(msg=f"{job_id}: {info['error']} (io-status: {info.get('io-status')})")

    def drive_mirror(
        self,
        drive: str,
        nbd_uri: str,
        *,
        bwlimit: Optional[int] = None,
        bitmap: Optional[str] = None,
        completion: Completion = Completion.SKIP,
    ) -> None:
        """Mirror `drive` into the NBD export and wait according to `completion`."""
        device = f"drive-{drive}"
        self.jobs[device] = MirrorJob(device)
        opts: Dict[str, Any] = {
            "device": device,
            "sync": "full",
            "target": nbd_uri,
            "auto-dismiss": False,
            "mode": "existing",
            "format": "nbd",
        }
        if bitmap:
            opts["sync"] = "incremental"
            opts["bitmap"] = bitmap
            self.logger.info("drive mirror re-using dirty bitmap '%s'", bitmap)
        if bwlimit:
            opts["speed"] = int(bwlimit) * 1024
            self.logger.info("drive mirror is starting for %s with bandwidth limit: %s KB/s", device, bwlimit)
        else:
            self.logger.info("drive mirror is starting for %s", device)

        try:
            self.monitor.mon_cmd(self.vmid, "drive-mirror", opts, timeout=10)
        except QMPError as e:
            try:
                self.cancel_all()
            except KvMigrateError as ce:
                self.logger.warning("%s", ce)
            raise StorageError(msg=f"mirroring error: {e}", cause=e)

        self.monitor_jobs(completion)

    def monitor_jobs(self, completion: Completion = Completion.COMPLETE) -> None:
        try:
            self._monitor_loop(completion)
        except KvMigrateError as e:
            try:
                self.cancel_all()
            except KvMigrateError as ce:
                self.logger.warning("%s", ce)
            raise StorageError(msg=f"block job ({self.op}) error: {e.msg}", cause=e)

    def _monitor_loop(self, completion: Completion) -> None:
        err_complete = 0
        start = self.clock()
        while True:
            if err_complete > self.max_complete_attempts:
                raise StorageError(msg=f"block job ('{self.op}') timed out")

            running = self._query()
            now = self.clock()
            ready_count = 0

            for job_id in sorted(self.jobs):
                job = self.jobs[job_id]
                info = running.get(job_id)
                vanished = info is None
                if (job.complete and vanished) or (vanished and completion is Completion.AUTO):
                    self.logger.info("%s: %s-job finished", job_id, self.op)
                    del self.jobs[job_id]
                    continue
                if info is None:
                    raise StorageError(msg=f"{job_id}: '{self.op}' has been cancelled")
                if info.get("status") == "concluded":
                    self._handle_concluded(job_id, info)

                total = info.get("len") or 0
                if total:
                    transferred = info.get("offset") or 0
                    status = "transferred %s of %s (%.2f%%) in %s" % (
                        U.human_bytes(transferred),
                        U.human_bytes(total),
                        transferred * 100 / total,
                        U.render_duration(now - start),
                    )
                    if info.get("ready"):
                        status += ", still busy" if info.get("busy") else ", ready"
                    if not job.ready:
                        self.logger.info("%s: %s", job_id, status)
                    job.ready = bool(info.get("ready"))
                if info.get("ready"):
                    ready_count += 1

            if not self.jobs:
                return

            if ready_count == len(self.jobs):
                self.logger.info("all '%s' jobs are ready", self.op)
                if completion in (Completion.SKIP, Completion.AUTO):
                    return
                command = "block-job-complete" if completion is Completion.COMPLETE else "block-job-cancel"
                for job_id in sorted(self.jobs):
                    job = self.jobs[job_id]
                    if job.complete:
                        continue
                    self.logger.info("%s: Completing block job...", job_id)
                    try:
                        self.monitor.mon_cmd(self.vmid, command, {"device": job_id})
                    except QMPError as e:
                        if "cannot be completed" in e.msg:
                            self.logger.info("%s: block job cannot be completed, trying again.", job_id)
                            err_complete += 1
                            continue
                        raise StorageError(msg=f"{job_id}: block job cannot be completed - {e.msg}", cause=e)
                    self.logger.info("%s: Completed successfully.", job_id)
                    job.complete = True
                    if completion is Completion.CANCEL:
                        job.cancel = True
            self.sleep(1)

    def cancel_all(self) -> None:
        """Abort every tracked job and wait until QEMU has dropped them."""
        for job_id, job in sorted(self.jobs.items()):
            self.logger.info("%s: Cancelling block job", job_id)
            try:
                self.monitor.mon_cmd(self.vmid, "block-job-cancel", {"device": job_id})
            except QMPError as e:
                self.logger.debug("%s: block-job-cancel: %s", job_id, e)
            job.cancel = True

        while self.jobs:
            stats = self.monitor.mon_cmd(self.vmid, "query-block-jobs") or []
            running = {s["device"]: s for s in stats}
            for job_id in sorted(self.jobs):
                info = running.get(job_id)
                if info and info.get("status") == "concluded":
                    try:
                        self._handle_concluded(job_id, info)
                    except StorageError as e:
                        self.logger.warning("%s", e)
                if self.jobs[job_id].cancel and info is None:
                    self.logger.info("%s: Done.", job_id)
                    del self.jobs[job_id]
            if self.jobs:
                self.sleep(1)

    def switch_to_active_mode(self) -> None:
        """Mirror guest writes synchronously from now on (copy-mode write-blocking)."""
        switching = set()
        for job_id in sorted(self.jobs):
            self.logger.info("%s: switching to actively synced mode", job_id)
            try:
                self.monitor.mon_cmd(
                    self.vmid,
                    "block-job-change",
                    {"id": job_id, "type": "mirror", "copy-mode": "write-blocking"},
                )
            except QMPError as e:
                raise StorageError(msg=f"could not switch mirror job {job_id} to active mode - {e.msg}", cause=e)
            switching.add(job_id)

        while switching:
            stats = self.monitor.mon_cmd(self.vmid, "query-block-jobs") or []
            running = {s["device"]: s for s in stats}
            for job_id in sorted(switching):
                info = running.get(job_id)
                if info is None:
                    raise StorageError(msg=f"{job_id}: vanished while switching to active mode")
                if info.get("status") == "concluded":
                    self._handle_concluded(job_id, info)
                    raise StorageError(msg=f"{job_id}: expected job to have failed, but no error was set")
                if info.get("actively-synced"):
                    self.logger.info("%s: successfully switched to actively synced mode", job_id)
                    switching.discard(job_id)
            if switching:
                self.sleep(1)
