# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/env/replication.py
from __future__ import annotations

from typing import Any, Mapping, Optional, Set

from ..core.exceptions import KvMigrateError
from .interfaces import Replication, ReplicationJob


class NoReplication(Replication):
    """Default for nodes without a replication subsystem: no jobs, nothing replicated."""

    def find_local_job(self, vmid: int, target: str) -> Optional[ReplicationJob]:
        return None

    def has_jobs(self, vmid: int) -> bool:
        return False

    def replicatable_volumes(self, vmid: int, conf: Mapping[str, Any]) -> Set[str]:
        return set()

    def run_replication(self, vmid: int, job: ReplicationJob, logger: Any) -> Set[str]:
        raise KvMigrateError(msg=f"no replication configured for VM {vmid}")

    def transfer_state(self, vmid: int, target: str) -> None:
        return None

    def switch_job_target(self, vmid: int, source: str, target: str) -> None:
        return None
