# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/migrate/convergence.py
"""
Polling of a running memory migration until it completes.

The monitor only talks to two callables (`query` returns the
`query-migrate` reply, `set_downtime` re-applies the downtime limit), so it
runs the same against a real monitor socket or a scripted sequence of
replies.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Mapping, Optional

from ..core.exceptions import ConvergenceError, KvMigrateError
from ..core.utils import U

logger = logging.getLogger(__name__)

_KNOWN_STATUS = ("active", "completed", "failed", "cancelled")


@dataclass(frozen=True)
class ConvergencePolicy:
    poll_interval: float = 1.0
    fast_poll_interval: float = 0.1
    # log every Nth poll once polling at the fast rate
    fast_log_every: int = 10
    # consecutive non-shrinking polls tolerated before the downtime doubles
    stall_threshold: int = 5
    max_query_failures: int = 5
    query_retry_delay: float = 1.0
    setup_delay: float = 1.0

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "ConvergencePolicy":
        if not data:
            return cls()
        known = {f.name: f.type for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = str(key).replace("-", "_")
            if name not in known:
                raise ValueError(f"unknown convergence setting '{key}'")
            kwargs[name] = int(value) if known[name] == "int" else float(value)
        return cls(**kwargs)


@dataclass
class ConvergenceResult:
    status: str
    downtime_limit_ms: int
    polls: int
    stats: Dict[str, Any]


class ConvergenceMonitor:
    def __init__(
        self,
        query: Callable[[], Dict[str, Any]],
        set_downtime: Callable[[int], None],
        *,
        policy: Optional[ConvergencePolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Any = logger,
    ):
        self.query = query
        self.set_downtime = set_downtime
        self.policy = policy or ConvergencePolicy()
        self.sleep = sleep
        self.clock = clock
        self.logger = logger

    def run(self, downtime_ms: float, *, migrate_error: Optional[str] = None) -> ConvergenceResult:
        """
        Poll until the migration leaves the `active` state.

        Returns on `completed`; raises ConvergenceError on `failed`,
        `cancelled`, an unknown status, or too many failed queries.
        `migrate_error` is the error of the `migrate` command itself, reported
        if the first real status cannot be parsed.
        """
        p = self.policy
        start = self.clock()
        interval = p.poll_interval
        last_transferred = 0
        last_vfio = 0
        last_remaining: Optional[int] = None
        stall = 0
        failures = 0
        i = 0

        while True:
            i += 1
            avg = last_transferred / i if last_transferred else 0

            self.sleep(interval)

            try:
                stat = self.query() or {}
            except KvMigrateError as e:
                failures += 1
                self.logger.info("query migrate failed: %s", e)
                if failures <= p.max_query_failures:
                    self.sleep(p.query_retry_delay)
                    continue
                raise ConvergenceError(msg="too many query migrate failures - aborting", cause=e)

            status = stat.get("status")
            if status == "setup":
                self.sleep(p.setup_delay)
                continue
            if status not in _KNOWN_STATUS:
                if migrate_error:
                    raise ConvergenceError(msg=migrate_error)
                raise ConvergenceError(msg=f"unable to parse migration status '{status}' - aborting")
            migrate_error = None
            failures = 0

            ram = stat.get("ram") or {}
            transferred = ram.get("transferred") or 0
            vfio = (stat.get("vfio") or {}).get("transferred") or 0

            if status == "completed":
                self._log_completed(stat, transferred, vfio, self.clock() - start)
                return ConvergenceResult(status, int(downtime_ms), i, stat)

            if status in ("failed", "cancelled"):
                message = f"{status} - {stat['error-desc']}" if stat.get("error-desc") else status
                self.logger.info("migration status error: %s", message)
                raise ConvergenceError(msg="aborting", context={"status": status, "error": stat.get("error-desc")})

            if transferred != last_transferred or vfio != last_vfio:
                remaining = ram.get("remaining") or 0
                total = ram.get("total") or 0
                page_size = ram.get("page-size") or 0
                speed = (ram.get("pages-per-second") or 0) * page_size
                dirty_rate = (ram.get("dirty-pages-rate") or 0) * page_size

                if avg and remaining < avg:
                    interval = p.fast_poll_interval
                should_log = interval > p.fast_poll_interval or i % p.fast_log_every == 0

                progress = "transferred %s of %s VM-state, %s/s" % (
                    U.human_bytes(transferred),
                    U.human_bytes(total),
                    U.human_bytes(speed),
                )
                if vfio > 0:
                    progress += f" (+ {U.human_bytes(vfio)} VFIO-state)"
                if dirty_rate > speed:
                    progress += f", VM dirties lots of memory: {U.human_bytes(dirty_rate)}/s"
                if should_log:
                    self.logger.info("migration active, %s", progress)
                    self._log_xbzrle(stat)

                if remaining == 0 or (last_remaining is not None and remaining >= last_remaining):
                    stall += 1
                else:
                    stall = 0
                last_remaining = remaining

                if stall > p.stall_threshold:
                    stall = 0
                    downtime_ms *= 2
                    self.logger.info("auto-increased downtime to continue migration: %d ms", int(downtime_ms))
                    try:
                        self.set_downtime(int(downtime_ms))
                    except KvMigrateError as e:
                        self.logger.info("migrate-set-parameters error: %s", e)

            last_transferred = transferred
            last_vfio = vfio

    def _log_completed(self, stat: Dict[str, Any], transferred: int, vfio: int, delay: float) -> None:
        ram = stat.get("ram") or {}
        if delay > 0:
            avg_speed = U.human_bytes((ram.get("total") or 0) / delay)
            self.logger.info(
                "average migration speed: %s/s - downtime %s ms", avg_speed, stat.get("downtime") or 0
            )
        if transferred > 0 or vfio > 0:
            summary = f"transferred {U.human_bytes(transferred)} VM-state"
            if vfio > 0:
                summary += f" (+ {U.human_bytes(vfio)} VFIO-state)"
            self.logger.info("migration completed, %s", summary)

    def _log_xbzrle(self, stat: Dict[str, Any]) -> None:
        xbzrle = stat.get("xbzrle-cache") or {}
        nbytes, pages = xbzrle.get("bytes"), xbzrle.get("pages")
        if not (nbytes or pages):
            return
        msg = f"send updates to {pages} pages in {U.human_bytes(nbytes)} encoded memory"
        if xbzrle.get("cache-miss-rate"):
            msg += ", cache-miss %.2f%%" % (xbzrle["cache-miss-rate"] * 100)
        if xbzrle.get("overflow"):
            msg += f", overflow {xbzrle['overflow']}"
        self.logger.info("xbzrle: %s", msg)
