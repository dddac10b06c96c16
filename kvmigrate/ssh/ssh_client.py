# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from ..core.exceptions import TransportError
from ..core.utils import U
from .ssh_config import SSHConfig

_TRANSIENT_MARKERS = (
    "connection timed out",
    "connection refused",
    "no route to host",
    "network is unreachable",
    "temporary failure in name resolution",
    "kex_exchange_identification",
    "connection reset by peer",
    "broken pipe",
)


@dataclass(frozen=True)
class SSHResult:
    rc: int
    stdout: str
    stderr: str
    argv: List[str]
    seconds: float


class SSHClient:
    """
    Non-interactive ssh/rsync helper for talking to the target node.
    """

    def __init__(self, logger: Any, cfg: SSHConfig):
        self.logger = logger
        self.cfg = cfg

    def _run_local(self, argv: Sequence[str], *, capture: bool, timeout: Optional[float]) -> SSHResult:
        """Run a local ssh/rsync command. Never raises on rc != 0."""
        t0 = time.monotonic()
        cp = U.run_cmd(self.logger, list(argv), check=False, capture=capture, timeout=timeout)
        return SSHResult(
            rc=int(cp.returncode or 0),
            stdout=(cp.stdout or "") if capture else "",
            stderr=(cp.stderr or "") if capture else "",
            argv=list(argv),
            seconds=time.monotonic() - t0,
        )

    @staticmethod
    def looks_transient(res: Optional[SSHResult], exc: Optional[BaseException] = None) -> bool:
        """
        Retry only on transport failures (ssh exit 255 or known connection
        errors), never on a failing remote command.
        """
        if isinstance(exc, subprocess.TimeoutExpired):
            return True
        if res is None:
            return False
        if res.rc == 255:
            return True
        s = (res.stderr or "").lower()
        return any(m in s for m in _TRANSIENT_MARKERS)

    @staticmethod
    def _raise_on_failure(res: SSHResult, desc: str) -> None:
        if res.rc == 0:
            return
        raise subprocess.CalledProcessError(
            res.rc,
            res.argv,
            output=res.stdout,
            stderr=f"{desc} failed (rc={res.rc}, {res.seconds:.2f}s): {(res.stderr or '').strip()}",
        )

    def run(
        self,
        argv: Sequence[str],
        *,
        capture: bool = True,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> SSHResult:
        """
        Run `argv` on the target node. Arguments are shell-quoted so the
        remote shell sees them verbatim.

        Transport failures are retried `cfg.retries` times.
        """
        remote = " ".join(shlex.quote(a) for a in argv)
        full = self.cfg.base_cmd() + ["--", remote]
        attempts = 1 + self.cfg.retries

        for attempt in range(1, attempts + 1):
            try:
                res = self._run_local(full, capture=capture, timeout=timeout)
            except subprocess.TimeoutExpired as e:
                if attempt < attempts:
                    self.logger.warning("ssh timed out (attempt %d/%d); retrying: %s", attempt, attempts, e)
                    time.sleep(self.cfg.retry_sleep)
                    continue
                raise
            if attempt < attempts and self.looks_transient(res):
                self.logger.warning(
                    "SSH transport issue (attempt %d/%d, rc=%d); retrying in %.1fs",
                    attempt,
                    attempts,
                    res.rc,
                    self.cfg.retry_sleep,
                )
                time.sleep(self.cfg.retry_sleep)
                continue
            if check:
                self._raise_on_failure(res, "ssh")
            return res

        raise RuntimeError("ssh made no attempts")

    def check(self) -> None:
        """Connectivity probe used before a secure migration."""
        try:
            res = self.run(["/bin/true"], timeout=self.cfg.connect_timeout + 5, check=False)
        except subprocess.TimeoutExpired as e:
            raise TransportError(msg=f"Can't connect to destination address using public key ({self.cfg.host})", cause=e)
        if res.rc != 0:
            raise TransportError(
                msg=f"Can't connect to destination address using public key ({self.cfg.host})",
                context={"rc": res.rc, "stderr": res.stderr.strip()},
            )
        self.logger.debug("SSH connectivity OK (%s)", self.cfg.describe())

    def rsync_args(self, *, bwlimit_kib: Optional[int] = None) -> List[str]:
        shell_parts = ["ssh"] + self.cfg.common_opts()
        args = [
            "-a",
            "--sparse",
            "--numeric-ids",
            "--info=progress2",
            "-e",
            " ".join(shlex.quote(x) for x in shell_parts),
        ]
        if bwlimit_kib:
            args.append(f"--bwlimit={int(bwlimit_kib)}")
        return args

    def copy_to(self, local: str, remote: str, *, bwlimit_kib: Optional[int] = None) -> None:
        parent = remote.rstrip("/").rsplit("/", 1)[0]
        if parent:
            self.run(["mkdir", "-p", "--", parent], capture=True, timeout=30)
        argv = ["rsync"] + self.rsync_args(bwlimit_kib=bwlimit_kib) + [local, self.cfg.rsync_target(remote)]
        res = self._run_local(argv, capture=False, timeout=None)
        self._raise_on_failure(res, "rsync")
        self.logger.debug("Copied %s -> %s:%s", local, self.cfg.host, remote)

    def exists(self, remote: str) -> bool:
        return self.run(["test", "-e", remote], check=False, timeout=30).rc == 0

    def rm_f(self, remote: str) -> None:
        self.run(["rm", "-f", "--", remote], timeout=60)
