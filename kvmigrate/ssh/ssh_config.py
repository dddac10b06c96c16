# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# kvmigrate/ssh/ssh_config.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence


def _is_probably_ipv6(host: str) -> bool:
    return ":" in (host or "")


def _bracket_host(host: str) -> str:
    # scp/rsync need [v6] bracket form
    h = (host or "").strip()
    if _is_probably_ipv6(h) and not (h.startswith("[") and h.endswith("]")):
        return f"[{h}]"
    return h


def _clean_opt(opt: str) -> str:
    return " ".join((opt or "").replace("\r", " ").replace("\n", " ").split())


@dataclass(frozen=True)
class SSHConfig:
    """
    Connection settings for reaching the target node.

    Used for the command tunnel, the connectivity probe and the rsync-based
    offline disk copy. All invocations are non-interactive.
    """
    host: str
    user: str = "root"
    port: int = 22
    identity: Optional[Path] = None
    ssh_opts: List[str] = field(default_factory=list)

    connect_timeout: int = 10
    keepalive_interval: int = 30
    keepalive_count: int = 3

    jump_host: Optional[str] = None
    strict_host_key_checking: bool = True
    known_hosts_file: Optional[Path] = None
    batch_mode: bool = True

    # multiplexing; the tunnel runs its own master socket
    control_master: bool = False
    control_path: Optional[Path] = None
    control_persist_s: int = 60

    retries: int = 0
    retry_sleep: float = 1.0

    def __post_init__(self) -> None:
        host = (self.host or "").strip()
        if not host:
            raise ValueError("SSHConfig.host must not be empty")
        object.__setattr__(self, "host", host)

        user = (self.user or "").strip()
        if not user:
            raise ValueError("SSHConfig.user must not be empty")
        object.__setattr__(self, "user", user)

        if self.identity is not None:
            object.__setattr__(self, "identity", Path(self.identity).expanduser())
        if self.known_hosts_file is not None:
            object.__setattr__(self, "known_hosts_file", Path(self.known_hosts_file).expanduser())
        if self.control_path is not None:
            object.__setattr__(self, "control_path", Path(self.control_path))
        if self.jump_host is not None:
            object.__setattr__(self, "jump_host", self.jump_host.strip() or None)

        cleaned: List[str] = []
        for opt in self.ssh_opts:
            o = _clean_opt(opt)
            if o and o not in cleaned:
                cleaned.append(o)
        object.__setattr__(self, "ssh_opts", cleaned)

        if self.port <= 0 or self.port > 65535:
            raise ValueError(f"Invalid SSH port: {self.port}")
        for name, v in (
            ("connect_timeout", self.connect_timeout),
            ("keepalive_interval", self.keepalive_interval),
            ("keepalive_count", self.keepalive_count),
            ("control_persist_s", self.control_persist_s),
            ("retries", self.retries),
        ):
            if v < 0:
                raise ValueError(f"{name} must be >= 0 (got {v})")

    @classmethod
    def from_mapping(cls, host: str, data: Optional[Mapping[str, Any]] = None) -> "SSHConfig":
        """Build from the `ssh:` section of the YAML config; unknown keys are ignored."""
        known = set(cls.__dataclass_fields__)
        kwargs: Dict[str, Any] = {k: v for k, v in dict(data or {}).items() if k in known and k != "host"}
        return cls(host=host, **kwargs)

    def with_control_path(self, path: Path) -> "SSHConfig":
        return replace(self, control_master=True, control_path=path)

    def target(self) -> str:
        return f"{self.user}@{_bracket_host(self.host)}"

    def _append_hostkey_policy(self, cmd: List[str]) -> None:
        cmd += ["-o", "StrictHostKeyChecking=" + ("yes" if self.strict_host_key_checking else "no")]
        if self.known_hosts_file is not None:
            cmd += ["-o", f"UserKnownHostsFile={self.known_hosts_file}"]
        elif not self.strict_host_key_checking:
            cmd += ["-o", "UserKnownHostsFile=/dev/null"]

    def _append_mux(self, cmd: List[str]) -> None:
        if not self.control_master:
            return
        cmd += ["-o", "ControlMaster=auto", "-o", f"ControlPersist={self.control_persist_s}s"]
        cmd += ["-o", f"ControlPath={self.control_path or '~/.ssh/cm-%C'}"]

    def common_opts(self) -> List[str]:
        """Options shared by ssh and the ssh invoked by rsync (-e)."""
        cmd: List[str] = [
            "-p", str(self.port),
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", f"ServerAliveInterval={self.keepalive_interval}",
            "-o", f"ServerAliveCountMax={self.keepalive_count}",
        ]
        if self.batch_mode:
            cmd += ["-o", "BatchMode=yes"]
        self._append_hostkey_policy(cmd)
        if self.identity:
            cmd += ["-i", str(self.identity)]
        if self.jump_host:
            cmd += ["-J", self.jump_host]
        self._append_mux(cmd)
        for opt in self.ssh_opts:
            cmd += ["-o", opt]
        return cmd

    def base_cmd(self) -> List[str]:
        return ["ssh"] + self.common_opts() + [self.target()]

    def remote_cmd(self, argv: Sequence[str]) -> List[str]:
        return self.base_cmd() + ["--"] + list(argv)

    def control_cmd(self, op: str, *extra: str) -> List[str]:
        """`ssh -S <ctl> -O <op>` against the running master socket."""
        if not self.control_path:
            raise ValueError("control_cmd requires a control_path")
        return ["ssh", "-S", str(self.control_path), "-O", op, *extra, self.target()]

    def rsync_target(self, remote_path: str) -> str:
        return f"{self.target()}:{remote_path}"

    def describe(self) -> str:
        parts = [f"{self.user}@{self.host}:{self.port}"]
        if self.identity:
            parts.append(f"key={self.identity}")
        if self.jump_host:
            parts.append(f"via={self.jump_host}")
        parts.append("hostkey=strict" if self.strict_host_key_checking else "hostkey=off")
        if self.control_master:
            parts.append("mux")
        return " ".join(parts)
