# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _clamp_exit_code(code: int) -> int:
    if code < 0:
        return 1
    if code > 255:
        return 255
    return code


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


_SECRET_KEY_PARTS = ("pass", "secret", "token", "ticket", "cookie", "auth", "fingerprint", "key")


def _is_secret_key(k: str) -> bool:
    ks = (k or "").lower()
    return any(p in ks for p in _SECRET_KEY_PARTS)


def _format_context_compact(ctx: Dict[str, Any]) -> str:
    parts = []
    for k in sorted(ctx.keys()):
        if _is_secret_key(str(k)):
            parts.append(f"{k}=<redacted>")
        else:
            parts.append(f"{k}={ctx.get(k)!r}")
    return ", ".join(parts)


@dataclass(eq=False)
class KvMigrateError(Exception):
    """
    Base error of the migration engine.

    `msg` is what ends up in the task log; `context` carries structured
    details (vmid, peer, volid, ...) for JSON reporting.
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _clamp_exit_code(_safe_int(self.code, default=1))
        self.msg = _one_line(self.msg) or self.__class__.__name__
        super().__init__(self.msg)
        self.args = (self.msg,)

    def with_context(self, **ctx: Any) -> "KvMigrateError":
        if self.context is None:
            self.context = {}
        self.context.update(ctx)
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        parts = [self.msg or self.__class__.__name__]
        if include_context and self.context:
            parts.append(f"[{_one_line(_format_context_compact(self.context))}]")
        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")
        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message()

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "context": self.context or {},
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(KvMigrateError):
    """User-facing fatal error; top-level main() exits with its code."""
    pass


class ValidationError(KvMigrateError):
    """
    Raised during Prepare. Nothing has been changed on either node yet, so
    callers can report it without running any rollback.
    """
    pass


class TransportError(KvMigrateError):
    """Tunnel could not be established or a forwarded socket never appeared."""
    pass


class TunnelError(TransportError):
    """A tunnel command returned an error reply or the tunnel died."""
    pass


class TunnelCompatibilityError(TransportError):
    pass


@dataclass(eq=False)
class QMPError(KvMigrateError):
    """Control-channel failure. Scoped to a single peer connection."""
    timeout: bool = False


class QMPTimeoutError(QMPError):
    def __post_init__(self) -> None:
        self.timeout = True
        super().__post_init__()


class StorageError(KvMigrateError):
    pass


class ConvergenceError(KvMigrateError):
    """Live memory transfer failed, was cancelled or could not be polled."""
    pass


class MigrationError(KvMigrateError):
    """Terminal failure of a migration task (after rollback)."""
    pass


class Interrupted(KvMigrateError):
    """SIGINT/SIGTERM observed at a checkpoint."""
    pass


def wrap_fatal(msg: str, exc: Optional[BaseException] = None, code: int = 1, **context: Any) -> Fatal:
    return Fatal(code=code, msg=msg, cause=exc, context=context or None)


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause
    """
    if isinstance(e, KvMigrateError):
        return e.user_message(include_context=(verbose >= 1), include_cause=(verbose >= 2))
    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
