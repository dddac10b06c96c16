# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# kvmigrate/core/utils.py
from __future__ import annotations

import json
import math
import os
import shlex
import subprocess
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from rich.progress import (
    BarColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from .exceptions import Fatal


class U:
    @staticmethod
    def die(logger: Any, msg: str, code: int = 1) -> None:
        logger.error(msg)
        raise Fatal(code=code, msg=msg)

    @staticmethod
    def ensure_dir(p: Path) -> None:
        p.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def which(prog: str) -> Optional[str]:
        from shutil import which as _which
        return _which(prog)

    @staticmethod
    def json_dump(obj: Any) -> str:
        try:
            return json.dumps(obj, indent=2, sort_keys=True, default=str)
        except (TypeError, ValueError):
            return repr(obj)

    @staticmethod
    def human_bytes(n: Optional[Union[int, float]]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]:
            if x < 1024 or unit == "PiB":
                return f"{x:.2f} {unit}" if unit != "B" else f"{int(x)} {unit}"
            x /= 1024
        return f"{n} B"

    @staticmethod
    def render_duration(seconds: Union[int, float]) -> str:
        s = int(seconds)
        h, rem = divmod(s, 3600)
        m, s = divmod(rem, 60)
        if h:
            return f"{h}h {m}m {s}s"
        if m:
            return f"{m}m {s}s"
        return f"{s}s"

    @staticmethod
    def round_powerof2(x: Union[int, float]) -> int:
        """Smallest power of two >= x (1 for x < 2)."""
        if x < 2:
            return 1
        return 2 << int(math.log2(x - 1))

    @staticmethod
    def _pretty_cmd(cmd: List[str]) -> str:
        return " ".join(shlex.quote(x) for x in cmd)

    @staticmethod
    def run_cmd(
        logger: Any,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = False,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        stream: bool = False,
        fatal: bool = False,
    ) -> subprocess.CompletedProcess:
        """
        Run a command.

        - capture=True captures stdout/stderr as text
        - stream=True forwards output lines to the logger as they arrive
        - fatal=True wraps failures into Fatal (otherwise re-raises subprocess exceptions)
        """
        pretty = U._pretty_cmd(cmd)
        logger.debug("Running: %s", pretty)

        try:
            if stream:
                proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, env=env)
                assert proc.stdout is not None
                out_lines: List[str] = []
                for line in proc.stdout:
                    line = line.rstrip("\n")
                    out_lines.append(line)
                    logger.info(line)
                rc = proc.wait(timeout=timeout)
                stdout = "\n".join(out_lines)
                if check and rc != 0:
                    raise subprocess.CalledProcessError(rc, cmd, output=stdout, stderr="")
                return subprocess.CompletedProcess(cmd, rc, stdout=stdout, stderr="")

            return subprocess.run(
                cmd,
                check=check,
                capture_output=capture,
                text=True,
                env=env,
                timeout=timeout,
                input=input_text,
            )

        except subprocess.CalledProcessError as e:
            stdout = (e.stdout or e.output or "").strip()
            stderr = (e.stderr or "").strip()
            logger.error(
                "Command failed: %s%s%s",
                pretty,
                f"\nstdout:\n{stdout}" if stdout else "",
                f"\nstderr:\n{stderr}" if stderr else "",
            )
            if fatal:
                raise Fatal(code=e.returncode or 1, msg=f"Command failed: {pretty}", cause=e) from e
            raise

        except subprocess.TimeoutExpired as e:
            logger.error("Command timed out: %s (timeout=%ss)", pretty, timeout)
            if fatal:
                raise Fatal(code=124, msg=f"Command timed out: {pretty}", cause=e) from e
            raise

    @staticmethod
    def safe_unlink(p: Path, *, missing_ok: bool = True) -> None:
        try:
            p.unlink()
        except FileNotFoundError:
            if not missing_ok:
                raise

    @staticmethod
    def atomic_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
        """
        Write to a temp file in the same directory, fsync it and rename it
        over `path`.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent), text=True)
        try:
            with os.fdopen(fd, "w", encoding=encoding) as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            Path(tmp_name).replace(path)
        finally:
            U.safe_unlink(Path(tmp_name))


class _NullProgress:
    def update(self, completed: int, total: Optional[int] = None) -> None:
        pass


class _RichTask:
    def __init__(self, progress: Progress, task_id: Any):
        self._progress = progress
        self._task_id = task_id

    def update(self, completed: int, total: Optional[int] = None) -> None:
        self._progress.update(self._task_id, completed=completed, total=total)


@contextmanager
def transfer_progress(description: str, total: Optional[int] = None) -> Iterator[Any]:
    """
    Progress bar for a disk transfer when stderr is a TTY; a no-op
    otherwise so task logs stay line-based.
    """
    if not getattr(sys.stderr, "isatty", lambda: False)():
        yield _NullProgress()
        return
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        TransferSpeedColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        transient=True,
    ) as progress:
        yield _RichTask(progress, progress.add_task(description, total=total))

