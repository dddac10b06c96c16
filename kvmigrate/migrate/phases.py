# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/migrate/phases.py
from __future__ import annotations

import logging
import signal
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, Tuple

from ..core.exceptions import Interrupted
from ..core.logger import Log
from .task import MigrationTask, Phase

logger = logging.getLogger(__name__)

CleanupHook = Callable[[BaseException], None]


class Interruptible:
    """
    Turns SIGINT/SIGTERM into `Interrupted` at the next checkpoint.

    Handlers are only installed from the main thread; elsewhere the guard is
    inert and `checkpoint()` never raises.
    """

    def __init__(self, *, sleep: Callable[[float], None] = time.sleep, logger: Any = logger):
        self.plain_sleep = sleep
        self.logger = logger
        self.signalled: Optional[str] = None

    def _handler(self, signum: int, frame: Any) -> None:
        name = signal.Signals(signum).name
        if self.signalled is None:
            self.logger.warning("🛑 received %s, aborting at the next safe point", name)
        self.signalled = name

    @contextmanager
    def installed(self) -> Iterator["Interruptible"]:
        if threading.current_thread() is not threading.main_thread():
            yield self
            return
        previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
        for sig in previous:
            signal.signal(sig, self._handler)
        try:
            yield self
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def checkpoint(self) -> None:
        if self.signalled is not None:
            raise Interrupted(msg="interrupted by signal", context={"signal": self.signalled})

    def sleep(self, seconds: float) -> None:
        self.checkpoint()
        self.plain_sleep(seconds)
        self.checkpoint()


class PhasedMigration(ABC):
    """
    Prepare -> Execute -> Finalize driver.

    Each phase arms its cleanup hook before it runs. On failure the armed
    hooks run newest first, each one isolated from the others, and the
    original error is re-raised. `commit()` disarms everything: after cutover
    there is nothing left to unwind.
    """

    def __init__(self, task: MigrationTask, *, logger: Any = logger, interrupt: Optional[Interruptible] = None):
        self.task = task
        self.logger = logger
        self.interrupt = interrupt or Interruptible(logger=logger)
        self._cleanups: List[Tuple[Phase, CleanupHook]] = []

    @abstractmethod
    def prepare(self) -> None:
        ...

    @abstractmethod
    def execute(self) -> None:
        ...

    @abstractmethod
    def finalize(self) -> None:
        ...

    def prepare_cleanup(self, err: BaseException) -> None:
        pass

    def execute_cleanup(self, err: BaseException) -> None:
        pass

    def push_cleanup(self, phase: Phase, hook: CleanupHook) -> None:
        self._cleanups.append((phase, hook))

    def commit(self) -> None:
        Log.trace(self.logger, "commit: dropping %d cleanup hook(s)", len(self._cleanups))
        self._cleanups.clear()

    @property
    def armed(self) -> List[Phase]:
        return [phase for phase, _ in self._cleanups]

    def _unwind(self, err: BaseException) -> None:
        while self._cleanups:
            phase, hook = self._cleanups.pop()
            try:
                hook(err)
            except Exception as e:
                self.task.errors = True
                self.logger.error("cleanup of phase '%s' failed: %s", phase.value, e)

    def migrate(self) -> None:
        steps = (
            (Phase.PREPARE, self.prepare, self.prepare_cleanup),
            (Phase.EXECUTE, self.execute, self.execute_cleanup),
            (Phase.FINALIZE, self.finalize, None),
        )
        with self.interrupt.installed():
            try:
                for phase, run, cleanup in steps:
                    self.task.phase = phase
                    if cleanup is not None:
                        self.push_cleanup(phase, cleanup)
                    self.interrupt.checkpoint()
                    run()
            except Exception as err:
                self._unwind(err)
                raise
        self.task.phase = Phase.DONE
