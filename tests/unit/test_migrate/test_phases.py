# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import signal

import pytest

from fakes.fake_logger import FakeLogger

from kvmigrate.core.exceptions import Interrupted, StorageError
from kvmigrate.migrate.phases import Interruptible, PhasedMigration
from kvmigrate.migrate.task import MigrationOptions, MigrationTask, Phase


class Recording(PhasedMigration):
    def __init__(self, fail_in=None, cleanup_fails=False, commit_in_finalize=True):
        super().__init__(MigrationTask(vmid=100, target_node="node2", options=MigrationOptions()), logger=FakeLogger())
        self.fail_in = fail_in
        self.cleanup_fails = cleanup_fails
        self.commit_in_finalize = commit_in_finalize
        self.events = []

    def _run(self, name):
        self.events.append(name)
        if self.fail_in == name:
            raise StorageError(msg=f"{name} broke")

    def prepare(self):
        self._run("prepare")

    def execute(self):
        self._run("execute")

    def finalize(self):
        if self.commit_in_finalize:
            self.commit()
        self._run("finalize")

    def prepare_cleanup(self, err):
        self.events.append("prepare_cleanup")

    def execute_cleanup(self, err):
        self.events.append("execute_cleanup")
        if self.cleanup_fails:
            raise RuntimeError("cleanup exploded")


class TestPhasedMigration:
    def test_success_runs_phases_in_order(self):
        m = Recording()
        m.migrate()
        assert m.events == ["prepare", "execute", "finalize"]
        assert m.task.phase is Phase.DONE
        assert m.armed == []

    def test_prepare_failure_only_unwinds_prepare(self):
        m = Recording(fail_in="prepare")
        with pytest.raises(StorageError, match="prepare broke"):
            m.migrate()
        assert m.events == ["prepare", "prepare_cleanup"]
        assert m.task.phase is Phase.PREPARE

    def test_execute_failure_unwinds_newest_first(self):
        m = Recording(fail_in="execute")
        with pytest.raises(StorageError):
            m.migrate()
        assert m.events == ["prepare", "execute", "execute_cleanup", "prepare_cleanup"]

    def test_failure_after_commit_runs_no_cleanup(self):
        m = Recording(fail_in="finalize")
        with pytest.raises(StorageError):
            m.migrate()
        assert m.events == ["prepare", "execute", "finalize"]

    def test_failure_in_finalize_before_commit_unwinds(self):
        m = Recording(fail_in="finalize", commit_in_finalize=False)
        with pytest.raises(StorageError):
            m.migrate()
        assert m.events[-2:] == ["execute_cleanup", "prepare_cleanup"]

    def test_failing_cleanup_does_not_stop_the_others(self):
        m = Recording(fail_in="execute", cleanup_fails=True)
        with pytest.raises(StorageError, match="execute broke"):
            m.migrate()
        assert m.events[-1] == "prepare_cleanup"
        assert m.task.errors
        assert m.logger.has("cleanup of phase 'execute' failed: cleanup exploded", "error")


class TestInterruptible:
    def test_checkpoint_raises_after_signal(self):
        guard = Interruptible(sleep=lambda s: None, logger=FakeLogger())
        guard.checkpoint()
        guard._handler(signal.SIGTERM, None)
        with pytest.raises(Interrupted) as ei:
            guard.checkpoint()
        assert ei.value.context == {"signal": "SIGTERM"}

    def test_sleep_checks_before_and_after(self):
        slept = []
        guard = Interruptible(sleep=slept.append, logger=FakeLogger())

        def deliver(s):
            slept.append(s)
            guard.signalled = "SIGINT"

        guard.plain_sleep = deliver
        with pytest.raises(Interrupted):
            guard.sleep(1.0)
        assert slept == [1.0]

    def test_handlers_restored(self):
        before = signal.getsignal(signal.SIGINT)
        guard = Interruptible(logger=FakeLogger())
        with guard.installed():
            assert signal.getsignal(signal.SIGINT) == guard._handler
        assert signal.getsignal(signal.SIGINT) is before
