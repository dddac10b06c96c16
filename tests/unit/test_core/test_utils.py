# SPDX-License-Identifier: LGPL-3.0-or-later
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

from kvmigrate.core.exceptions import Fatal
from kvmigrate.core.retry import poll_until, retry_operation
from kvmigrate.core.utils import U, transfer_progress


class TestUtilsFileOperations(unittest.TestCase):
    """Test utility file operations."""

    def test_ensure_dir_creates_directory(self):
        with tempfile.TemporaryDirectory() as td:
            new_dir = Path(td) / "subdir" / "nested"

            U.ensure_dir(new_dir)

            self.assertTrue(new_dir.is_dir())

    def test_atomic_write_text_replaces_file(self):
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "nodes" / "node1" / "qemu" / "100.yaml"
            U.atomic_write_text(target, "memory: 1024\n")
            U.atomic_write_text(target, "memory: 2048\n")

            self.assertEqual(target.read_text(), "memory: 2048\n")
            self.assertEqual(sorted(p.name for p in target.parent.iterdir()), ["100.yaml"])

    def test_safe_unlink_missing(self):
        with tempfile.TemporaryDirectory() as td:
            U.safe_unlink(Path(td) / "nope")
            with self.assertRaises(FileNotFoundError):
                U.safe_unlink(Path(td) / "nope", missing_ok=False)


class TestUtilsFormatting(unittest.TestCase):
    def test_human_bytes(self):
        self.assertEqual(U.human_bytes(None), "unknown")
        self.assertEqual(U.human_bytes(512), "512 B")
        self.assertEqual(U.human_bytes(1536), "1.50 KiB")
        self.assertEqual(U.human_bytes(4 << 30), "4.00 GiB")

    def test_render_duration(self):
        self.assertEqual(U.render_duration(5), "5s")
        self.assertEqual(U.render_duration(65.9), "1m 5s")
        self.assertEqual(U.render_duration(3725), "1h 2m 5s")

    def test_round_powerof2(self):
        self.assertEqual(U.round_powerof2(0), 1)
        self.assertEqual(U.round_powerof2(2), 2)
        self.assertEqual(U.round_powerof2(3), 4)
        self.assertEqual(U.round_powerof2(4096), 4096)
        self.assertEqual(U.round_powerof2(4097), 8192)

    def test_json_dump_falls_back_to_str(self):
        self.assertIn('"path": "/tmp"', U.json_dump({"path": Path("/tmp")}))


class TestRunCmd(unittest.TestCase):
    def test_capture(self):
        logger = Mock()
        cp = U.run_cmd(logger, [sys.executable, "-c", "print('hi')"], capture=True)
        self.assertEqual(cp.stdout.strip(), "hi")
        logger.debug.assert_called_once()

    def test_failure_is_logged_and_raised(self):
        logger = Mock()
        with self.assertRaises(subprocess.CalledProcessError):
            U.run_cmd(logger, [sys.executable, "-c", "import sys; sys.exit(3)"], capture=True)
        logger.error.assert_called_once()

    def test_fatal_wraps_failure(self):
        with self.assertRaises(Fatal) as cm:
            U.run_cmd(Mock(), [sys.executable, "-c", "import sys; sys.exit(3)"], capture=True, fatal=True)
        self.assertEqual(cm.exception.code, 3)

    def test_stream_forwards_lines(self):
        logger = Mock()
        cp = U.run_cmd(logger, [sys.executable, "-c", "print('a'); print('b')"], stream=True)
        self.assertEqual(cp.stdout, "a\nb")
        logger.info.assert_any_call("b")


class TestRetry(unittest.TestCase):
    def test_retry_operation_succeeds_after_failures(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("refused")
            return "ok"

        result = retry_operation(flaky, max_attempts=3, jitter_s=0, base_backoff_s=1, exceptions=ConnectionError, sleep=sleeps.append)
        self.assertEqual(result, "ok")
        self.assertEqual(sleeps, [1, 2])

    def test_retry_operation_reraises_last(self):
        def broken():
            raise ConnectionError("refused")

        with self.assertRaises(ConnectionError):
            retry_operation(broken, max_attempts=2, jitter_s=0, exceptions=ConnectionError, sleep=lambda s: None)

    def test_other_exceptions_are_not_retried(self):
        calls = []

        def broken():
            calls.append(1)
            raise KeyError("x")

        with self.assertRaises(KeyError):
            retry_operation(broken, exceptions=ConnectionError, sleep=lambda s: None)
        self.assertEqual(len(calls), 1)

    def test_poll_until(self):
        sleeps = []
        state = iter([False, False, True])
        self.assertTrue(poll_until(lambda: next(state), retries=5, interval=0.1, sleep=sleeps.append))
        self.assertEqual(sleeps, [0.1, 0.1])
        self.assertFalse(poll_until(lambda: False, retries=3, interval=0.2, sleep=sleeps.append))
        self.assertEqual(sleeps, [0.1, 0.1, 0.2, 0.2])


class TestTransferProgress(unittest.TestCase):
    def test_non_tty_is_a_no_op(self):
        with transfer_progress("local:100/vm-100-disk-0.raw", 10) as progress:
            progress.update(5)


if __name__ == "__main__":
    unittest.main()
