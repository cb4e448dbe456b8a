from __future__ import annotations

import os
import threading
import time
import unittest
from typing import List

from backend.app.core.errors import ProcessSpawnError
from backend.app.services.commands import BuiltCommand
from backend.app.services.runner import ProcessRunner


def _sh(script: str, env: dict | None = None) -> BuiltCommand:
    return BuiltCommand(argv=("/bin/sh", "-c", script), env=env or {}, display="sh -c ...")


@unittest.skipUnless(os.name == "posix", "requires a POSIX shell")
class TestProcessRunner(unittest.TestCase):
    def _run(self, runner: ProcessRunner):
        runner.spawn()
        return runner.pump()

    def test_merges_stdout_and_stderr_in_order(self) -> None:
        lines: List[str] = []
        runner = ProcessRunner(_sh("echo out; echo err >&2; printf 'no newline'"), lines.append)
        outcome = self._run(runner)
        self.assertTrue(outcome.success)
        self.assertEqual(lines, ["out", "err", "no newline"])

    def test_nonzero_exit_keeps_tail(self) -> None:
        runner = ProcessRunner(_sh("for i in 1 2 3 4 5; do echo line $i; done; exit 4"), lambda _l: None, tail_lines=2)
        outcome = self._run(runner)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.returncode, 4)
        self.assertEqual(outcome.tail, ("line 4", "line 5"))
        self.assertEqual(outcome.describe(), "exited with code 4")

    def test_environment_is_passed_to_child(self) -> None:
        lines: List[str] = []
        runner = ProcessRunner(_sh('echo "pw=$PGPASSWORD"', {"PGPASSWORD": "hunter2"}), lines.append)
        self._run(runner)
        self.assertEqual(lines, ["pw=hunter2"])

    def test_missing_binary_raises_spawn_error(self) -> None:
        cmd = BuiltCommand(argv=("/nonexistent/pg_restore", "x"), env={}, display="pg_restore x")
        runner = ProcessRunner(cmd, lambda _l: None)
        with self.assertRaises(ProcessSpawnError) as ctx:
            runner.spawn()
        self.assertIn("Failed to spawn pg_restore", str(ctx.exception))
        self.assertIsNone(runner.pid)

    def test_terminate_stops_whole_process_group(self) -> None:
        lines: List[str] = []
        ready = threading.Event()

        def on_line(line: str) -> None:
            lines.append(line)
            ready.set()

        # The background sleep inherits the pipe; only a group kill ends the read loop.
        runner = ProcessRunner(_sh("sleep 30 & echo started; wait"), on_line, cancel_grace=2)
        runner.spawn()
        result = {}
        t = threading.Thread(target=lambda: result.setdefault("outcome", runner.pump()))
        t.start()
        self.assertTrue(ready.wait(5))
        t0 = time.monotonic()
        self.assertTrue(runner.terminate())
        self.assertFalse(runner.terminate())
        t.join(10)
        self.assertFalse(t.is_alive())
        self.assertLess(time.monotonic() - t0, 5)
        outcome = result["outcome"]
        self.assertTrue(outcome.terminated)
        self.assertFalse(outcome.success)
        self.assertEqual(lines, ["started"])

    def test_sigkill_after_grace_when_term_is_ignored(self) -> None:
        ready = threading.Event()
        runner = ProcessRunner(
            _sh("trap '' TERM; echo ready; while true; do sleep 0.1; done"),
            lambda _l: ready.set(),
            cancel_grace=0.5,
        )
        runner.spawn()
        result = {}
        t = threading.Thread(target=lambda: result.setdefault("outcome", runner.pump()))
        t.start()
        self.assertTrue(ready.wait(5))
        runner.terminate()
        t.join(10)
        self.assertFalse(t.is_alive())
        self.assertEqual(result["outcome"].describe(), "terminated by signal SIGKILL")

    def test_timeout_terminates(self) -> None:
        runner = ProcessRunner(_sh("exec sleep 30"), lambda _l: None, timeout=0.3, cancel_grace=1)
        t0 = time.monotonic()
        outcome = self._run(runner)
        self.assertLess(time.monotonic() - t0, 5)
        self.assertTrue(outcome.timed_out)
        self.assertFalse(outcome.success)

    def test_terminate_after_exit_is_a_noop(self) -> None:
        runner = ProcessRunner(_sh("true"), lambda _l: None)
        self._run(runner)
        self.assertFalse(runner.terminate())
