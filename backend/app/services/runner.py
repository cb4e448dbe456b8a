from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional, Tuple

from ..core.errors import ProcessSpawnError
from .commands import BuiltCommand


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessOutcome:
    returncode: int
    tail: Tuple[str, ...]
    terminated: bool = False
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        if self.returncode < 0:
            try:
                name = signal.Signals(-self.returncode).name
            except ValueError:
                name = str(-self.returncode)
            return f"terminated by signal {name}"
        return f"exited with code {self.returncode}"


class ProcessRunner:
    """Runs one external command and feeds its merged stdout/stderr to `on_line`.

    Termination signals go to the whole process group, TERM first and KILL after
    `cancel_grace` seconds. A positive `timeout` terminates the process the same way.
    """

    def __init__(
        self,
        command: BuiltCommand,
        on_line: Callable[[str], object],
        *,
        tail_lines: int = 20,
        cancel_grace: float = 10.0,
        timeout: float = 0.0,
    ):
        self.command = command
        self._on_line = on_line
        self._tail: Deque[str] = deque(maxlen=max(1, tail_lines))
        self._cancel_grace = cancel_grace
        self._timeout = timeout
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._terminating = False
        self._timed_out = False
        self._finished = False
        self._timers: list[threading.Timer] = []

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    def spawn(self) -> None:
        env = dict(os.environ)
        env.update(self.command.env)
        try:
            self._proc = subprocess.Popen(
                list(self.command.argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            tool = os.path.basename(self.command.tool)
            raise ProcessSpawnError(f"Failed to spawn {tool}: {e.strerror or e}") from e

        if self._timeout and self._timeout > 0:
            self._start_timer(self._timeout, self._on_timeout)

    def pump(self) -> ProcessOutcome:
        """Read output until EOF, then wait for the exit status."""
        if self._proc is None or self._proc.stdout is None:
            raise RuntimeError("pump() called before spawn()")
        stdout = self._proc.stdout
        try:
            for raw in iter(stdout.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self._tail.append(line)
                self._on_line(line)
        finally:
            stdout.close()
        returncode = self._proc.wait()

        with self._lock:
            self._finished = True
            timers, self._timers = self._timers, []
            terminated, timed_out = self._terminating, self._timed_out
        for t in timers:
            t.cancel()
        return ProcessOutcome(
            returncode=returncode,
            tail=tuple(self._tail),
            terminated=terminated,
            timed_out=timed_out,
        )

    def terminate(self) -> bool:
        """Ask the process to stop; escalates to SIGKILL after the grace period.

        Returns False when there is nothing (left) to terminate.
        """
        with self._lock:
            if self._proc is None or self._finished or self._terminating:
                return False
            self._terminating = True
        logger.info("Terminating pid %s (%s)", self._proc.pid, os.path.basename(self.command.tool))
        self._send(signal.SIGTERM)
        self._start_timer(self._cancel_grace, self._send, getattr(signal, "SIGKILL", signal.SIGTERM))
        return True

    def abort(self) -> Optional[int]:
        """Stop the process without reading its remaining output and reap it.

        For callers that can no longer pump this runner. Returns the exit status,
        or None when the process never started or was already reaped by `pump`.
        """
        with self._lock:
            proc = self._proc
            if proc is None or self._finished:
                return None
        self.terminate()
        if proc.stdout is not None:
            proc.stdout.close()
        try:
            returncode = proc.wait(timeout=self._cancel_grace + 5)
        except subprocess.TimeoutExpired:
            logger.error("Process %s did not exit after abort", proc.pid)
            returncode = None
        with self._lock:
            self._finished = True
            timers, self._timers = self._timers, []
        for t in timers:
            t.cancel()
        return returncode

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def _on_timeout(self) -> None:
        with self._lock:
            if self._finished:
                return
            self._timed_out = True
        logger.warning("Process %s exceeded %.0fs, terminating", self.pid, self._timeout)
        self.terminate()

    def _start_timer(self, delay: float, fn: Callable[..., None], *args: object) -> None:
        t = threading.Timer(delay, fn, args=args)
        t.daemon = True
        with self._lock:
            if self._finished:
                return
            self._timers.append(t)
        t.start()

    def _send(self, sig: signal.Signals) -> None:
        with self._lock:
            if self._finished or self._proc is None:
                return
            proc = self._proc
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass
