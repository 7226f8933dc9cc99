"""
Child-process supervision for DASH Watcher.

The rest of the service only sees three operations::

    handle = launcher.spawn(args)
    outcome = handle.wait(timeout)
    handle.kill()

:class:`SubprocessLauncher` implements them on top of ``subprocess``.
The child runs in its own process group so a timeout or shutdown kills
everything it started, and its stderr is drained on a background thread
so a chatty encoder can never block on a full pipe.
"""

from __future__ import annotations

import collections
import logging
import subprocess
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from dash_watch.platform_utils import kill_process_tree, new_process_group_kwargs

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 200
_REAP_TIMEOUT = 10.0


@dataclass(frozen=True)
class ProcessOutcome:
    """How a child process ended."""

    exit_code: int | None
    stderr: str = ""
    timed_out: bool = False
    killed: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.killed


class ProcessHandle(Protocol):
    """A running child process."""

    pid: int

    def wait(self, timeout: float | None) -> ProcessOutcome:
        """Block until exit or *timeout* seconds; kill on timeout."""
        ...

    def kill(self) -> None:
        """Forcibly terminate the child.  Safe to call from any thread."""
        ...


class ProcessLauncher(Protocol):
    """Starts child processes."""

    def spawn(self, args: Sequence[str]) -> ProcessHandle:
        """Start *args*; raise OSError if the program cannot be executed."""
        ...


class SubprocessHandle:
    """:class:`ProcessHandle` backed by ``subprocess.Popen``."""

    def __init__(self, proc: subprocess.Popen, tail_lines: int = _STDERR_TAIL_LINES):
        self._proc = proc
        self.pid = proc.pid
        self._started = time.monotonic()
        self._tail: collections.deque[str] = collections.deque(maxlen=tail_lines)
        self._killed = threading.Event()
        self._reader = threading.Thread(
            target=self._drain_stderr, daemon=True, name=f"stderr-{proc.pid}"
        )
        self._reader.start()

    def _drain_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._tail.append(line)
        except (OSError, ValueError):
            pass  # pipe closed underneath us after a kill
        finally:
            stream.close()

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._tail)

    def kill(self) -> None:
        # a child that already exited keeps its own exit status
        if self._proc.poll() is not None:
            return
        self._killed.set()
        kill_process_tree(self._proc)

    def wait(self, timeout: float | None) -> ProcessOutcome:
        timed_out = False
        try:
            exit_code = self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("Process %d exceeded %.0fs; killing it.", self.pid, timeout or 0)
            kill_process_tree(self._proc)
            exit_code = self._reap()
        self._reader.join(timeout=_REAP_TIMEOUT)
        return ProcessOutcome(
            exit_code=exit_code,
            stderr=self.stderr_tail,
            timed_out=timed_out,
            killed=self._killed.is_set() and not timed_out,
            duration=time.monotonic() - self._started,
        )

    def _reap(self) -> int | None:
        """Collect the exit status of a killed child so no zombie remains."""
        try:
            return self._proc.wait(timeout=_REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.error("Process %d did not exit after SIGKILL.", self.pid)
            return None


class SubprocessLauncher:
    """Default :class:`ProcessLauncher`."""

    def spawn(self, args: Sequence[str]) -> SubprocessHandle:
        logger.debug("Spawning: %s", " ".join(args))
        proc = subprocess.Popen(
            list(args),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            **new_process_group_kwargs(),
        )
        return SubprocessHandle(proc)
