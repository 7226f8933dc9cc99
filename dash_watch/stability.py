"""Stability detection for DASH Watcher.

A file that is still being copied into the watch folder must not be
encoded yet.  Every filesystem event for a path re-arms that path's
debounce deadline; the file is declared stable once the deadline passes
with no further events and its size and mtime still match the snapshot
taken when the deadline was armed.
"""

from __future__ import annotations

import logging
import stat
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_MAX_POLL_INTERVAL = 1.0
_MIN_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class FileFingerprint:
    """``(path, size, mtime)`` snapshot of a file."""

    path: Path
    size: int
    mtime_ns: int

    @classmethod
    def take(cls, path: Path) -> FileFingerprint | None:
        """Snapshot *path*, or return None if it is not a regular file."""
        try:
            st = path.stat()
        except OSError:
            return None
        if not stat.S_ISREG(st.st_mode):
            return None
        return cls(path, st.st_size, st.st_mtime_ns)


@dataclass
class _Pending:
    fingerprint: FileFingerprint
    deadline: float


class StabilityDetector:
    """Debounces filesystem activity per path.

    Parameters
    ----------
    stable_seconds : float
        Quiet period required before a file is declared stable.
    on_stable : callable
        Called from the poller thread with each stable path, exactly once
        per quiet period.
    poll_interval : float, optional
        How often due entries are checked.  Defaults to a quarter of the
        quiet period, clamped to 50 ms .. 1 s.
    clock : callable, optional
        Monotonic time source, replaceable in tests.
    """

    def __init__(
        self,
        stable_seconds: float,
        on_stable: Callable[[Path], None],
        poll_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._stable_seconds = max(0.0, stable_seconds)
        self._on_stable = on_stable
        if poll_interval is None:
            poll_interval = min(
                _MAX_POLL_INTERVAL, max(_MIN_POLL_INTERVAL, self._stable_seconds / 4)
            )
        self._poll_interval = poll_interval
        self._clock = clock
        # one entry per path; re-arming replaces it
        self._pending: dict[Path, _Pending] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def stable_seconds(self) -> float:
        return self._stable_seconds

    # ---- lifecycle ----

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._poll, daemon=True, name="StabilityDetector"
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop polling and forget everything still pending."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        with self._lock:
            self._pending.clear()

    # ---- event intake ----

    def track(self, path: Path) -> None:
        """Register *path* or re-arm its deadline after another event."""
        fp = FileFingerprint.take(path)
        if fp is None:
            self.discard(path)
            return
        deadline = self._clock() + self._stable_seconds
        with self._lock:
            rearmed = path in self._pending
            self._pending[path] = _Pending(fp, deadline)
        if not rearmed:
            logger.debug("Tracking %s (size=%d)", path, fp.size)

    def discard(self, path: Path) -> None:
        """Drop pending state for *path* (deleted or moved away)."""
        with self._lock:
            removed = self._pending.pop(path, None)
        if removed is not None:
            logger.debug("Stopped tracking %s", path)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def pending_files(self) -> list[str]:
        with self._lock:
            return [str(p) for p in self._pending]

    # ---- polling ----

    def collect_due(self, now: float | None = None) -> list[Path]:
        """Return paths whose quiet period has elapsed and that are unchanged.

        Entries that changed without an event are re-armed; vanished files
        are dropped.  Returned paths are no longer tracked.
        """
        if now is None:
            now = self._clock()
        with self._lock:
            due = [(p, e) for p, e in self._pending.items() if e.deadline <= now]

        stable = []  # type: list[Path]
        for path, entry in due:
            current = FileFingerprint.take(path)
            with self._lock:
                if self._pending.get(path) is not entry:
                    continue  # re-armed by a newer event meanwhile
                if current is None:
                    del self._pending[path]
                    logger.info("File vanished before it settled: %s", path)
                elif current != entry.fingerprint:
                    self._pending[path] = _Pending(current, now + self._stable_seconds)
                else:
                    del self._pending[path]
                    stable.append(path)
        return stable

    def _poll(self) -> None:
        while not self._stop.is_set():
            for path in self.collect_due():
                logger.info("File stable: %s", path)
                try:
                    self._on_stable(path)
                except Exception:
                    logger.exception("Error in on_stable callback for %s", path)
            self._stop.wait(timeout=self._poll_interval)
