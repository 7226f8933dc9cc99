"""File system watcher for DASH Watcher.

Uses the watchdog library to monitor the watch folder for new or
modified video files, then feeds them through stability detection and
eligibility checks into the job dispatcher.  Only the top level of the
folder is watched, so the service never reacts to its own output.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from watchdog.events import (
    DirDeletedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from dash_watch.dispatcher import JobDispatcher
from dash_watch.eligibility import EligibilityFilter
from dash_watch.stability import StabilityDetector

logger = logging.getLogger(__name__)


def _fs_path(raw: str | bytes) -> Path:
    return Path(os.fsdecode(raw))


class VideoEventHandler(FileSystemEventHandler):
    """Watchdog handler that feeds candidate videos into the stability detector.

    Runs on the observer thread, so every callback only records the
    event and returns.
    """

    def __init__(self, detector: StabilityDetector, eligibility: EligibilityFilter):
        """Initialise the handler."""
        super().__init__()
        self._detector = detector
        self._eligibility = eligibility

    def _consider(self, path: Path) -> None:
        reason = self._eligibility.reject_reason(path)
        if reason is None:
            self._detector.track(path)
        else:
            logger.debug("Ignoring %s (%s)", path, reason)

    def on_created(self, event: FileCreatedEvent) -> None:  # type: ignore[override]
        """Handle a new file creation event."""
        if event.is_directory:
            return
        self._consider(_fs_path(event.src_path))

    def on_modified(self, event: FileModifiedEvent) -> None:  # type: ignore[override]
        """Handle a file modification event."""
        if event.is_directory:
            return
        self._consider(_fs_path(event.src_path))

    def on_moved(self, event: FileMovedEvent) -> None:  # type: ignore[override]
        """Handle a rename: forget the old name, consider the new one."""
        if event.is_directory:
            return
        self._detector.discard(_fs_path(event.src_path))
        self._consider(_fs_path(event.dest_path))

    def on_deleted(self, event: FileDeletedEvent | DirDeletedEvent) -> None:  # type: ignore[override]
        """Handle a deletion by dropping any pending stability state."""
        self._detector.discard(_fs_path(event.src_path))


class FolderWatcher:
    """High-level watcher: watchdog + stability detection + dispatch.

    Usage:
        watcher = FolderWatcher(folder, eligibility, dispatcher, stable_seconds=3)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        watch_folder: Path,
        eligibility: EligibilityFilter,
        dispatcher: JobDispatcher,
        stable_seconds: float = 3.0,
        poll_interval: float | None = None,
    ):
        """Create a new folder watcher."""
        self.watch_folder = Path(watch_folder)
        self._eligibility = eligibility
        self._dispatcher = dispatcher
        self._detector = StabilityDetector(
            stable_seconds, self._on_file_stable, poll_interval=poll_interval
        )
        self._handler = VideoEventHandler(self._detector, eligibility)
        self._observer: Any | None = None

    # ---- lifecycle ----

    def start(self) -> None:
        """Create the folder if needed, scan it, then start watching."""
        if not self.watch_folder.is_dir():
            logger.warning("Watch folder doesn't exist, creating: %s", self.watch_folder)
            self.watch_folder.mkdir(parents=True, exist_ok=True)

        observer = Observer()
        self._observer = observer
        observer.schedule(self._handler, str(self.watch_folder), recursive=False)
        observer.start()
        self._detector.start()
        queued = self.initial_scan()
        logger.info(
            "Watching '%s' (stable=%.1fs, extensions=%s); %d existing file(s) queued",
            self.watch_folder,
            self._detector.stable_seconds,
            ",".join(sorted(self._eligibility.extensions)),
            queued,
        )

    def stop(self) -> None:
        """Stop watching and release resources."""
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self._detector.stop()
        logger.info("Watcher stopped.")

    @property
    def is_running(self) -> bool:
        """Return whether the watcher is currently active."""
        return self._observer is not None and self._observer.is_alive()

    # ---- pipeline ----

    def initial_scan(self) -> int:
        """
        Feed files already in the folder into the pipeline.

        Catches files dropped while the service was down.  Returns the
        number of files handed to the stability detector.
        """
        count = 0
        try:
            entries = sorted(self.watch_folder.iterdir())
        except OSError as exc:
            logger.error("Cannot list watch folder %s: %s", self.watch_folder, exc)
            return 0
        for path in entries:
            if self._eligibility.is_eligible(path):
                self._detector.track(path)
                count += 1
        return count

    def _on_file_stable(self, path: Path) -> None:
        if self._eligibility.is_eligible(path):
            self._dispatcher.submit(path)

    # ---- status ----

    @property
    def pending_count(self) -> int:
        """Return the number of files awaiting stability."""
        return self._detector.pending_count

    @property
    def pending_files(self) -> list[str]:
        """Return paths of files currently being tracked."""
        return self._detector.pending_files
