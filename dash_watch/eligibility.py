"""Eligibility rules for DASH Watcher.

Decides whether a path in the watch folder names a video that should be
encoded.  The filesystem is the only ledger: a source ``name.ext`` has
been handled when the sibling directory ``name/`` holds either a finished
manifest or a failure record.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.mpd"
# Present while a job runs; removed only after a successful encode
INCOMPLETE_MARKER = ".dash-watch.incomplete"
# Written when a job fails; delete the output directory to retry
FAILED_MARKER = ".dash-watch.failed"


def output_dir_for(source: Path) -> Path:
    """Return ``<parent>/<stem>/`` for *source*."""
    return source.parent / source.stem


def is_completed_output(directory: Path) -> bool:
    """True when *directory* holds a manifest from a finished encode."""
    return (directory / MANIFEST_NAME).is_file() and not (
        directory / INCOMPLETE_MARKER
    ).exists()


def is_failed_output(directory: Path) -> bool:
    """True when *directory* carries the failure record of an earlier job."""
    return (directory / FAILED_MARKER).is_file()


class EligibilityFilter:
    """Pure predicates over the watch folder's current state."""

    def __init__(self, watch_folder: Path, extensions: frozenset[str] | set[str]):
        self._root = Path(os.path.realpath(watch_folder))
        self._extensions = frozenset(e.strip().lower().lstrip(".") for e in extensions)

    @property
    def extensions(self) -> frozenset[str]:
        return self._extensions

    def has_allowed_extension(self, path: Path) -> bool:
        return path.suffix.strip().lower().lstrip(".") in self._extensions

    def is_top_level(self, path: Path) -> bool:
        """True when *path* sits directly in the watch folder.

        Anything deeper lives inside an output directory (or some other
        subfolder the service does not own) and is never a source.
        """
        return Path(os.path.realpath(Path(path).parent)) == self._root

    def reject_reason(self, path: Path) -> str | None:
        """Return why *path* is not a candidate, or None if it is one.

        Covers the cheap checks only: file type, extension, location.
        """
        # is_file() follows symlinks, so a link to a directory is rejected
        if not path.is_file():
            return "not a regular file"
        if not self.has_allowed_extension(path):
            return "extension not allowed"
        if not self.is_top_level(path):
            return "inside an output directory"
        return None

    def is_candidate(self, path: Path) -> bool:
        return self.reject_reason(path) is None

    def is_processed(self, path: Path) -> bool:
        """True when *path* already has a completed or failed output directory."""
        out = output_dir_for(path)
        if not out.is_dir():
            return False
        return is_completed_output(out) or is_failed_output(out)

    def describe(self, path: Path) -> str | None:
        """Return the first rule *path* breaks, or None if it is eligible."""
        reason = self.reject_reason(path)
        if reason is not None:
            return reason
        out = output_dir_for(path)
        if out.is_dir():
            if is_completed_output(out):
                return "already processed"
            if is_failed_output(out):
                return "previous attempt failed"
        return None

    def is_eligible(self, path: Path) -> bool:
        reason = self.describe(path)
        if reason is not None:
            logger.debug("Ignoring %s (%s)", path, reason)
            return False
        return True
