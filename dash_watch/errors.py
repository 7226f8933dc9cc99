"""Error kinds for DASH Watcher.

Configuration problems are fatal at startup.  Everything raised while a
job runs is a :class:`TranscodeError` carrying an :class:`ErrorKind`, so
the dispatcher can log it with full context and move on to the next file.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Why a job failed."""

    IO_ERROR = "io_error"
    TOOL_LAUNCH_FAILED = "tool_launch_failed"
    TOOL_EXIT_NON_ZERO = "tool_exit_non_zero"
    TOOL_TIMEOUT = "tool_timeout"
    OUTPUT_INCOMPLETE = "output_incomplete"


class DashWatchError(Exception):
    """Base class for all DASH Watcher errors."""


class ConfigInvalid(DashWatchError):
    """Raised when a configuration value cannot be used."""

    def __init__(self, key: str, value: object, reason: str):
        super().__init__(f"{key}={value!r}: {reason}")
        self.key = key
        self.value = value
        self.reason = reason


class TranscodeError(DashWatchError):
    """A single job failed; other jobs are unaffected."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.kind = kind
        self.exit_code = exit_code
        self.stderr = stderr


class JobCancelled(DashWatchError):
    """The encoder was killed because the service is shutting down."""
