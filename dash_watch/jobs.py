"""Job records for DASH Watcher."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from dash_watch.eligibility import output_dir_for
from dash_watch.errors import ErrorKind


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


@dataclass
class Job:
    """One encode of one source file."""

    source: Path
    output_dir: Path
    state: JobState = JobState.PENDING
    created: float = field(default_factory=time.time)
    started: float = 0.0
    finished: float = 0.0
    error_kind: ErrorKind | None = None
    error: str = ""
    exit_code: int | None = None
    stderr: str = ""
    # set by the worker while the encoder runs
    handle: Any = field(default=None, repr=False, compare=False)
    # set by the dispatcher at shutdown; the worker kills any encoder it starts
    cancel_requested: threading.Event = field(
        default_factory=threading.Event, repr=False, compare=False
    )

    @classmethod
    def for_source(cls, source: Path) -> Job:
        """Create a pending job writing to ``<parent>/<stem>/``."""
        return cls(source=source, output_dir=output_dir_for(source))

    @property
    def duration(self) -> float:
        if self.finished and self.started:
            return self.finished - self.started
        return 0.0

    @property
    def timestamp_str(self) -> str:
        """Human-readable timestamp of when the job finished."""
        if self.finished:
            return datetime.fromtimestamp(self.finished).strftime("%Y-%m-%d %H:%M:%S")
        return ""
