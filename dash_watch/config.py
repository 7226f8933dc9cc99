"""Configuration management for DASH Watcher.

Settings are read once from environment variables when the service
starts.  Every key has a default; a value that cannot be used raises
:class:`~dash_watch.errors.ConfigInvalid` straight away instead of
failing on the first job.  The resulting :class:`Config` is read-only.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dash_watch.errors import ConfigInvalid

logger = logging.getLogger(__name__)

# x264 presets accepted by ffmpeg's libx264 encoder
PRESETS = frozenset([
    "ultrafast", "superfast", "veryfast", "faster", "fast",
    "medium", "slow", "slower", "veryslow", "placebo",
])
LOG_LEVELS = frozenset(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
# digits followed by an optional k/M suffix, e.g. 128k
_AUDIO_BITRATE_RE = re.compile(r"^\d{1,6}[kKmM]?$")

DEFAULT_CONFIG: dict[str, str] = {
    "WATCH_FOLDER": "/var/watch/videos",
    "VIDEO_EXTENSIONS": "mp4,avi,mkv,mov,wmv,flv",
    "FFMPEG_PATH": "ffmpeg",
    "FFMPEG_PRESET": "medium",
    "FFMPEG_CRF": "23",
    "AUDIO_BITRATE": "128k",
    "SEGMENT_DURATION": "4",
    "LOG_LEVEL": "INFO",
    # ---- orchestration ----
    "MAX_CONCURRENT_JOBS": "1",  # encoding is CPU-bound
    "STABLE_SECONDS": "3",  # debounce window
    "JOB_TIMEOUT_SECONDS": "21600",  # 6 hours
    "QUEUE_SIZE": "1024",
    "SHUTDOWN_GRACE_SECONDS": "30",
    # ---- log rotation ----
    "LOG_FILE": "",  # empty = stderr only
    "MAX_LOG_SIZE_MB": "10",
    "LOG_BACKUP_COUNT": "3",
}


def _parse_int(key: str, raw: str, minimum: int, maximum: int | None = None) -> int:
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigInvalid(key, raw, "not an integer") from None
    if value < minimum:
        raise ConfigInvalid(key, raw, f"must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ConfigInvalid(key, raw, f"must be <= {maximum}")
    return value


def _parse_float(key: str, raw: str, minimum: float, exclusive: bool = False) -> float:
    try:
        value = float(raw.strip())
    except ValueError:
        raise ConfigInvalid(key, raw, "not a number") from None
    if value < minimum or (exclusive and value == minimum):
        raise ConfigInvalid(key, raw, f"must be {'>' if exclusive else '>='} {minimum}")
    return value


def parse_extensions(raw: str) -> frozenset[str]:
    """Normalise a comma list such as ``" MP4, .mkv "`` to ``{"mp4", "mkv"}``."""
    return frozenset(
        ext.strip().lower().lstrip(".") for ext in raw.split(",") if ext.strip().lstrip(".")
    )


class Config:
    """Read-only settings resolved from an environment mapping.

    Parameters
    ----------
    env : Mapping[str, str], optional
        Source of the settings; defaults to ``os.environ``.  Tests pass a
        plain dict to get an isolated instance.
    """

    def __init__(self, env: Mapping[str, str] | None = None):
        source = os.environ if env is None else env
        raw = {key: source.get(key, default) for key, default in DEFAULT_CONFIG.items()}
        self._data: dict[str, Any] = self._validate(raw)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from the process environment."""
        cfg = cls()
        logger.info("Configuration loaded from environment")
        return cfg

    @staticmethod
    def _validate(raw: dict[str, str]) -> dict[str, Any]:
        data: dict[str, Any] = {}

        watch = raw["WATCH_FOLDER"].strip()
        if not watch:
            raise ConfigInvalid("WATCH_FOLDER", raw["WATCH_FOLDER"], "must not be empty")
        data["watch_folder"] = Path(watch).expanduser().absolute()

        extensions = parse_extensions(raw["VIDEO_EXTENSIONS"])
        if not extensions:
            raise ConfigInvalid("VIDEO_EXTENSIONS", raw["VIDEO_EXTENSIONS"], "no extensions given")
        data["video_extensions"] = extensions

        ffmpeg = raw["FFMPEG_PATH"].strip()
        if not ffmpeg:
            raise ConfigInvalid("FFMPEG_PATH", raw["FFMPEG_PATH"], "must not be empty")
        data["ffmpeg_path"] = ffmpeg

        preset = raw["FFMPEG_PRESET"].strip().lower()
        if preset not in PRESETS:
            raise ConfigInvalid("FFMPEG_PRESET", raw["FFMPEG_PRESET"], "unknown x264 preset")
        data["ffmpeg_preset"] = preset

        data["ffmpeg_crf"] = _parse_int("FFMPEG_CRF", raw["FFMPEG_CRF"], 0, 51)

        bitrate = raw["AUDIO_BITRATE"].strip()
        if not _AUDIO_BITRATE_RE.match(bitrate):
            raise ConfigInvalid("AUDIO_BITRATE", raw["AUDIO_BITRATE"], "expected e.g. 128k")
        data["audio_bitrate"] = bitrate

        data["segment_duration"] = _parse_int("SEGMENT_DURATION", raw["SEGMENT_DURATION"], 1)

        level = raw["LOG_LEVEL"].strip().upper()
        if level not in LOG_LEVELS:
            raise ConfigInvalid("LOG_LEVEL", raw["LOG_LEVEL"], "unknown logging level")
        data["log_level"] = level

        data["max_concurrent_jobs"] = _parse_int(
            "MAX_CONCURRENT_JOBS", raw["MAX_CONCURRENT_JOBS"], 1
        )
        data["stable_seconds"] = _parse_float("STABLE_SECONDS", raw["STABLE_SECONDS"], 0.0)
        data["job_timeout"] = _parse_float(
            "JOB_TIMEOUT_SECONDS", raw["JOB_TIMEOUT_SECONDS"], 0.0, exclusive=True
        )
        data["queue_size"] = _parse_int("QUEUE_SIZE", raw["QUEUE_SIZE"], 1)
        data["shutdown_grace"] = _parse_float(
            "SHUTDOWN_GRACE_SECONDS", raw["SHUTDOWN_GRACE_SECONDS"], 0.0
        )

        log_file = raw["LOG_FILE"].strip()
        data["log_file"] = Path(log_file).expanduser() if log_file else None
        data["max_log_size_mb"] = _parse_int("MAX_LOG_SIZE_MB", raw["MAX_LOG_SIZE_MB"], 1)
        data["log_backup_count"] = _parse_int("LOG_BACKUP_COUNT", raw["LOG_BACKUP_COUNT"], 0)
        return data

    # ---- watch folder ----

    @property
    def watch_folder(self) -> Path:
        """Return the absolute path of the watched folder."""
        return self._data["watch_folder"]

    @property
    def video_extensions(self) -> frozenset[str]:
        """Return the accepted extensions, lower-case and without dots."""
        return self._data["video_extensions"]

    # ---- encoding ----

    @property
    def ffmpeg_path(self) -> str:
        return self._data["ffmpeg_path"]

    @property
    def ffmpeg_preset(self) -> str:
        return self._data["ffmpeg_preset"]

    @property
    def ffmpeg_crf(self) -> int:
        return self._data["ffmpeg_crf"]

    @property
    def audio_bitrate(self) -> str:
        return self._data["audio_bitrate"]

    @property
    def segment_duration(self) -> int:
        """Return the DASH segment length in seconds."""
        return self._data["segment_duration"]

    # ---- orchestration ----

    @property
    def max_concurrent_jobs(self) -> int:
        """Return how many encodes may run at once."""
        return self._data["max_concurrent_jobs"]

    @property
    def stable_seconds(self) -> float:
        """Return the quiet period a file needs before it is encoded."""
        return self._data["stable_seconds"]

    @property
    def job_timeout(self) -> float:
        """Return the per-job runtime ceiling in seconds."""
        return self._data["job_timeout"]

    @property
    def queue_size(self) -> int:
        return self._data["queue_size"]

    @property
    def shutdown_grace(self) -> float:
        """Return how long running jobs may take to finish on shutdown."""
        return self._data["shutdown_grace"]

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the logging level name."""
        return self._data["log_level"]

    @property
    def log_file(self) -> Path | None:
        """Return the rotating log file path, or None for stderr only."""
        return self._data["log_file"]

    @property
    def max_log_size_mb(self) -> int:
        return self._data["max_log_size_mb"]

    @property
    def log_backup_count(self) -> int:
        return self._data["log_backup_count"]

    # ---- convenience ----

    def as_dict(self) -> dict[str, Any]:
        """Return a copy of the resolved settings, suitable for logging."""
        return dict(self._data)

    def __repr__(self) -> str:
        return f"Config(watch_folder={str(self.watch_folder)!r})"
