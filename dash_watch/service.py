"""
Headless daemon runner for DASH Watcher.

Builds the pipeline from the environment configuration and runs it in
the foreground until SIGINT/SIGTERM.  Under systemd, stderr output lands
in the journal; set ``LOG_FILE`` to also write a rotating log file.

    python -m dash_watch               Run in the foreground
    python -m dash_watch check-config  Validate settings and print them
"""

from __future__ import annotations

import logging
import logging.handlers
import signal
import sys
import threading

from dash_watch import __app_name__, __version__
from dash_watch.config import Config
from dash_watch.dispatcher import JobDispatcher
from dash_watch.eligibility import EligibilityFilter
from dash_watch.errors import ConfigInvalid
from dash_watch.watcher import FolderWatcher
from dash_watch.worker import TranscodeWorker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
EXIT_CONFIG_INVALID = 2


def setup_logging(cfg: Config | None = None) -> None:
    """Configure the stderr handler and, if requested, a rotating file log."""
    level = getattr(logging, cfg.log_level if cfg else "INFO", logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    fmt = logging.Formatter(LOG_FORMAT)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)

    if cfg is not None and cfg.log_file is not None:
        cfg.log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            str(cfg.log_file),
            maxBytes=cfg.max_log_size_mb * 1024 * 1024,
            backupCount=cfg.log_backup_count,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)


class Service:
    """Owns the watcher and dispatcher for one run of the daemon."""

    def __init__(self, config: Config, worker: TranscodeWorker | None = None):
        self.config = config
        self.eligibility = EligibilityFilter(config.watch_folder, config.video_extensions)
        self.dispatcher = JobDispatcher(
            worker or TranscodeWorker(config),
            self.eligibility,
            max_jobs=config.max_concurrent_jobs,
            queue_size=config.queue_size,
        )
        self.watcher = FolderWatcher(
            config.watch_folder,
            self.eligibility,
            self.dispatcher,
            stable_seconds=config.stable_seconds,
        )
        self._stop = threading.Event()

    def start(self) -> None:
        cfg = self.config
        logger.info("%s %s starting.", __app_name__, __version__)
        logger.info("FFmpeg: %s, preset: %s, CRF: %d", cfg.ffmpeg_path, cfg.ffmpeg_preset, cfg.ffmpeg_crf)
        logger.info("Audio bitrate: %s, segment duration: %ds", cfg.audio_bitrate, cfg.segment_duration)
        logger.info(
            "Max concurrent jobs: %d, job timeout: %.0fs",
            cfg.max_concurrent_jobs, cfg.job_timeout,
        )
        self.dispatcher.start()
        self.watcher.start()

    def request_stop(self) -> None:
        """Ask :meth:`run_forever` to return.  Safe from signal handlers."""
        self._stop.set()

    def stop(self) -> None:
        """Stop intake first, then let running jobs finish within the grace period."""
        logger.info("Shutting down…")
        self.watcher.stop()
        self.dispatcher.shutdown(grace=self.config.shutdown_grace)
        logger.info("%s stopped.", __app_name__)

    def run_forever(self) -> None:
        try:
            self.start()
            while not self._stop.wait(timeout=1):
                pass
        finally:
            self.stop()


def _run_foreground() -> int:
    """Run the service until SIGINT/SIGTERM.  Returns the exit status."""
    setup_logging()
    try:
        cfg = Config.from_env()
    except ConfigInvalid as exc:
        logger.critical("Invalid configuration: %s", exc)
        return EXIT_CONFIG_INVALID
    setup_logging(cfg)

    service = Service(cfg)

    def _handler(sig, frame):
        logger.info("Received %s", signal.Signals(sig).name)
        service.request_stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    try:
        service.run_forever()
    except OSError as exc:
        logger.critical("Cannot watch %s: %s", cfg.watch_folder, exc)
        return 1
    return 0


def _check_config() -> int:
    try:
        cfg = Config.from_env()
    except ConfigInvalid as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_CONFIG_INVALID
    for key, value in sorted(cfg.as_dict().items()):
        if isinstance(value, frozenset):
            value = ",".join(sorted(value))
        print(f"{key} = {value}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the daemon CLI."""
    args = sys.argv[1:] if argv is None else argv
    cmd = args[0] if args else "run"
    if cmd == "run":
        return _run_foreground()
    if cmd == "check-config":
        return _check_config()
    _show_help()
    return 0 if cmd in ("-h", "--help", "help") else 1


def _show_help() -> None:
    print(f"{__app_name__} {__version__}: watch a folder and convert videos to DASH")
    print()
    print("Usage:")
    print("  python -m dash_watch [run]        Run in the foreground (Ctrl-C to stop)")
    print("  python -m dash_watch check-config Validate the environment settings")
    print()
    print("Settings are read from environment variables; see README.md.")
