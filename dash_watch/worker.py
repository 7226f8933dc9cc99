"""
Transcode worker for DASH Watcher.

Runs one ffmpeg invocation per job and leaves behind either a finished
DASH directory::

    name/manifest.mpd
    name/init-stream0.m4s, name/init-stream1.m4s
    name/chunk-stream0-00001.m4s, name/chunk-stream1-00001.m4s, ...

or a failed one, tagged with ``.dash-watch.failed`` and with any
manifest the encoder left behind renamed to ``manifest.mpd.partial`` so
it is never mistaken for a finished artifact.
"""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path

from dash_watch.config import Config
from dash_watch.eligibility import (
    FAILED_MARKER,
    INCOMPLETE_MARKER,
    MANIFEST_NAME,
    is_completed_output,
    is_failed_output,
)
from dash_watch.errors import ErrorKind, JobCancelled, TranscodeError
from dash_watch.jobs import Job
from dash_watch.process import ProcessLauncher, ProcessOutcome, SubprocessLauncher

logger = logging.getLogger(__name__)

INIT_SEG_NAME = "init-stream$RepresentationID$.m4s"
MEDIA_SEG_NAME = "chunk-stream$RepresentationID$-$Number%05d$.m4s"
PARTIAL_MANIFEST_NAME = MANIFEST_NAME + ".partial"

# Names ffmpeg's dash muxer produces; anything else in an existing
# output directory means it belongs to someone else
_ARTIFACT_PATTERNS = (
    "manifest.mpd*",
    "init-stream*.m4s*",
    "chunk-stream*.m4s*",
    INCOMPLETE_MARKER,
    FAILED_MARKER,
)


def build_ffmpeg_args(cfg: Config, source: Path, output_dir: Path) -> list[str]:
    """Return the full encoder command line for *source*."""
    return [
        cfg.ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-i", str(source),
        "-c:v", "libx264",
        "-preset", cfg.ffmpeg_preset,
        "-crf", str(cfg.ffmpeg_crf),
        "-c:a", "aac",
        "-b:a", cfg.audio_bitrate,
        "-f", "dash",
        "-seg_duration", str(cfg.segment_duration),
        "-use_template", "1",
        "-use_timeline", "1",
        "-init_seg_name", INIT_SEG_NAME,
        "-media_seg_name", MEDIA_SEG_NAME,
        str(output_dir / MANIFEST_NAME),
    ]


def _looks_like_artifact(path: Path) -> bool:
    return any(path.match(pattern) for pattern in _ARTIFACT_PATTERNS)


class TranscodeWorker:
    """
    Encodes single files.  Stateless apart from configuration, so one
    instance is shared by every dispatcher thread.

    Parameters
    ----------
    config : Config
        Encoding parameters, tool path and per-job timeout.
    launcher : ProcessLauncher, optional
        Starts the encoder; tests substitute a fake.
    """

    def __init__(self, config: Config, launcher: ProcessLauncher | None = None):
        self._cfg = config
        self._launcher = launcher or SubprocessLauncher()

    def run(self, job: Job) -> ProcessOutcome:
        """Encode ``job.source`` into ``job.output_dir``.

        Returns the encoder's outcome on success; raises
        :class:`TranscodeError` otherwise, or :class:`JobCancelled` when
        the encoder was killed during shutdown.
        """
        out = job.output_dir
        self._prepare_output(out)

        try:
            outcome = self._encode(job)
        except JobCancelled:
            # keep the in-progress marker; the next start clears and retries
            raise
        except TranscodeError as exc:
            if exc.kind is ErrorKind.TOOL_LAUNCH_FAILED:
                self._discard_output(out)
            else:
                self._tag_failed(job, exc)
            raise

        try:
            (out / INCOMPLETE_MARKER).unlink(missing_ok=True)
        except OSError as exc:
            raise TranscodeError(
                ErrorKind.IO_ERROR, f"Cannot finalise {out}: {exc}"
            ) from exc
        logger.info(
            "Encoded %s in %.1fs; manifest at %s",
            job.source, outcome.duration, out / MANIFEST_NAME,
        )
        return outcome

    # ---- output directory ----

    def _prepare_output(self, out: Path) -> None:
        """Create *out* and its in-progress marker, clearing crash leftovers."""
        try:
            if out.exists() and not out.is_dir():
                raise TranscodeError(
                    ErrorKind.IO_ERROR, f"{out} exists and is not a directory"
                )
            if out.is_dir() and any(out.iterdir()):
                if is_completed_output(out) or is_failed_output(out):
                    raise TranscodeError(
                        ErrorKind.IO_ERROR, f"{out} already holds a finished result"
                    )
                foreign = [p.name for p in out.iterdir() if not _looks_like_artifact(p)]
                if foreign:
                    raise TranscodeError(
                        ErrorKind.IO_ERROR,
                        f"{out} contains unrelated files: {', '.join(sorted(foreign)[:5])}",
                    )
                logger.warning("Clearing partial output from an interrupted job: %s", out)
                shutil.rmtree(out)
            out.mkdir(parents=True, exist_ok=True)
            (out / INCOMPLETE_MARKER).touch()
        except OSError as exc:
            raise TranscodeError(
                ErrorKind.IO_ERROR, f"Cannot prepare output directory {out}: {exc}"
            ) from exc

    def _discard_output(self, out: Path) -> None:
        """Remove a directory that holds nothing but our in-progress marker."""
        try:
            (out / INCOMPLETE_MARKER).unlink(missing_ok=True)
            out.rmdir()
        except OSError:
            logger.debug("Left output directory %s in place", out, exc_info=True)

    def _tag_failed(self, job: Job, exc: TranscodeError) -> None:
        """Leave the failed output in place, marked so it is never taken as done."""
        out = job.output_dir
        try:
            manifest = out / MANIFEST_NAME
            if manifest.exists():
                manifest.replace(out / PARTIAL_MANIFEST_NAME)
            record = {
                "source": str(job.source),
                "error_kind": exc.kind.value,
                "error": str(exc),
                "exit_code": exc.exit_code,
                "stderr": exc.stderr,
                "failed_at": datetime.now().isoformat(timespec="seconds"),
            }
            with open(out / FAILED_MARKER, "w", encoding="utf-8") as fh:
                json.dump(record, fh, indent=2)
            (out / INCOMPLETE_MARKER).unlink(missing_ok=True)
        except OSError:
            logger.exception("Could not tag failed output directory %s", out)

    # ---- encoding ----

    def _encode(self, job: Job) -> ProcessOutcome:
        if job.cancel_requested.is_set():
            raise JobCancelled(f"Shutdown before encoding {job.source}")
        args = build_ffmpeg_args(self._cfg, job.source, job.output_dir)
        try:
            handle = self._launcher.spawn(args)
        except OSError as exc:
            raise TranscodeError(
                ErrorKind.TOOL_LAUNCH_FAILED,
                f"Cannot execute {self._cfg.ffmpeg_path}: {exc}",
            ) from exc

        job.handle = handle
        # shutdown may have swept the active jobs while we were spawning
        if job.cancel_requested.is_set():
            handle.kill()
        try:
            outcome = handle.wait(self._cfg.job_timeout)
        finally:
            job.handle = None
        job.exit_code = outcome.exit_code

        if outcome.killed:
            raise JobCancelled(f"Encoder for {job.source} was stopped")
        if outcome.timed_out:
            raise TranscodeError(
                ErrorKind.TOOL_TIMEOUT,
                f"Encoder exceeded {self._cfg.job_timeout:.0f}s and was killed",
                exit_code=outcome.exit_code,
                stderr=outcome.stderr,
            )
        if outcome.exit_code != 0:
            raise TranscodeError(
                ErrorKind.TOOL_EXIT_NON_ZERO,
                f"Encoder exited with status {outcome.exit_code}",
                exit_code=outcome.exit_code,
                stderr=outcome.stderr,
            )
        if not (job.output_dir / MANIFEST_NAME).is_file():
            raise TranscodeError(
                ErrorKind.OUTPUT_INCOMPLETE,
                f"Encoder exited 0 but {MANIFEST_NAME} is missing",
                exit_code=outcome.exit_code,
                stderr=outcome.stderr,
            )
        return outcome

