"""
Job dispatcher for DASH Watcher.

Turns stable, eligible paths into transcode jobs and runs them on a
fixed pool of threads, so no more than ``max_jobs`` encoders ever run
at once.  Excess jobs wait in FIFO order on a bounded queue.

Each path moves through ``PENDING -> RUNNING -> SUCCEEDED | FAILED``
(or ``CANCELLED`` if it turns ineligible before launch or the service
stops).  Finished jobs are never retried automatically: the filesystem markers
written by the worker keep them from being submitted again, and failures
that leave no marker are remembered for the life of the process.
"""

import logging
import os
import queue
import threading
import time
from collections.abc import Callable
from pathlib import Path

from dash_watch.eligibility import EligibilityFilter, is_failed_output, output_dir_for
from dash_watch.errors import ErrorKind, JobCancelled, TranscodeError
from dash_watch.jobs import Job, JobState
from dash_watch.worker import TranscodeWorker

logger = logging.getLogger(__name__)

# consecutive launch failures before the operator alert is raised
LAUNCH_FAILURE_ALERT_THRESHOLD = 3
_HISTORY_LIMIT = 1000
_KILL_JOIN_TIMEOUT = 10.0
# how often idle threads look at the stopping flag
_IDLE_POLL = 0.2


class JobDispatcher:
    """
    Schedules transcode jobs on a bounded thread pool.

    Parameters
    ----------
    worker : TranscodeWorker
        Runs a single job to completion.
    eligibility : EligibilityFilter
        Re-checked right before a job starts, since the output directory
        may have appeared after the job was queued.
    max_jobs : int
        Maximum number of jobs in RUNNING state.
    queue_size : int
        Capacity of the pending queue.
    on_job_finished : callable, optional
        Called with each job once it reaches a terminal state.
    """

    def __init__(
        self,
        worker: TranscodeWorker,
        eligibility: EligibilityFilter,
        max_jobs: int = 1,
        queue_size: int = 1024,
        on_job_finished: Callable[[Job], None] | None = None,
    ):
        if max_jobs < 1:
            raise ValueError("max_jobs must be at least 1")
        self._worker = worker
        self._eligibility = eligibility
        self._max_jobs = max_jobs
        self._on_job_finished = on_job_finished
        self._queue: queue.Queue[Job] = queue.Queue(maxsize=queue_size)
        # output dir -> job, for PENDING and RUNNING jobs only
        self._active: dict[Path, Job] = {}
        # sources that failed without leaving a failure record on disk
        self._failed: set[Path] = set()
        self._history: list[Job] = []
        self._launch_failures = 0
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []

    # ---- lifecycle ----

    def start(self) -> None:
        """Start the worker threads."""
        self._stopping.clear()
        self._threads = [
            threading.Thread(target=self._run, daemon=True, name=f"Dispatch-{n}")
            for n in range(1, self._max_jobs + 1)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Dispatcher started (max_jobs=%d)", self._max_jobs)

    def shutdown(self, grace: float = 30.0) -> None:
        """
        Stop accepting work, cancel queued jobs and give running ones
        *grace* seconds to finish before their encoders are killed.
        """
        self._stopping.set()
        self._drain_pending()

        deadline = time.monotonic() + grace
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        for job in self.active_jobs:
            job.cancel_requested.set()
            handle = job.handle
            if handle is not None:
                logger.warning("Stopping encoder for %s (shutdown)", job.source)
                handle.kill()
        for thread in self._threads:
            thread.join(timeout=_KILL_JOIN_TIMEOUT)
        self._threads = []
        self._drain_pending()
        logger.info("Dispatcher stopped.")

    # ---- submission ----

    def submit(self, path: Path) -> bool:
        """
        Queue *path* for encoding.

        Returns False without doing anything when the path (or another
        source with the same stem) already has a pending or running job,
        when it already failed in this run, when the dispatcher is
        stopping, or when the queue is full.
        """
        path = Path(os.path.abspath(path))
        out = output_dir_for(path)
        with self._lock:
            if self._stopping.is_set():
                return False
            if path in self._failed:
                logger.debug("Already failed in this run, not retrying: %s", path)
                return False
            current = self._active.get(out)
            if current is not None:
                if current.source == path:
                    logger.debug("Already queued or running: %s", path)
                else:
                    logger.warning(
                        "Not queuing %s: %s is already being written for %s",
                        path, out, current.source,
                    )
                return False
            job = Job.for_source(path)
            try:
                self._queue.put_nowait(job)
            except queue.Full:
                logger.error(
                    "Work queue full (%d jobs); not queuing %s. It will be picked "
                    "up on the next start.", self._queue.maxsize, path,
                )
                return False
            self._active[out] = job
        self._log_transition(job)
        return True

    # ---- status ----

    @property
    def max_jobs(self) -> int:
        return self._max_jobs

    @property
    def active_jobs(self) -> list[Job]:
        with self._lock:
            return list(self._active.values())

    @property
    def running_count(self) -> int:
        with self._lock:
            return sum(1 for j in self._active.values() if j.state is JobState.RUNNING)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for j in self._active.values() if j.state is JobState.PENDING)

    @property
    def history(self) -> list[Job]:
        """Return finished jobs, oldest first."""
        with self._lock:
            return list(self._history)

    def get(self, path: Path) -> Job | None:
        """Return the active job for *path*, else its most recent finished one."""
        path = Path(os.path.abspath(path))
        with self._lock:
            job = self._active.get(output_dir_for(path))
            if job is not None and job.source == path:
                return job
            for job in reversed(self._history):
                if job.source == path:
                    return job
        return None

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is pending or running.  Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                if not self._active:
                    return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.05)

    # ---- internals ----

    def _run(self) -> None:
        while True:
            try:
                job = self._queue.get(timeout=_IDLE_POLL)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                continue
            try:
                self._execute(job)
            finally:
                self._queue.task_done()

    def _execute(self, job: Job) -> None:
        try:
            if self._stopping.is_set():
                self._finish(job, JobState.CANCELLED, error="service stopping")
                return
            reason = self._eligibility.describe(job.source)
            if reason is not None:
                self._finish(job, JobState.CANCELLED, error=reason)
                return

            with self._lock:
                job.state = JobState.RUNNING
                job.started = time.time()
            self._log_transition(job)

            self._worker.run(job)
        except JobCancelled as exc:
            self._finish(job, JobState.CANCELLED, error=str(exc))
        except TranscodeError as exc:
            self._record_launch(exc.kind)
            self._finish(job, JobState.FAILED, error=str(exc), kind=exc.kind, stderr=exc.stderr)
        except Exception as exc:
            logger.exception("Unexpected error encoding %s", job.source)
            self._finish(job, JobState.FAILED, error=str(exc) or type(exc).__name__)
        else:
            self._record_launch(None)
            self._finish(job, JobState.SUCCEEDED)

    def _finish(
        self,
        job: Job,
        state: JobState,
        error: str = "",
        kind: ErrorKind | None = None,
        stderr: str = "",
    ) -> None:
        with self._lock:
            job.state = state
            job.finished = time.time()
            job.error = error
            job.error_kind = kind
            job.stderr = stderr
            if self._active.get(job.output_dir) is job:
                del self._active[job.output_dir]
            if state is JobState.FAILED and not is_failed_output(job.output_dir):
                self._failed.add(job.source)
            self._history.append(job)
            if len(self._history) > _HISTORY_LIMIT:
                self._history = self._history[-_HISTORY_LIMIT:]
        self._log_transition(job)
        if self._on_job_finished:
            try:
                self._on_job_finished(job)
            except Exception:
                logger.exception("Error in on_job_finished callback")

    def _record_launch(self, kind: ErrorKind | None) -> None:
        """Track consecutive launch failures and alert once per streak."""
        with self._lock:
            if kind is not ErrorKind.TOOL_LAUNCH_FAILED:
                # IO errors happen before launch and say nothing about the encoder
                if kind is not ErrorKind.IO_ERROR:
                    self._launch_failures = 0
                return
            self._launch_failures += 1
            streak = self._launch_failures
        if streak == LAUNCH_FAILURE_ALERT_THRESHOLD:
            logger.critical(
                "Encoder could not be started for %d jobs in a row; every job will "
                "fail until the encoder path is fixed. Operator action required.",
                streak,
            )

    def _drain_pending(self) -> None:
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                self._finish(job, JobState.CANCELLED, error="service stopping")
            finally:
                self._queue.task_done()

    def _log_transition(self, job: Job) -> None:
        state = job.state
        if state is JobState.FAILED:
            logger.error(
                "job state=%s path=%s output=%s kind=%s exit=%s duration=%.1fs error=%r\n%s",
                state.value, job.source, job.output_dir,
                job.error_kind.value if job.error_kind else "unexpected",
                job.exit_code, job.duration, job.error, job.stderr or "(no stderr)",
            )
        elif state is JobState.CANCELLED:
            logger.info("job state=%s path=%s reason=%r", state.value, job.source, job.error)
        elif state is JobState.SUCCEEDED:
            logger.info(
                "job state=%s path=%s output=%s duration=%.1fs",
                state.value, job.source, job.output_dir, job.duration,
            )
        else:
            logger.info("job state=%s path=%s", state.value, job.source)
