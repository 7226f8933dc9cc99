"""Tests for the stability detector."""

import os
import time

from conftest import wait_for, write_video
from dash_watch.stability import FileFingerprint, StabilityDetector


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _append(path, data=b"more"):
    with open(path, "ab") as fh:
        fh.write(data)
    # make sure mtime moves even on coarse-grained filesystems
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000))


def test_fingerprint_of_missing_file_is_none(tmp_path):
    assert FileFingerprint.take(tmp_path / "nope.mp4") is None


def test_fingerprint_of_directory_is_none(tmp_path):
    assert FileFingerprint.take(tmp_path) is None


def test_stable_after_quiet_period(tmp_path):
    clock = FakeClock()
    det = StabilityDetector(5, lambda p: None, clock=clock)
    path = write_video(tmp_path / "a.mp4")

    det.track(path)
    clock.advance(4)
    assert det.collect_due() == []

    clock.advance(1)
    assert det.collect_due() == [path]
    assert det.pending_count == 0


def test_chunked_write_fires_once_after_last_chunk(tmp_path):
    """Events arriving inside the window keep pushing the deadline out."""
    clock = FakeClock()
    det = StabilityDetector(5, lambda p: None, clock=clock)
    path = write_video(tmp_path / "a.mp4")
    det.track(path)

    fired = []
    for _ in range(4):
        clock.advance(3)
        _append(path)
        det.track(path)
        fired += det.collect_due()
    assert fired == []

    clock.advance(4)
    assert det.collect_due() == []
    clock.advance(1)
    assert det.collect_due() == [path]
    clock.advance(10)
    assert det.collect_due() == []


def test_duplicate_events_keep_single_entry(tmp_path):
    clock = FakeClock()
    det = StabilityDetector(2, lambda p: None, clock=clock)
    path = write_video(tmp_path / "a.mp4")

    for _ in range(10):
        det.track(path)

    assert det.pending_count == 1
    clock.advance(2)
    assert det.collect_due() == [path]


def test_change_without_event_rearms(tmp_path):
    clock = FakeClock()
    det = StabilityDetector(2, lambda p: None, clock=clock)
    path = write_video(tmp_path / "a.mp4")
    det.track(path)

    _append(path)
    clock.advance(2)
    assert det.collect_due() == []
    assert det.pending_count == 1

    clock.advance(2)
    assert det.collect_due() == [path]


def test_vanished_file_is_discarded(tmp_path):
    clock = FakeClock()
    det = StabilityDetector(2, lambda p: None, clock=clock)
    path = write_video(tmp_path / "a.mp4")
    det.track(path)

    path.unlink()
    clock.advance(2)

    assert det.collect_due() == []
    assert det.pending_count == 0


def test_discard_drops_pending_state(tmp_path):
    det = StabilityDetector(2, lambda p: None)
    path = write_video(tmp_path / "a.mp4")
    det.track(path)

    det.discard(path)

    assert det.pending_files == []


def test_track_missing_file_is_ignored(tmp_path):
    det = StabilityDetector(2, lambda p: None)

    det.track(tmp_path / "nothing.mp4")

    assert det.pending_count == 0


def test_poller_invokes_callback_once(tmp_path):
    seen = []
    det = StabilityDetector(0.2, seen.append, poll_interval=0.02)
    path = write_video(tmp_path / "a.mp4")
    det.start()
    try:
        det.track(path)
        det.track(path)
        assert wait_for(lambda: seen == [path], timeout=5)
        time.sleep(0.3)
        assert seen == [path]
    finally:
        det.stop()


def test_callback_errors_do_not_stop_poller(tmp_path):
    seen = []

    def on_stable(p):
        seen.append(p)
        if len(seen) == 1:
            raise RuntimeError("boom")

    det = StabilityDetector(0.05, on_stable, poll_interval=0.02)
    first = write_video(tmp_path / "a.mp4")
    second = write_video(tmp_path / "b.mp4")
    det.start()
    try:
        det.track(first)
        assert wait_for(lambda: len(seen) == 1, timeout=5)
        det.track(second)
        assert wait_for(lambda: len(seen) == 2, timeout=5)
    finally:
        det.stop()
