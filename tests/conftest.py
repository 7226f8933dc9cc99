import stat
import sys
import threading
import time
from pathlib import Path

import pytest

from dash_watch.config import Config
from dash_watch.eligibility import EligibilityFilter
from dash_watch.process import ProcessOutcome

# Stands in for ffmpeg: reads "-i <input>" and the trailing manifest path,
# then behaves according to the input file's content.
FAKE_FFMPEG = '''\
import sys, time
from pathlib import Path

args = sys.argv[1:]
source = Path(args[args.index("-i") + 1])
manifest = Path(args[-1])
out = manifest.parent
data = source.read_bytes()

if not data:
    sys.stderr.write(f"{source}: Invalid data found when processing input\\n")
    sys.exit(1)
if data.startswith(b"SLEEP"):
    (out / "init-stream0.m4s").write_bytes(b"init")
    manifest.write_text("<MPD/>")
    time.sleep(60)
    sys.exit(0)
if data.startswith(b"NOMANIFEST"):
    (out / "init-stream0.m4s").write_bytes(b"init")
    sys.exit(0)
for stream in (0, 1):
    (out / f"init-stream{stream}.m4s").write_bytes(b"init")
    for n in (1, 2):
        (out / f"chunk-stream{stream}-{n:05d}.m4s").write_bytes(b"chunk")
manifest.write_text('<?xml version="1.0"?><MPD/>')
sys.stderr.write("encoded\\n")
'''


@pytest.fixture
def watch_dir(tmp_path) -> Path:
    d = tmp_path / "watch"
    d.mkdir()
    return d


@pytest.fixture
def fake_ffmpeg(tmp_path) -> Path:
    script = tmp_path / "bin" / "ffmpeg"
    script.parent.mkdir()
    script.write_text(f"#!{sys.executable}\n{FAKE_FFMPEG}", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def make_config(watch_dir, fake_ffmpeg):
    """Build an isolated Config; keyword arguments override env keys."""

    def _make(**overrides: str) -> Config:
        env = {
            "WATCH_FOLDER": str(watch_dir),
            "FFMPEG_PATH": str(fake_ffmpeg),
            "STABLE_SECONDS": "0.2",
            "JOB_TIMEOUT_SECONDS": "30",
        }
        env.update(overrides)
        return Config(env=env)

    return _make


@pytest.fixture
def eligibility(watch_dir) -> EligibilityFilter:
    return EligibilityFilter(watch_dir, {"mp4", "mkv", "avi"})


def write_video(path: Path, data: bytes = b"\x00\x00\x00\x18ftypmp42") -> Path:
    path.write_bytes(data)
    return path


def make_completed_output(source: Path) -> Path:
    out = source.parent / source.stem
    out.mkdir()
    (out / "manifest.mpd").write_text("<MPD/>")
    (out / "init-stream0.m4s").write_bytes(b"init")
    return out


class FakeHandle:
    """In-process stand-in for a running encoder."""

    def __init__(self, launcher: "FakeLauncher", args: list[str]):
        self.pid = 0
        self.args = args
        self._launcher = launcher
        self._killed = threading.Event()

    def wait(self, timeout):
        launcher = self._launcher
        with launcher.lock:
            launcher.running += 1
            launcher.max_running = max(launcher.max_running, launcher.running)
        try:
            deadline = time.monotonic() + (timeout if timeout is not None else 3600)
            while not (launcher.release.is_set() or self._killed.is_set()):
                if time.monotonic() >= deadline:
                    return ProcessOutcome(exit_code=-9, timed_out=True)
                time.sleep(0.01)
            if self._killed.is_set():
                return ProcessOutcome(exit_code=-9, killed=True)
            manifest = Path(self.args[-1])
            if launcher.write_manifest:
                manifest.write_text("<MPD/>")
            return ProcessOutcome(exit_code=launcher.exit_code, stderr=launcher.stderr)
        finally:
            with launcher.lock:
                launcher.running -= 1

    def kill(self):
        self._killed.set()


class FakeLauncher:
    """Records spawns; encodes finish when ``release`` is set."""

    def __init__(self, exit_code: int = 0, write_manifest: bool = True, stderr: str = ""):
        self.exit_code = exit_code
        self.write_manifest = write_manifest
        self.stderr = stderr
        self.release = threading.Event()
        self.lock = threading.Lock()
        self.spawned: list[list[str]] = []
        self.running = 0
        self.max_running = 0
        self.launch_error: OSError | None = None

    def spawn(self, args):
        if self.launch_error is not None:
            raise self.launch_error
        with self.lock:
            self.spawned.append(list(args))
        return FakeHandle(self, list(args))


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
