"""Tests for the daemon runner."""

import logging
import threading

from conftest import wait_for, write_video
from dash_watch import service
from dash_watch.config import Config
from dash_watch.jobs import JobState


def test_check_config_prints_settings(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("WATCH_FOLDER", str(tmp_path))
    monkeypatch.setenv("VIDEO_EXTENSIONS", "mp4,mkv")

    assert service.main(["check-config"]) == 0

    out = capsys.readouterr().out
    assert f"watch_folder = {tmp_path}" in out
    assert "video_extensions = mkv,mp4" in out


def test_invalid_config_exits_with_status_2(monkeypatch):
    monkeypatch.setenv("FFMPEG_CRF", "best")
    monkeypatch.setattr(service, "setup_logging", lambda cfg=None: None)

    assert service.main(["check-config"]) == service.EXIT_CONFIG_INVALID
    assert service.main(["run"]) == service.EXIT_CONFIG_INVALID


def test_unknown_command_shows_help(capsys):
    assert service.main(["frobnicate"]) == 1
    assert "Usage:" in capsys.readouterr().out


def test_setup_logging_adds_rotating_file(tmp_path):
    cfg = Config(env={"WATCH_FOLDER": str(tmp_path), "LOG_FILE": str(tmp_path / "logs" / "dash.log")})
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        service.setup_logging(cfg)
        logging.getLogger("dash_watch.test").info("hello")
        for handler in root.handlers:
            handler.flush()
        assert "hello" in (tmp_path / "logs" / "dash.log").read_text(encoding="utf-8")
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved[0]:
            root.addHandler(handler)
        root.setLevel(saved[1])


def test_service_runs_until_stopped(make_config, watch_dir):
    svc = service.Service(make_config())
    runner = threading.Thread(target=svc.run_forever)
    runner.start()
    try:
        source = write_video(watch_dir / "sample.mp4")
        assert wait_for(
            lambda: (job := svc.dispatcher.get(source)) is not None and job.state.is_terminal,
            timeout=20,
        )
        assert svc.dispatcher.get(source).state is JobState.SUCCEEDED
    finally:
        svc.request_stop()
        runner.join(timeout=15)
    assert not runner.is_alive()
    assert not svc.watcher.is_running
