"""Tests for the eligibility rules."""

import os

import pytest

from conftest import make_completed_output, write_video
from dash_watch.eligibility import (
    FAILED_MARKER,
    INCOMPLETE_MARKER,
    EligibilityFilter,
    output_dir_for,
)

ALLOWED = ["mp4", "avi", "mkv", "mov", "wmv", "flv"]


@pytest.fixture
def default_filter(watch_dir):
    return EligibilityFilter(watch_dir, set(ALLOWED))


@pytest.mark.parametrize("ext", ALLOWED + [e.upper() for e in ALLOWED] + ["Mp4"])
def test_allowed_extensions_accepted(default_filter, watch_dir, ext):
    path = write_video(watch_dir / f"clip.{ext}")

    assert default_filter.is_eligible(path)


@pytest.mark.parametrize("name", ["notes.txt", "clip.mp3", "clip.mp4.part", "clip", "manifest.mpd", "x.m4s"])
def test_other_extensions_rejected(default_filter, watch_dir, name):
    path = write_video(watch_dir / name)

    assert default_filter.describe(path) == "extension not allowed"


def test_directory_rejected(default_filter, watch_dir):
    d = watch_dir / "folder.mp4"
    d.mkdir()

    assert default_filter.describe(d) == "not a regular file"


def test_symlink_to_directory_rejected(default_filter, watch_dir, tmp_path):
    target = tmp_path / "elsewhere"
    target.mkdir()
    link = watch_dir / "link.mp4"
    os.symlink(target, link)

    assert not default_filter.is_eligible(link)


def test_missing_file_rejected(default_filter, watch_dir):
    assert not default_filter.is_eligible(watch_dir / "gone.mp4")


def test_file_inside_output_directory_rejected(default_filter, watch_dir):
    out = watch_dir / "movie"
    out.mkdir()
    nested = write_video(out / "chunk.mp4")

    assert default_filter.describe(nested) == "inside an output directory"


def test_file_outside_watch_folder_rejected(default_filter, tmp_path):
    path = write_video(tmp_path / "elsewhere.mp4")

    assert not default_filter.is_eligible(path)


def test_completed_output_marks_processed(default_filter, watch_dir):
    path = write_video(watch_dir / "sample.mp4")
    make_completed_output(path)

    assert default_filter.is_processed(path)
    assert default_filter.describe(path) == "already processed"


def test_manifest_with_incomplete_marker_is_not_processed(default_filter, watch_dir):
    path = write_video(watch_dir / "sample.mp4")
    out = make_completed_output(path)
    (out / INCOMPLETE_MARKER).touch()

    assert not default_filter.is_processed(path)
    assert default_filter.is_eligible(path)


def test_partial_output_without_manifest_is_not_processed(default_filter, watch_dir):
    path = write_video(watch_dir / "sample.mp4")
    out = output_dir_for(path)
    out.mkdir()
    (out / "init-stream0.m4s").write_bytes(b"x")

    assert default_filter.is_eligible(path)


def test_failed_output_blocks_retry(default_filter, watch_dir):
    path = write_video(watch_dir / "broken.mp4")
    out = output_dir_for(path)
    out.mkdir()
    (out / FAILED_MARKER).write_text("{}")

    assert default_filter.describe(path) == "previous attempt failed"


def test_output_dir_for_uses_stem(watch_dir):
    assert output_dir_for(watch_dir / "my.show.mkv") == watch_dir / "my.show"
