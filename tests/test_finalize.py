"""Unit tests for output naming, artifact lookup and the finalize move."""

import errno
import os
import time

import pytest

from mediaqueue import finalize
from mediaqueue.exceptions import FinalizeError
from mediaqueue.finalize import (
    build_unique_output_path,
    clear_incomplete_marker,
    incomplete_marker_path,
    move_file_with_fallback,
    read_marker_job_id,
    resolve_downloaded_file,
    sanitize_file_name,
    write_incomplete_marker,
)
from mediaqueue.jobs import DownloadMode


class TestSanitizeFileName:
    """Test title to file name conversion."""

    def test_strips_path_breaking_characters(self):
        assert sanitize_file_name('a/b\\c:d*e?f"g<h>i|j') == "a_b_c_d_e_f_g_h_i_j"

    def test_collapses_whitespace_and_trailing_dots(self):
        assert sanitize_file_name("  My   Video \t Title... ") == "My Video Title"

    def test_tabs_collapse_and_other_control_characters_are_replaced(self):
        assert sanitize_file_name("Live\tSet\x00Part\x07Two") == "Live Set_Part_Two"

    def test_empty_falls_back(self):
        assert sanitize_file_name(" .. ") == "download"

    def test_length_is_capped(self):
        assert len(sanitize_file_name("x" * 500)) == 160


class TestUniqueOutputPath:
    """Test collision handling for target paths."""

    def test_plain_name(self, tmp_path):
        assert build_unique_output_path(tmp_path, "Song", DownloadMode.AUDIO) == tmp_path / "Song.mp3"

    def test_existing_file_gets_suffix(self, tmp_path):
        (tmp_path / "Clip.mp4").write_bytes(b"x")
        assert build_unique_output_path(tmp_path, "Clip", DownloadMode.VIDEO) == tmp_path / "Clip (1).mp4"

    def test_reserved_path_gets_suffix(self, tmp_path):
        reserved = [str(tmp_path / "Clip.mp4"), str(tmp_path / "Clip (1).mp4")]
        path = build_unique_output_path(tmp_path, "Clip", DownloadMode.VIDEO, reserved)
        assert path == tmp_path / "Clip (2).mp4"


class TestResolveDownloadedFile:
    """Test locating the artifact in a scratch directory."""

    def test_expected_name_wins(self, tmp_path):
        (tmp_path / "other.mp4").write_bytes(b"x")
        (tmp_path / "media.mp4").write_bytes(b"x")
        assert resolve_downloaded_file(tmp_path, "mp4") == tmp_path / "media.mp4"

    def test_newest_matching_file(self, tmp_path):
        older = tmp_path / "a.mp3"
        newer = tmp_path / "b.mp3"
        older.write_bytes(b"x")
        newer.write_bytes(b"x")
        now = time.time()
        os.utime(older, (now - 100, now - 100))
        os.utime(newer, (now, now))
        (tmp_path / "c.webm").write_bytes(b"x")
        assert resolve_downloaded_file(tmp_path, "mp3") == newer

    def test_nothing_found(self, tmp_path):
        (tmp_path / "media.webm").write_bytes(b"x")
        with pytest.raises(FinalizeError):
            resolve_downloaded_file(tmp_path, "mp4")


class TestMoveFileWithFallback:
    """Test the rename and the cross-device copy fallback."""

    def test_rename(self, tmp_path):
        source = tmp_path / "scratch" / "media.mp4"
        source.parent.mkdir()
        source.write_bytes(b"payload")
        destination = tmp_path / "out" / "Video.mp4"

        move_file_with_fallback(source, destination)

        assert destination.read_bytes() == b"payload"
        assert not source.exists()

    def test_cross_device_copies(self, tmp_path, monkeypatch):
        source = tmp_path / "media.mp4"
        source.write_bytes(b"payload")
        destination = tmp_path / "Video.mp4"

        def fail_rename(src, dst):
            raise OSError(errno.EXDEV, "Invalid cross-device link")

        monkeypatch.setattr(finalize.os, "rename", fail_rename)
        move_file_with_fallback(source, destination)

        assert destination.read_bytes() == b"payload"
        assert not source.exists()

    def test_other_errors_raise(self, tmp_path, monkeypatch):
        source = tmp_path / "media.mp4"
        source.write_bytes(b"payload")

        def fail_rename(src, dst):
            raise OSError(errno.EACCES, "Permission denied")

        monkeypatch.setattr(finalize.os, "rename", fail_rename)
        with pytest.raises(FinalizeError):
            move_file_with_fallback(source, tmp_path / "Video.mp4")
        assert source.exists()


class TestIncompleteMarker:
    """Test the finalize-in-progress marker helpers."""

    def test_write_read_clear(self, tmp_path):
        destination = tmp_path / "Video.mp4"
        write_incomplete_marker(destination, "job-42")

        marker = incomplete_marker_path(destination)
        assert marker.name == "Video.mp4.incomplete"
        assert read_marker_job_id(marker) == "job-42"

        clear_incomplete_marker(destination)
        assert not marker.exists()
        clear_incomplete_marker(destination)  # already gone
