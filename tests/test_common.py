"""Tests for shared helpers in api/common.py."""

from datetime import datetime, timedelta, timezone

import pytest

from api.common import ensure_utc, is_path_within, validate_video_id


class TestEnsureUtc:
    def test_none(self):
        assert ensure_utc(None) is None

    def test_naive_assumed_utc(self):
        result = ensure_utc(datetime(2024, 1, 1, 12, 0, 0))
        assert result == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_other_timezone_converted(self):
        plus_two = timezone(timedelta(hours=2))
        result = ensure_utc(datetime(2024, 1, 1, 14, 0, 0, tzinfo=plus_two))
        assert result.tzinfo == timezone.utc
        assert result.hour == 12


class TestValidateVideoId:
    @pytest.mark.parametrize("video_id", ["test-video", "abc123", "A_b-C", "x" * 255])
    def test_valid(self, video_id):
        assert validate_video_id(video_id)

    @pytest.mark.parametrize(
        "video_id",
        [None, "", "..", "../escape", "a/b", "a\\b", "-leading-dash", ".hidden", "spa ce", "x" * 256],
    )
    def test_invalid(self, video_id):
        assert not validate_video_id(video_id)


class TestIsPathWithin:
    def test_child(self, tmp_path):
        assert is_path_within(tmp_path / "a" / "b", tmp_path)

    def test_root_itself(self, tmp_path):
        assert is_path_within(tmp_path, tmp_path)

    def test_dot_dot_escape(self, tmp_path):
        assert not is_path_within(tmp_path / "a" / ".." / ".." / "other", tmp_path)

    def test_sibling_with_common_prefix(self, tmp_path):
        assert not is_path_within(tmp_path.parent / (tmp_path.name + "-evil"), tmp_path)

    def test_symlink_out_of_root(self, tmp_path):
        root = tmp_path / "root"
        outside = tmp_path / "outside"
        root.mkdir()
        outside.mkdir()
        (root / "link").symlink_to(outside)

        assert not is_path_within(root / "link", root)
