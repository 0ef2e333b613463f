"""Tests for rendition planning."""

import pytest

from worker.renditions import NATIVE_RENDITION_NAME, Rendition, plan_renditions


class TestPlanRenditions:
    """Tests for plan_renditions."""

    def test_full_hd_source_gets_every_tier(self):
        plan = plan_renditions(1920, 1080)
        assert [r.name for r in plan] == ["360p", "720p", "1080p"]
        assert [r.bitrate for r in plan] == [800, 2800, 5000]

    def test_larger_source_never_gets_more_than_ladder(self):
        plan = plan_renditions(3840, 2160)
        assert [r.name for r in plan] == ["360p", "720p", "1080p"]

    def test_720p_source(self):
        plan = plan_renditions(1280, 720)
        assert [r.resolution for r in plan] == ["640x360", "1280x720"]

    def test_small_source_gets_single_native_rendition(self):
        plan = plan_renditions(480, 360)
        assert plan == [Rendition(name=NATIVE_RENDITION_NAME, width=480, height=360, bitrate=800)]

    def test_tier_requires_both_dimensions(self):
        # Tall portrait video: wide enough for nothing
        plan = plan_renditions(360, 640)
        assert len(plan) == 1
        assert plan[0].name == NATIVE_RENDITION_NAME
        assert plan[0].resolution == "360x640"

    def test_no_upscaling(self):
        for width, height in ((640, 360), (1000, 700), (1920, 1080), (2000, 900)):
            for rendition in plan_renditions(width, height):
                assert rendition.width <= width
                assert rendition.height <= height

    def test_plan_is_ascending(self):
        plan = plan_renditions(1920, 1080)
        assert plan == sorted(plan, key=lambda r: r.width * r.height)

    def test_custom_tiers_are_sorted(self):
        tiers = [
            {"name": "hi", "width": 1280, "height": 720, "bitrate": 3000},
            {"name": "lo", "width": 320, "height": 180, "bitrate": 300},
        ]
        plan = plan_renditions(1280, 720, tiers=tiers)
        assert [r.name for r in plan] == ["lo", "hi"]

    @pytest.mark.parametrize("width,height", [(0, 1080), (1920, 0), (-1, 360)])
    def test_invalid_dimensions_rejected(self, width, height):
        with pytest.raises(ValueError):
            plan_renditions(width, height)

    def test_bitrate_arg(self):
        assert Rendition("360p", 640, 360, 800).bitrate_arg == "800k"
