"""Tests for media probing."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from api.errors import InputMissingError, ProbeError
from worker.prober import parse_probe_output, probe_media, validate_duration


def _ffprobe_json(streams, duration="12.5"):
    data = {"streams": streams}
    if duration is not None:
        data["format"] = {"duration": duration}
    return json.dumps(data).encode()


VIDEO_STREAM = {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080}
AUDIO_STREAM = {"codec_type": "audio", "codec_name": "aac"}


def _process(stdout=b"", stderr=b"", returncode=0):
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.returncode = returncode
    process.wait = AsyncMock(return_value=returncode)
    return process


class TestParseProbeOutput:
    def test_video_with_audio(self):
        probe = parse_probe_output(_ffprobe_json([VIDEO_STREAM, AUDIO_STREAM]))
        assert probe.has_video is True
        assert probe.has_audio is True
        assert (probe.width, probe.height) == (1920, 1080)
        assert probe.duration == 12.5
        assert probe.codec == "h264"

    def test_video_without_audio(self):
        probe = parse_probe_output(_ffprobe_json([VIDEO_STREAM]))
        assert probe.has_audio is False

    def test_audio_only_is_rejected(self):
        with pytest.raises(ProbeError) as exc_info:
            parse_probe_output(_ffprobe_json([AUDIO_STREAM]))
        assert exc_info.value.retryable is False
        assert "no video stream" in str(exc_info.value)

    def test_garbage_output(self):
        with pytest.raises(ProbeError) as exc_info:
            parse_probe_output(b"not json")
        assert exc_info.value.retryable is False

    def test_zero_dimensions_rejected(self):
        stream = dict(VIDEO_STREAM, width=0)
        with pytest.raises(ProbeError):
            parse_probe_output(_ffprobe_json([stream]))

    def test_falls_back_to_stream_duration(self):
        stream = dict(VIDEO_STREAM, duration="8.0")
        probe = parse_probe_output(_ffprobe_json([stream], duration=None))
        assert probe.duration == 8.0

    def test_unknown_duration_is_zero(self):
        probe = parse_probe_output(_ffprobe_json([VIDEO_STREAM], duration="N/A"))
        assert probe.duration == 0.0


class TestValidateDuration:
    def test_string_converted(self):
        assert validate_duration("3.5") == 3.5

    @pytest.mark.parametrize("value", [None, "abc", float("nan"), float("inf"), 0, -1, 10**9])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            validate_duration(value)


class TestProbeMedia:
    async def test_missing_file(self, tmp_path):
        with pytest.raises(InputMissingError) as exc_info:
            await probe_media(tmp_path / "missing.mp4")
        assert exc_info.value.retryable is True

    async def test_success(self, tmp_path):
        source = tmp_path / "in.mp4"
        source.write_bytes(b"data")
        process = _process(stdout=_ffprobe_json([VIDEO_STREAM, AUDIO_STREAM]))

        with patch("worker.prober.asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
            probe = await probe_media(source, ffprobe_path="/opt/ffprobe")

        assert probe.width == 1920
        assert spawn.call_args[0][0] == "/opt/ffprobe"
        assert spawn.call_args[0][-1] == str(source)

    async def test_nonzero_exit_is_deterministic(self, tmp_path):
        source = tmp_path / "in.mp4"
        source.write_bytes(b"data")
        process = _process(stderr=b"Invalid data found when processing input", returncode=1)

        with patch("worker.prober.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ProbeError) as exc_info:
                await probe_media(source)

        assert exc_info.value.retryable is False
        assert "Invalid data found" in str(exc_info.value)

    async def test_spawn_failure_is_transient(self, tmp_path):
        source = tmp_path / "in.mp4"
        source.write_bytes(b"data")

        with patch("worker.prober.asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("ffprobe"))):
            with pytest.raises(ProbeError) as exc_info:
                await probe_media(source)

        assert exc_info.value.retryable is True

    async def test_timeout_is_transient(self, tmp_path):
        source = tmp_path / "in.mp4"
        source.write_bytes(b"data")
        process = _process()
        process.communicate = AsyncMock(side_effect=asyncio.TimeoutError)
        process.kill = MagicMock()

        with patch("worker.prober.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ProbeError) as exc_info:
                await probe_media(source, timeout=0.1)

        assert exc_info.value.retryable is True
        assert exc_info.value.attempt_limit(3) == 2
        process.kill.assert_called_once()
