"""
Media probing with ffprobe.

probe_media() inspects a source file and reports whether it has video and
audio, its dimensions and its duration. Nothing here is persisted.
"""

import asyncio
import json
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from api.errors import InputMissingError, ProbeError, truncate_error
from config import ERROR_SUMMARY_MAX_LENGTH, FFPROBE_PATH, FFPROBE_TIMEOUT

logger = logging.getLogger(__name__)

# One week; anything longer is corrupted metadata
MAX_DURATION_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class SourceProbe:
    has_video: bool
    has_audio: bool
    width: int
    height: int
    duration: float
    codec: str = "unknown"


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Args:
        duration: Duration value from ffprobe (accepts any input type)

    Returns:
        Validated duration as float

    Raises:
        ValueError: If duration is invalid, missing, or out of acceptable range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


def _pick_duration(data: dict, video_stream: dict) -> float:
    """Container duration, then the video stream's, then 0.0."""
    for source, raw in (
        ("format", data.get("format", {}).get("duration")),
        ("stream", video_stream.get("duration")),
    ):
        if raw is None:
            continue
        try:
            return validate_duration(raw)
        except ValueError as e:
            logger.warning(f"Ignoring {source} duration: {e}")
    return 0.0


def parse_probe_output(raw: Union[str, bytes]) -> SourceProbe:
    """
    Build a SourceProbe from ffprobe's JSON output.

    Raises:
        ProbeError: If the output is unparsable or has no usable video stream
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="ignore")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProbeError(f"Unparsable ffprobe output: {e}") from e
    if not isinstance(data, dict):
        raise ProbeError("Unparsable ffprobe output: expected a JSON object")

    streams = data.get("streams") or []
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    has_audio = any(s.get("codec_type") == "audio" for s in streams)

    if video_stream is None:
        raise ProbeError("Input file has no video stream")

    try:
        width = int(video_stream.get("width") or 0)
        height = int(video_stream.get("height") or 0)
    except (TypeError, ValueError) as e:
        raise ProbeError(f"Invalid video dimensions: {e}") from e
    if width <= 0 or height <= 0:
        raise ProbeError(f"Invalid video dimensions: {width}x{height}")

    return SourceProbe(
        has_video=True,
        has_audio=has_audio,
        width=width,
        height=height,
        duration=_pick_duration(data, video_stream),
        codec=video_stream.get("codec_name", "unknown"),
    )


async def probe_media(
    input_path: Union[str, Path],
    timeout: float = FFPROBE_TIMEOUT,
    ffprobe_path: Optional[str] = None,
) -> SourceProbe:
    """Get source metadata using ffprobe (async with timeout).

    Args:
        input_path: Path to the video file
        timeout: Maximum time to wait for ffprobe
        ffprobe_path: ffprobe binary (defaults to VIDSTREAM_FFPROBE_PATH)

    Returns:
        SourceProbe for the file

    Raises:
        InputMissingError: If the file does not exist
        ProbeError: If the file is unreadable, ffprobe fails or times out,
            or there is no video stream
    """
    input_path = Path(input_path)
    if not input_path.exists():
        raise InputMissingError(f"Input video file is inaccessible: {input_path}")
    if not os.access(input_path, os.R_OK):
        raise ProbeError(f"Input video file is not readable: {input_path}", transient=True)

    cmd = [
        ffprobe_path or FFPROBE_PATH,
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(input_path),
    ]

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise ProbeError(f"Could not start ffprobe: {e}", transient=True) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ProbeError(
            f"ffprobe timed out after {timeout}s (file may be on slow storage or corrupted)",
            transient=True,
        )

    if process.returncode != 0:
        detail = truncate_error(stderr.decode("utf-8", errors="ignore").strip(), ERROR_SUMMARY_MAX_LENGTH)
        raise ProbeError(f"ffprobe failed (exit code {process.returncode}): {detail or 'unreadable media'}")

    probe = parse_probe_output(stdout)
    logger.info(
        f"Probed {input_path.name}: {probe.width}x{probe.height}, {probe.duration:.1f}s, "
        f"codec={probe.codec}, audio={'yes' if probe.has_audio else 'no'}"
    )
    return probe
