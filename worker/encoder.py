"""
Encoder driver: runs ffmpeg to produce an HLS package for a rendition plan.

By default every rendition is encoded by one ffmpeg process with one HLS
output per rendition, so the source is decoded once. With
VIDSTREAM_ENCODER_MULTI_OUTPUT=false each rendition gets its own process,
stopping at the first failure.

Any failure (spawn error, non-zero exit, timeout, incomplete variant) fails the
whole encode with EncodeError. The master playlist is written only after every
variant playlist validated. The input file is never touched.
"""

import asyncio
import collections
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from api.errors import EncodeError, truncate_error
from config import (
    AUDIO_BITRATE,
    ENCODER_MULTI_OUTPUT,
    ERROR_DETAIL_MAX_LENGTH,
    FFMPEG_PATH,
    FFMPEG_TIMEOUT_BASE_MULTIPLIER,
    FFMPEG_TIMEOUT_MAXIMUM,
    FFMPEG_TIMEOUT_MINIMUM,
    FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS,
    HLS_MASTER_PLAYLIST,
    HLS_SEGMENT_DURATION,
    HLS_SEGMENT_PATTERN,
    HLS_VARIANT_PLAYLIST,
    THUMBNAIL_TIMESTAMP,
    THUMBNAIL_WIDTH,
    X264_PRESET,
)
from worker.manifest import validate_variant_playlist, variant_dir_name, write_master_playlist
from worker.renditions import Rendition

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]

# Lines of ffmpeg stderr kept for error messages
STDERR_TAIL_LINES = 20
THUMBNAIL_FILENAME = "thumbnail.jpg"


def calculate_ffmpeg_timeout(duration: float, height: int = 1080) -> float:
    """
    Calculate appropriate timeout for ffmpeg transcoding based on video duration and resolution.

    Higher resolutions take longer to encode, so timeouts scale accordingly.

    Args:
        duration: Video duration in seconds (0 when unknown)
        height: Target resolution height (e.g., 360, 720, 1080)

    Returns:
        Timeout in seconds, clamped between min and max values
    """
    if duration <= 0:
        # Unknown length: only the hard ceiling applies
        return float(FFMPEG_TIMEOUT_MAXIMUM)
    resolution_multiplier = FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS.get(height, 2.0)
    timeout = duration * FFMPEG_TIMEOUT_BASE_MULTIPLIER * resolution_multiplier
    return max(FFMPEG_TIMEOUT_MINIMUM, min(timeout, FFMPEG_TIMEOUT_MAXIMUM))


def plan_timeout(duration: float, plan: Sequence[Rendition]) -> float:
    """Timeout for encoding a whole plan in one process."""
    total = sum(calculate_ffmpeg_timeout(duration, r.height) for r in plan)
    return min(total, float(FFMPEG_TIMEOUT_MAXIMUM))


def _even(value: int) -> int:
    """libx264 needs even dimensions."""
    return max(2, value - value % 2)


def build_output_args(
    package_dir: Union[str, Path],
    index: int,
    rendition: Rendition,
    has_audio: bool,
) -> List[str]:
    """ffmpeg output options for one rendition's HLS output."""
    variant_dir = Path(package_dir) / variant_dir_name(index)
    args = [
        "-map",
        "0:v:0",
        "-c:v",
        "libx264",
        "-preset",
        X264_PRESET,
        "-profile:v",
        "main",
        "-vf",
        f"scale={_even(rendition.width)}:{_even(rendition.height)}",
        "-b:v",
        rendition.bitrate_arg,
    ]
    if has_audio:
        args.extend(["-map", "0:a:0", "-c:a", "aac", "-b:a", AUDIO_BITRATE])
    else:
        args.append("-an")
    args.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            str(HLS_SEGMENT_DURATION),
            "-hls_list_size",
            "0",
            "-hls_playlist_type",
            "vod",
            "-hls_segment_filename",
            str(variant_dir / HLS_SEGMENT_PATTERN),
            str(variant_dir / HLS_VARIANT_PLAYLIST),
        ]
    )
    return args


def _input_args(input_path: Union[str, Path], ffmpeg_path: Optional[str]) -> List[str]:
    return [
        ffmpeg_path or FFMPEG_PATH,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostats",
        "-progress",
        "pipe:1",
        "-i",
        str(input_path),
    ]


def build_multi_output_command(
    input_path: Union[str, Path],
    package_dir: Union[str, Path],
    plan: Sequence[Rendition],
    has_audio: bool,
    ffmpeg_path: Optional[str] = None,
) -> List[str]:
    """One ffmpeg invocation producing every rendition in the plan."""
    cmd = _input_args(input_path, ffmpeg_path)
    for index, rendition in enumerate(plan):
        cmd.extend(build_output_args(package_dir, index, rendition, has_audio))
    return cmd


def build_rendition_command(
    input_path: Union[str, Path],
    package_dir: Union[str, Path],
    index: int,
    rendition: Rendition,
    has_audio: bool,
    ffmpeg_path: Optional[str] = None,
) -> List[str]:
    """ffmpeg invocation for a single rendition (sequential mode)."""
    return _input_args(input_path, ffmpeg_path) + build_output_args(package_dir, index, rendition, has_audio)


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Kill and reap an ffmpeg subprocess if it is still running.

    Handles the race where the process exits between checking returncode and kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Already terminated
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg_with_progress(
    cmd: List[str],
    duration: float,
    timeout: float,
    progress_callback: Optional[ProgressCallback] = None,
    context: str = "FFmpeg",
) -> Tuple[bool, Optional[str]]:
    """
    Run an ffmpeg command with timeout and progress tracking.

    Progress comes from `-progress pipe:1` on stdout (out_time_ms=...). stderr is
    drained concurrently so a chatty encoder cannot block on a full pipe; its
    tail is kept for the error message.

    Args:
        cmd: ffmpeg command as list of arguments
        duration: Source duration in seconds (for progress calculation)
        timeout: Maximum time to wait for ffmpeg to complete
        progress_callback: Optional async callback for progress updates (0-100)
        context: Description for logging

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return False, f"{context} could not be started: {e}"

    last_progress = 0
    stderr_tail: collections.deque = collections.deque(maxlen=STDERR_TAIL_LINES)
    loop = asyncio.get_running_loop()
    start_time = loop.time()
    timed_out = False

    async def read_progress():
        nonlocal last_progress
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            line_str = line.decode("utf-8", errors="ignore").strip()
            if not line_str.startswith("out_time_ms="):
                continue
            try:
                # Despite the name, ffmpeg reports microseconds here
                current_seconds = int(line_str.split("=", 1)[1]) / 1000000.0
            except (ValueError, IndexError):
                # Malformed progress lines (e.g. "N/A") are skipped
                continue
            if duration > 0:
                progress = min(100, int(current_seconds / duration * 100))
                if progress > last_progress:
                    last_progress = progress
                    if progress_callback:
                        await progress_callback(progress)

    async def read_stderr():
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="ignore").strip()
            if text:
                stderr_tail.append(text)

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        logger.warning(f"{context} exceeded {timeout:.0f}s limit, killing")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    timeout_task = asyncio.create_task(timeout_killer())
    try:
        await asyncio.gather(read_progress(), read_stderr())
        await process.wait()
    finally:
        timeout_task.cancel()
        try:
            await timeout_task
        except asyncio.CancelledError:
            pass
        await cleanup_ffmpeg_process(process, context)

    if timed_out:
        elapsed = loop.time() - start_time
        return False, f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)"

    if process.returncode != 0:
        detail = " | ".join(stderr_tail)
        error_msg = f"{context} exited with code {process.returncode}"
        if detail:
            error_msg = f"{error_msg}: {detail}"
        logger.error(truncate_error(error_msg, ERROR_DETAIL_MAX_LENGTH))
        return False, error_msg

    return True, None


async def encode_hls(
    input_path: Union[str, Path],
    package_dir: Union[str, Path],
    plan: Sequence[Rendition],
    has_audio: bool,
    duration: float,
    progress_callback: Optional[ProgressCallback] = None,
    multi_output: Optional[bool] = None,
    ffmpeg_path: Optional[str] = None,
) -> Path:
    """
    Encode a plan into an HLS package and write its master playlist.

    Args:
        input_path: Source file
        package_dir: {output_dir}/{video_id}
        plan: Renditions to produce, ascending
        has_audio: Whether to map the first audio stream
        duration: Source duration (progress and timeout)
        progress_callback: Optional async callback for overall progress (0-100)
        multi_output: Override VIDSTREAM_ENCODER_MULTI_OUTPUT
        ffmpeg_path: Override VIDSTREAM_FFMPEG_PATH

    Returns:
        Path of the master playlist

    Raises:
        EncodeError: If any rendition failed or is incomplete
    """
    if not plan:
        raise EncodeError("Empty rendition plan")
    if multi_output is None:
        multi_output = ENCODER_MULTI_OUTPUT

    package_dir = Path(package_dir)
    try:
        for index in range(len(plan)):
            (package_dir / variant_dir_name(index)).mkdir(parents=True, exist_ok=True)
        # A master left by an earlier attempt must not outlive this one
        (package_dir / HLS_MASTER_PLAYLIST).unlink(missing_ok=True)
    except OSError as e:
        raise EncodeError(f"Could not prepare output directory {package_dir}: {e}") from e

    names = ", ".join(r.name for r in plan)
    if multi_output:
        logger.info(f"Encoding {len(plan)} rendition(s) in one pass: {names}")
        cmd = build_multi_output_command(input_path, package_dir, plan, has_audio, ffmpeg_path)
        success, error = await run_ffmpeg_with_progress(
            cmd, duration, plan_timeout(duration, plan), progress_callback, context="FFmpeg"
        )
        if not success:
            raise EncodeError(f"FFmpeg transcoding failed: {error}")
    else:
        logger.info(f"Encoding {len(plan)} rendition(s) sequentially: {names}")
        for index, rendition in enumerate(plan):

            async def scaled(progress: int, index: int = index) -> None:
                if progress_callback:
                    await progress_callback((index * 100 + progress) // len(plan))

            cmd = build_rendition_command(input_path, package_dir, index, rendition, has_audio, ffmpeg_path)
            success, error = await run_ffmpeg_with_progress(
                cmd,
                duration,
                calculate_ffmpeg_timeout(duration, rendition.height),
                scaled,
                context=f"FFmpeg {rendition.name}",
            )
            if not success:
                raise EncodeError(f"FFmpeg transcoding failed for {rendition.name}: {error}")

    for index, rendition in enumerate(plan):
        playlist = package_dir / variant_dir_name(index) / HLS_VARIANT_PLAYLIST
        valid, error = validate_variant_playlist(playlist)
        if not valid:
            raise EncodeError(f"Rendition {rendition.name} is incomplete: {error}")

    try:
        master_path = write_master_playlist(package_dir, plan)
    except OSError as e:
        raise EncodeError(f"Could not write master playlist: {e}") from e

    if progress_callback:
        await progress_callback(100)
    logger.info(f"HLS package ready: {master_path}")
    return master_path


async def generate_thumbnail(
    input_path: Union[str, Path],
    package_dir: Union[str, Path],
    duration: float = 0.0,
    timeout: float = 60.0,
    ffmpeg_path: Optional[str] = None,
) -> Optional[Path]:
    """Extract one JPEG frame into the package directory.

    Never fatal: failures are logged and None is returned.

    Args:
        input_path: Source file
        package_dir: Package directory to write thumbnail.jpg into
        duration: Source duration; the frame is taken before its midpoint
        timeout: Maximum time to wait for ffmpeg
    """
    output_path = Path(package_dir) / THUMBNAIL_FILENAME
    timestamp = THUMBNAIL_TIMESTAMP
    if duration > 0:
        timestamp = min(timestamp, duration / 2)

    # Input seeking (-ss before -i) jumps to the nearest keyframe without decoding up to it
    cmd = [
        ffmpeg_path or FFMPEG_PATH,
        "-y",
        "-ss",
        f"{timestamp:.3f}",
        "-i",
        str(input_path),
        "-vframes",
        "1",
        "-vf",
        f"scale={THUMBNAIL_WIDTH}:-2",
        str(output_path),
    ]

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        logger.warning(f"Thumbnail generation could not start: {e}")
        return None

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await cleanup_ffmpeg_process(process, "Thumbnail")
        logger.warning(f"Thumbnail generation timed out after {timeout}s")
        return None

    if process.returncode != 0 or not output_path.exists():
        error_msg = truncate_error(stderr.decode("utf-8", errors="ignore"), ERROR_DETAIL_MAX_LENGTH)
        logger.warning(f"Thumbnail generation failed: {error_msg}")
        return None

    return output_path
