"""
HLS manifest writing and validation.

Package layout for one video:

    {output_dir}/{video_id}/master.m3u8
    {output_dir}/{video_id}/v0/playlist.m3u8, segment_000.ts, ...
    {output_dir}/{video_id}/v1/...

The master playlist lists variants in plan order (ascending quality) and is
written last, through a temp file and os.replace, so it only ever appears
complete and only after every variant playlist was validated.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from config import HLS_MASTER_PLAYLIST, HLS_VARIANT_PLAYLIST
from worker.renditions import Rendition

logger = logging.getLogger(__name__)

SEGMENT_EXTENSIONS = (".ts", ".m4s")


def variant_dir_name(index: int) -> str:
    return f"v{index}"


def variant_playlist_path(index: int) -> str:
    """Variant playlist path relative to the package directory."""
    return f"{variant_dir_name(index)}/{HLS_VARIANT_PLAYLIST}"


def bandwidth_for(rendition: Rendition) -> int:
    """Declared BANDWIDTH in bits per second."""
    return rendition.bitrate * 1000


def render_master_playlist(plan: Sequence[Rendition]) -> str:
    """Render the master playlist text for a plan."""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for index, rendition in enumerate(plan):
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={bandwidth_for(rendition)},RESOLUTION={rendition.resolution}")
        lines.append(variant_playlist_path(index))
    return "\n".join(lines) + "\n"


def write_master_playlist(package_dir: Union[str, Path], plan: Sequence[Rendition]) -> Path:
    """
    Atomically write master.m3u8 into package_dir.

    Returns:
        Path of the written master playlist
    """
    if not plan:
        raise ValueError("Cannot write a master playlist for an empty plan")

    package_dir = Path(package_dir)
    master_path = package_dir / HLS_MASTER_PLAYLIST
    content = render_master_playlist(plan)

    fd, tmp_name = tempfile.mkstemp(dir=package_dir, prefix=".master.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, master_path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

    logger.debug(f"Wrote master playlist {master_path} ({len(plan)} variants)")
    return master_path


def validate_variant_playlist(
    playlist_path: Union[str, Path], check_segments: bool = True
) -> Tuple[bool, Optional[str]]:
    """
    Validate an HLS variant playlist is complete and well-formed.

    Args:
        playlist_path: Path to the .m3u8 playlist file
        check_segments: If True, also verify all referenced segments exist and are non-empty

    Returns:
        Tuple[bool, Optional[str]]: (is_valid, error_message)
        error_message is None if valid, otherwise describes the issue
    """
    playlist_path = Path(playlist_path)
    if not playlist_path.exists():
        return False, "Playlist file does not exist"

    try:
        content = playlist_path.read_text()
    except (IOError, OSError) as e:
        return False, f"Error reading playlist: {e}"

    if not content.startswith("#EXTM3U"):
        return False, "Missing #EXTM3U header"

    # End marker is only written when the encoder finished the variant
    if "#EXT-X-ENDLIST" not in content:
        return False, "Missing #EXT-X-ENDLIST (incomplete transcode)"

    if not check_segments:
        return True, None

    segment_count = 0
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.endswith(SEGMENT_EXTENSIONS):
            segment_path = playlist_path.parent / line
            if not segment_path.exists():
                return False, f"Missing segment file: {line}"
            if segment_path.stat().st_size == 0:
                return False, f"Empty segment file: {line}"
            segment_count += 1

    if segment_count == 0:
        return False, "Playlist contains no segment references"

    return True, None


def parse_master_playlist(master_path: Union[str, Path]) -> List[Tuple[int, str, str]]:
    """
    Parse a master playlist into (bandwidth, resolution, uri) entries.

    Raises:
        ValueError: If the file is not a master playlist or an entry is malformed
    """
    lines = [line.strip() for line in Path(master_path).read_text().splitlines() if line.strip()]
    if not lines or lines[0] != "#EXTM3U":
        raise ValueError("Missing #EXTM3U header")

    entries = []
    pending: Optional[dict] = None
    for line in lines[1:]:
        if line.startswith("#EXT-X-STREAM-INF:"):
            attrs = {}
            for part in line.split(":", 1)[1].split(","):
                if "=" in part:
                    key, value = part.split("=", 1)
                    attrs[key.strip()] = value.strip()
            if "BANDWIDTH" not in attrs:
                raise ValueError(f"Stream entry without BANDWIDTH: {line}")
            pending = attrs
        elif not line.startswith("#"):
            if pending is None:
                raise ValueError(f"URI without #EXT-X-STREAM-INF: {line}")
            entries.append((int(pending["BANDWIDTH"]), pending.get("RESOLUTION", ""), line))
            pending = None

    if pending is not None:
        raise ValueError("Trailing #EXT-X-STREAM-INF without URI")
    return entries
