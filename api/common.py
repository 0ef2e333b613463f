"""
Common utilities shared between the upload path and the worker.
"""

import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

# Public video ids double as package directory names
VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,254}$")


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes retrieved from the database
    may be timezone-naive even though they were stored as UTC.

    Examples:
        >>> ensure_utc(None)
        None
        >>> ensure_utc(datetime(2024, 1, 1, 12, 0, 0))  # naive
        datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        # Assume naive datetimes from SQLite are UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def validate_video_id(video_id: Optional[str]) -> bool:
    """
    Check that a public video id is safe to use as a directory name.

    Rejects empty ids, path separators, dot segments, and anything outside
    letters, digits, dash and underscore.
    """
    if not video_id or not isinstance(video_id, str):
        return False
    return bool(VIDEO_ID_PATTERN.match(video_id))


def is_path_within(path: Union[str, Path], root: Union[str, Path]) -> bool:
    """True if path resolves to root itself or somewhere below it."""
    resolved = os.path.realpath(path)
    resolved_root = os.path.realpath(root)
    return resolved == resolved_root or resolved.startswith(resolved_root + os.sep)
