"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class VideoStatus(str, Enum):
    """Status values stored on the video record."""

    PENDING = "pending"
    PROCESSING = "processing"
    LIVE = "live"
    FAILED = "failed"


class NotificationType(str, Enum):
    """Notification types emitted by the transcoding pipeline."""

    VIDEO_READY = "video_ready"
    TRANSCODING_FAILED = "transcoding_failed"


class UserRole(str, Enum):
    """Roles used to resolve notification recipients."""

    USER = "user"
    ADMIN = "admin"


class QueueMode(str, Enum):
    """Job queue backends."""

    DATABASE = "database"
    REDIS = "redis"
