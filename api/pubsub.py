"""
Redis Pub/Sub for real-time updates.

Channels:
- vidstream:notifications:{user_id} - Per-user notification feed
- vidstream:videos:{video_id} - Per-video status changes
- vidstream:videos:all - All video status changes

Publishing is best effort: with Redis down or unconfigured, every method
returns False and the durable rows remain the source of truth.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from api.redis_client import RedisClient
from config import REDIS_KEY_PREFIX

logger = logging.getLogger(__name__)


def channel_name(channel_type: str, entity_id: Optional[str] = None) -> str:
    """
    Generate consistent channel name.

    Args:
        channel_type: Type of channel (e.g., "notifications", "videos")
        entity_id: Optional entity identifier

    Returns:
        Full channel name (e.g., "vidstream:notifications:42")
    """
    if entity_id:
        return f"{REDIS_KEY_PREFIX}:{channel_type}:{entity_id}"
    return f"{REDIS_KEY_PREFIX}:{channel_type}"


async def _publish(channels, message: Dict[str, Any]) -> bool:
    client = await RedisClient.get_instance()
    payload = json.dumps(message, default=str)

    async def send(redis) -> bool:
        for channel in channels:
            await redis.publish(channel, payload)
        return True

    async def skip() -> bool:
        return False

    return await client.execute_with_fallback(send, skip)


class Publisher:
    """Publish updates to Redis Pub/Sub channels."""

    @staticmethod
    async def publish_notification(
        notification_id: int,
        user_id: int,
        message: str,
        notification_type: str,
        target_id: Optional[str] = None,
    ) -> bool:
        """Push a freshly stored notification to the user's feed channel."""
        return await _publish(
            [channel_name("notifications", str(user_id))],
            {
                "type": "notification",
                "id": notification_id,
                "user_id": user_id,
                "message": message,
                "notification_type": notification_type,
                "target_id": target_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    @staticmethod
    async def publish_video_status(
        video_id: str,
        status: str,
        hls_path: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Publish a video status change.

        Args:
            video_id: Public video id
            status: New status (processing, live, failed)
            hls_path: Master manifest path when live
            error: Error message when failed
        """
        return await _publish(
            [channel_name("videos", video_id), channel_name("videos", "all")],
            {
                "type": "video_status",
                "video_id": video_id,
                "status": status,
                "hls_path": hls_path,
                "error": error,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
