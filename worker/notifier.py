"""
Notifier bridge between the worker and the notification collaborator.

The worker never calls create_notification directly. Each send is isolated:
a failure to notify one recipient is logged and does not stop the others,
and never propagates into job handling.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Protocol, Set

from api.enums import NotificationType
from api.errors import truncate_error
from api.video_store import VideoRecord
from config import ERROR_LOG_MAX_LENGTH
from worker.metrics import NOTIFICATIONS_TOTAL

logger = logging.getLogger(__name__)

CreateNotification = Callable[[int, str, str, Optional[str]], Awaitable[object]]


class RecipientDirectory(Protocol):
    async def admin_ids(self) -> List[int]: ...


def ready_message(video: VideoRecord) -> str:
    return f'Your video "{video.title}" is now ready for streaming!'


def failure_message(video: VideoRecord, error: str) -> str:
    return f"Video transcoding failed for video ID: {video.video_id}. Error: {error}"


class NotifierBridge:
    """Sends pipeline notifications; tracks fire-and-forget dispatches."""

    def __init__(self, create_notification: CreateNotification, directory: RecipientDirectory) -> None:
        self._create = create_notification
        self._directory = directory
        self._pending: Set[asyncio.Task] = set()

    async def _send(self, user_id: int, message: str, kind: NotificationType, target_id: str) -> bool:
        try:
            await self._create(user_id, message, kind.value, target_id)
        except Exception as e:
            logger.error(f"Failed to notify user {user_id} ({kind.value}) for video {target_id}: {e}")
            NOTIFICATIONS_TOTAL.labels(type=kind.value, result="failed").inc()
            return False
        NOTIFICATIONS_TOTAL.labels(type=kind.value, result="sent").inc()
        return True

    async def notify_ready(self, video: VideoRecord) -> int:
        """Tell the uploader their video is live. Returns the number of messages sent."""
        if video.uploader_id is None:
            logger.info(f"Video {video.video_id} has no uploader, skipping ready notification")
            return 0
        sent = await self._send(video.uploader_id, ready_message(video), NotificationType.VIDEO_READY, video.id)
        return int(sent)

    async def notify_failure(self, video: VideoRecord, error: str) -> int:
        """Tell every administrator a video failed terminally. Returns the number of messages sent."""
        try:
            admin_ids = await self._directory.admin_ids()
        except Exception as e:
            logger.error(f"Failed to resolve administrators for failure of video {video.video_id}: {e}")
            return 0

        if not admin_ids:
            logger.warning(f"No administrators to notify about failure of video {video.video_id}")
            return 0

        message = failure_message(video, truncate_error(error, ERROR_LOG_MAX_LENGTH))
        sent = 0
        for admin_id in admin_ids:
            if await self._send(admin_id, message, NotificationType.TRANSCODING_FAILED, video.id):
                sent += 1
        return sent

    def dispatch_fire_and_forget(self, coro: Awaitable[int]) -> asyncio.Task:
        """Run a notify_* coroutine in the background."""

        async def _safe():
            try:
                return await coro
            except Exception as e:
                logger.error(f"Notification dispatch failed: {e}")
                return 0

        task = asyncio.get_running_loop().create_task(_safe())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_for_pending(self) -> None:
        """Wait for outstanding background dispatches (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
