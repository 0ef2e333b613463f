"""
Notification trigger contract.

create_notification() stores one notification row and pushes it to the
user's pub/sub channel. Delivery to clients (sockets, email, push) is handled
elsewhere; this module only records and announces.
"""

import logging
from typing import List, Optional

import sqlalchemy as sa
from databases import Database

from api.database import notifications, users, utcnow
from api.db_retry import db_execute_with_retry, fetch_all_with_retry
from api.enums import NotificationType, UserRole
from api.pubsub import Publisher

logger = logging.getLogger(__name__)


class NotificationStore:
    """Writes notification rows and resolves recipients."""

    def __init__(self, db: Optional[Database] = None) -> None:
        if db is None:
            from api.database import database as db
        self.db = db

    async def create_notification(
        self,
        user_id: int,
        message: str,
        notification_type: str,
        target_id: Optional[str] = None,
    ) -> int:
        """
        Store a notification for a user and announce it.

        Args:
            user_id: Recipient
            message: Human-readable text
            notification_type: One of NotificationType
            target_id: Id of the object the notification is about

        Returns:
            The new notification id

        Raises:
            ValueError: If notification_type is unknown
        """
        kind = NotificationType(notification_type).value
        notification_id = await db_execute_with_retry(
            notifications.insert().values(
                user_id=user_id,
                message=message,
                type=kind,
                target_id=target_id,
                read=False,
                created_at=utcnow(),
            ),
            db=self.db,
        )
        logger.debug(f"Notification {notification_id} ({kind}) created for user {user_id}")

        published = await Publisher.publish_notification(notification_id, user_id, message, kind, target_id)
        if not published:
            logger.debug(f"Notification {notification_id} stored without realtime push")
        return notification_id

    async def admin_ids(self) -> List[int]:
        rows = await fetch_all_with_retry(
            sa.select(users.c.id).where(users.c.role == UserRole.ADMIN.value).order_by(users.c.id),
            db=self.db,
        )
        return [row["id"] for row in rows]

    async def for_user(self, user_id: int) -> list:
        """Notifications for a user, newest first."""
        return await fetch_all_with_retry(
            notifications.select()
            .where(notifications.c.user_id == user_id)
            .order_by(notifications.c.created_at.desc(), notifications.c.id.desc()),
            db=self.db,
        )
