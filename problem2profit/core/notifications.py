"""
Notification sink.

Append-only log of user-facing notifications with a read flag. Writes happen
inside whatever transaction the caller provides; reads open their own session.
"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from problem2profit.core.types import ADMIN_ROLE, ADMINS_RECIPIENT
from problem2profit.database.connection import get_session_factory
from problem2profit.database.models import Notification, UserProfile

logger = structlog.get_logger(__name__)

NOTIFICATIONS_PAGE_SIZE = 50


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    """Convert a notification row to its API shape."""
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "message": notification.message,
        "link": notification.link,
        "read": notification.read,
        "created_at": notification.created_at.isoformat(),
    }


class NotificationService:
    """Writes and reads user notifications."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def notify(
        self, db: AsyncSession, user_id: str, message: str, link: str
    ) -> None:
        """
        Append a notification in the caller's transaction.

        Args:
            db: Session with an open transaction
            user_id: Recipient user id, or ``"admins"``
            message: Notification text
            link: Relative link to the related page
        """
        db.add(Notification(user_id=user_id, message=message, link=link, read=False))
        logger.info("notification_queued", user_id=user_id, link=link)

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """
        Latest notifications for a user, newest first.

        Admins also see notifications addressed to ``"admins"``.
        """
        async with self.session_factory() as db:
            user = await db.get(UserProfile, user_id)
            if user is None:
                return []

            recipients = [user_id]
            if user.role == ADMIN_ROLE:
                recipients.append(ADMINS_RECIPIENT)

            stmt = (
                select(Notification)
                .where(Notification.user_id.in_(recipients))
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(NOTIFICATIONS_PAGE_SIZE)
            )
            result = await db.execute(stmt)
            return [serialize_notification(n) for n in result.scalars().all()]

    async def mark_all_read(self, user_id: str) -> int:
        """
        Mark every unread notification of a user as read.

        Returns:
            int: Number of notifications updated
        """
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(Notification)
                    .where(
                        Notification.user_id == user_id,
                        Notification.read == False,  # noqa: E712
                    )
                    .values(read=True)
                )
        logger.info("notifications_marked_read", user_id=user_id, count=result.rowcount)
        return result.rowcount
