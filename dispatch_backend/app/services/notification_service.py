"""
Notification Service.

Handles creation and state management of in-app notifications, including
offer revocation by trip request.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update
from typing import Optional, Dict, Any

from dispatch_backend.app.core.clock import utcnow
from dispatch_backend.app.models.notification import Notification, NotificationType


class NotificationService:

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        request_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """Create a single notification."""
        notif = Notification(
            user_id=user_id,
            request_id=request_id,
            type=type,
            title=title,
            message=message,
            metadata_payload=metadata
        )
        db.add(notif)
        await db.flush()  # Caller commits
        return notif

    @staticmethod
    async def revoke_offers(db: AsyncSession, user_id: int, request_id: str) -> int:
        """Mark every live offer notification for this request as revoked."""
        now = utcnow()
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.request_id == request_id,
            Notification.type == NotificationType.OFFER,
            Notification.revoked_at.is_(None)
        ).values(
            revoked_at=now,
            is_read=True,
            read_at=now
        )
        result = await db.execute(stmt)
        return result.rowcount

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> bool:
        """Mark a notification as read."""
        stmt = update(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).values(
            is_read=True,
            read_at=utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: int) -> int:
        """Mark all notifications for user as read."""
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read.is_(False)
        ).values(
            is_read=True,
            read_at=utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount
