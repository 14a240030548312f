"""
Notification Database Model.

In-app inbox the default notification gateway writes offers into.
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, Enum
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.core.clock import utcnow
import enum


class NotificationType(str, enum.Enum):
    INFO = "INFO"
    OFFER = "OFFER"
    OFFER_REVOKED = "OFFER_REVOKED"
    REQUEST_UPDATE = "REQUEST_UPDATE"


class Notification(Base):
    """
    In-App Notification.
    Stores messages for drivers and requesters.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Recipient
    user_id = Column(Integer, nullable=False, index=True)

    # Related trip request (offers are revoked by request)
    request_id = Column(String(36), nullable=True, index=True)

    # Content
    type = Column(Enum(NotificationType), default=NotificationType.INFO, nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    metadata_payload = Column(JSON, nullable=True)

    # State
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, user={self.user_id}, title='{self.title}')>"
