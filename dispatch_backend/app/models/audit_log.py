"""
Audit Log Database Model.

Tracks dispatch decisions (submissions, accepts, declines, cancellations)
for dispute resolution and operations review.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.core.clock import utcnow


class AuditLog(Base):
    """
    Audit log model for dispatch events.

    Events logged:
    - REQUEST_SUBMITTED / REQUEST_CANCELLED
    - OFFER_ACCEPTED / OFFER_DECLINED / OFFER_REJECTED
    - PICKUP_STARTED / DELIVERY_COMPLETED
    - SWEEP_TRIGGERED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_role = Column(String(20), nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # Which request it concerned
    request_id = Column(String(36), index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_id}, request={self.request_id})>"
