"""
Assignment attempt database model.

One row per driver response to an offer.
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.core.clock import utcnow
from dispatch_backend.app.models.enums import Decision, ResponseOutcome


class AssignmentAttempt(Base):
    """Driver response to an offer, kept for audit and metrics."""
    __tablename__ = "assignment_attempts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    request_id = Column(String(36), ForeignKey("trip_requests.id"), nullable=False, index=True)
    driver_id = Column(Integer, nullable=False, index=True)
    round_number = Column(Integer, nullable=False)

    decision = Column(Enum(Decision), nullable=False)
    result = Column(Enum(ResponseOutcome), nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<AssignmentAttempt(request={self.request_id}, driver={self.driver_id}, round={self.round_number}, {self.decision.value})>"
