"""
TripRequest database model.

The unit of dispatch. Immutable facts are written once at submission; the
dispatch fields are only ever changed through RequestLedger conditional writes.
"""

import uuid

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Enum, JSON, Index, text
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.core.clock import utcnow
from dispatch_backend.app.models.enums import RequestStatus, TimingMode


def new_request_id() -> str:
    return str(uuid.uuid4())


class TripRequest(Base):
    """
    Trip request model.

    `assigned_driver_id` stays NULL while an offer is open so the acceptance
    compare-and-set can require it; it is set exactly once, on acceptance.
    """
    __tablename__ = "trip_requests"

    id = Column(String(36), primary_key=True, default=new_request_id)

    # Requester
    requester_id = Column(Integer, nullable=False, index=True)

    # Pickup / delivery
    pickup_latitude = Column(Float, nullable=False)
    pickup_longitude = Column(Float, nullable=False)
    pickup_address = Column(String(500), nullable=False)
    delivery_latitude = Column(Float, nullable=False)
    delivery_longitude = Column(Float, nullable=False)
    delivery_address = Column(String(500), nullable=False)

    # Load
    material_type = Column(String(100), nullable=False)
    load_description = Column(String(500), nullable=True)
    estimated_weight_tons = Column(Float, nullable=True)
    quoted_price = Column(Float, nullable=True)

    # Vehicle requirements
    required_capability = Column(String(50), nullable=True)
    requires_crane = Column(Boolean, default=False, nullable=False)
    requires_hydraulic_lift = Column(Boolean, default=False, nullable=False)

    # Timing
    timing_mode = Column(Enum(TimingMode), default=TimingMode.ASAP, nullable=False)
    scheduled_pickup_time = Column(DateTime, nullable=True)

    # Dispatch state
    status = Column(Enum(RequestStatus), default=RequestStatus.PENDING, nullable=False, index=True)
    assigned_driver_id = Column(Integer, nullable=True, index=True)
    acceptance_deadline = Column(DateTime, nullable=True, index=True)
    matching_round = Column(Integer, default=0, nullable=False)
    candidate_set_snapshot = Column(JSON, default=list, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    matching_started_at = Column(DateTime, nullable=True)
    matched_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    pickup_started_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_trip_requests_status_deadline", "status", "acceptance_deadline"),
        # One live job per driver; Enum columns store member names
        Index(
            "uq_trip_requests_live_driver",
            "assigned_driver_id",
            unique=True,
            postgresql_where=text("status IN ('ACCEPTED', 'IN_PROGRESS')"),
            sqlite_where=text("status IN ('ACCEPTED', 'IN_PROGRESS')"),
        ),
    )

    def required_tags(self) -> set[str]:
        """Capability tags a driver must carry to be offered this request."""
        tags = set()
        if self.required_capability:
            tags.add(self.required_capability)
        if self.requires_crane:
            tags.add("crane")
        if self.requires_hydraulic_lift:
            tags.add("hydraulic_lift")
        return tags

    def __repr__(self):
        return f"<TripRequest(id={self.id}, status='{self.status.value}', round={self.matching_round})>"
