"""
Driver location database model.

Last known position of one driver, upserted by the driver's own client.
The matching engine only reads it.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, JSON
from dispatch_backend.app.db.session import Base
from dispatch_backend.app.core.clock import utcnow


class DriverLocation(Base):
    """
    Driver location record.

    A record older than the staleness threshold is ignored by candidate
    search regardless of its availability flag.
    """
    __tablename__ = "driver_locations"

    driver_id = Column(Integer, primary_key=True, autoincrement=False)

    # GPS coordinates
    latitude = Column(Float, nullable=False, index=True)
    longitude = Column(Float, nullable=False, index=True)

    # Vehicle
    capability_tags = Column(JSON, default=list, nullable=False)
    max_payload_tons = Column(Float, nullable=True)

    # Availability
    available = Column(Boolean, default=False, nullable=False)
    active_trip_id = Column(String(36), nullable=True)

    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<DriverLocation(driver_id={self.driver_id}, lat={self.latitude}, lng={self.longitude})>"
