"""
Driver location schemas.
"""

from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class LocationUpdate(BaseModel):
    """Position report from the driver app."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    capability_tags: Optional[List[str]] = Field(None, description="e.g. ['tipper', 'crane']")
    max_payload_tons: Optional[float] = Field(None, gt=0)
    available: bool = True
    active_trip_id: Optional[str] = None


class AvailabilityUpdate(BaseModel):
    available: bool


class DriverLocationResponse(BaseModel):
    driver_id: int
    latitude: float
    longitude: float
    capability_tags: List[str]
    max_payload_tons: Optional[float]
    available: bool
    active_trip_id: Optional[str]
    updated_at: datetime

    class Config:
        from_attributes = True
