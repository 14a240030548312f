"""
Trip request schemas.

Submission payload from the requester app and the request views returned
to requesters and drivers.
"""

from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import datetime

from dispatch_backend.app.models.enums import CancelOutcome, RequestStatus, TimingMode


class Location(BaseModel):
    """A geocoded address."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: str = Field(..., min_length=1, max_length=500)


class TripRequestCreate(BaseModel):
    """Schema for submitting a delivery request."""
    pickup: Location
    delivery: Location
    material_type: str = Field(..., min_length=1, max_length=100, description="e.g. sand, gravel, cement")
    load_description: Optional[str] = Field(None, max_length=500)
    estimated_weight_tons: Optional[float] = Field(None, gt=0)
    quoted_price: Optional[float] = Field(None, ge=0)

    required_capability: Optional[str] = Field(None, max_length=50, description="Truck type tag, e.g. 'tipper'")
    requires_crane: bool = False
    requires_hydraulic_lift: bool = False

    timing_mode: TimingMode = TimingMode.ASAP
    scheduled_pickup_time: Optional[datetime] = None

    @model_validator(mode="after")
    def check_schedule(self):
        if self.timing_mode == TimingMode.SCHEDULED and self.scheduled_pickup_time is None:
            raise ValueError("scheduled_pickup_time is required for scheduled requests")
        return self

    def to_facts(self) -> dict:
        """Flatten into TripRequest column values."""
        return {
            "pickup_latitude": self.pickup.latitude,
            "pickup_longitude": self.pickup.longitude,
            "pickup_address": self.pickup.address,
            "delivery_latitude": self.delivery.latitude,
            "delivery_longitude": self.delivery.longitude,
            "delivery_address": self.delivery.address,
            "material_type": self.material_type,
            "load_description": self.load_description,
            "estimated_weight_tons": self.estimated_weight_tons,
            "quoted_price": self.quoted_price,
            "required_capability": self.required_capability,
            "requires_crane": self.requires_crane,
            "requires_hydraulic_lift": self.requires_hydraulic_lift,
            "timing_mode": self.timing_mode,
            "scheduled_pickup_time": self.scheduled_pickup_time,
        }


class SubmitResponse(BaseModel):
    """Returned immediately; matching continues in the background."""
    request_id: str
    status: RequestStatus


class TripRequestResponse(BaseModel):
    """Full view of a trip request."""
    id: str
    requester_id: int
    status: RequestStatus
    timing_mode: TimingMode

    pickup_latitude: float
    pickup_longitude: float
    pickup_address: str
    delivery_latitude: float
    delivery_longitude: float
    delivery_address: str

    material_type: str
    load_description: Optional[str]
    estimated_weight_tons: Optional[float]
    quoted_price: Optional[float]
    required_capability: Optional[str]
    requires_crane: bool
    requires_hydraulic_lift: bool
    scheduled_pickup_time: Optional[datetime]

    assigned_driver_id: Optional[int]
    matching_round: int
    acceptance_deadline: Optional[datetime]
    candidate_set_snapshot: List[int] = []

    created_at: datetime
    updated_at: datetime
    accepted_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    pickup_started_at: Optional[datetime]
    delivered_at: Optional[datetime]

    class Config:
        from_attributes = True


class CancelResponse(BaseModel):
    request_id: str
    outcome: CancelOutcome
    message: str
