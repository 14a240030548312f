"""
Offer schemas.

What a driver sees while an offer is open, and the response they send back.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from dispatch_backend.app.models.enums import Decision, ResponseOutcome
from dispatch_backend.app.schemas.trip_request import Location


class OfferPayload(BaseModel):
    """Offer pushed to (or pulled by) a candidate driver."""
    request_id: str
    round_number: int
    deadline: datetime
    pickup: Location
    delivery: Location
    material_type: str
    estimated_weight_tons: Optional[float] = None
    quoted_price: Optional[float] = None
    distance_km: Optional[float] = Field(None, description="Driver to pickup, great-circle")


class OfferView(BaseModel):
    """GET /driver/offer response body."""
    offer: OfferPayload
    remaining_seconds: int


class OfferResponseIn(BaseModel):
    round_number: int = Field(..., ge=1)
    decision: Decision


class OfferResponseOut(BaseModel):
    request_id: str
    round_number: int
    outcome: ResponseOutcome
    message: str
