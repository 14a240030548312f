"""
Driver API Endpoints.

Offer polling and responses, the driver's own location/availability feed,
and the pickup/delivery events that follow an accepted offer.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from dispatch_backend.app.db.session import get_db
from dispatch_backend.app.models.enums import ResponseOutcome, UserRole
from dispatch_backend.app.schemas.driver_location import AvailabilityUpdate, DriverLocationResponse, LocationUpdate
from dispatch_backend.app.schemas.offer import OfferResponseIn, OfferResponseOut, OfferView
from dispatch_backend.app.schemas.trip_request import TripRequestResponse
from dispatch_backend.app.core.dependencies import get_engine, require_role
from dispatch_backend.app.core.security import SessionContext
from dispatch_backend.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/driver", tags=["Driver - Offers"])

RESPONSE_MESSAGES = {
    ResponseOutcome.ACCEPTED: "Offer accepted",
    ResponseOutcome.TOO_LATE: "Too late, another driver took the job or the offer expired",
    ResponseOutcome.INVALID_ROUND: "This offer is no longer current",
    ResponseOutcome.NOT_OFFERED: "This offer was not sent to you",
    ResponseOutcome.DECLINED: "Offer declined",
}


@router.get("/offer", response_model=Optional[OfferView])
async def get_current_offer(
    session: SessionContext = Depends(require_role([UserRole.DRIVER])),
    engine=Depends(get_engine)
):
    """
    Current open offer for the calling driver, or null.

    `remaining_seconds` counts down to the acceptance deadline and never
    goes below zero.
    """
    return await engine.coordinator.get_offer(session.user_id)


@router.post("/offers/{request_id}/respond", response_model=OfferResponseOut)
async def respond_to_offer(
    response: OfferResponseIn,
    request_id: str = Path(..., description="Trip request ID"),
    session: SessionContext = Depends(require_role([UserRole.DRIVER])),
    engine=Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Accept or decline an offer (Driver only).

    Losing a race is a normal answer (`too_late`), not an error.
    Safe to retry: a repeated winning accept returns `accepted` again.
    """
    result = await engine.coordinator.respond_to_offer(
        request_id, session.user_id, response.round_number, response.decision
    )

    if result.outcome == ResponseOutcome.ACCEPTED:
        action = AuditAction.OFFER_ACCEPTED
    elif result.outcome == ResponseOutcome.DECLINED:
        action = AuditAction.OFFER_DECLINED
    else:
        action = AuditAction.OFFER_REJECTED

    await log_event(
        db=db,
        action=action,
        actor_id=session.user_id,
        actor_role=session.role.value,
        request_id=request_id,
        metadata={
            "round_number": response.round_number,
            "decision": response.decision.value,
            "outcome": result.outcome.value
        }
    )

    return OfferResponseOut(
        request_id=request_id,
        round_number=response.round_number,
        outcome=result.outcome,
        message=RESPONSE_MESSAGES[result.outcome]
    )


@router.put("/location", response_model=DriverLocationResponse)
async def update_location(
    update: LocationUpdate,
    session: SessionContext = Depends(require_role([UserRole.DRIVER])),
    engine=Depends(get_engine)
):
    """Report the driver's current position and vehicle capabilities."""
    record = await engine.geo_index.upsert(
        driver_id=session.user_id,
        latitude=update.latitude,
        longitude=update.longitude,
        capability_tags=update.capability_tags,
        available=update.available,
        active_trip_id=update.active_trip_id,
        max_payload_tons=update.max_payload_tons
    )
    return DriverLocationResponse.model_validate(record)


@router.patch("/availability", response_model=DriverLocationResponse)
async def update_availability(
    update: AvailabilityUpdate,
    session: SessionContext = Depends(require_role([UserRole.DRIVER])),
    engine=Depends(get_engine)
):
    """Go online or offline. Requires a prior location report."""
    record = await engine.geo_index.set_availability(session.user_id, update.available)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No location reported yet"
        )
    return DriverLocationResponse.model_validate(record)


@router.post("/requests/{request_id}/pickup", response_model=TripRequestResponse)
async def start_pickup(
    request_id: str = Path(..., description="Trip request ID"),
    session: SessionContext = Depends(require_role([UserRole.DRIVER])),
    engine=Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """Mark an accepted request as picked up (accepted -> in_progress)."""
    trip_request = await engine.coordinator.start_trip(request_id, session.user_id)

    await log_event(
        db=db,
        action=AuditAction.PICKUP_STARTED,
        actor_id=session.user_id,
        actor_role=session.role.value,
        request_id=request_id
    )

    return TripRequestResponse.model_validate(trip_request)


@router.post("/requests/{request_id}/deliver", response_model=TripRequestResponse)
async def complete_delivery(
    request_id: str = Path(..., description="Trip request ID"),
    session: SessionContext = Depends(require_role([UserRole.DRIVER])),
    engine=Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """Mark an in-progress request as delivered (in_progress -> delivered)."""
    trip_request = await engine.coordinator.complete_delivery(request_id, session.user_id)

    await log_event(
        db=db,
        action=AuditAction.DELIVERY_COMPLETED,
        actor_id=session.user_id,
        actor_role=session.role.value,
        request_id=request_id
    )

    return TripRequestResponse.model_validate(trip_request)
