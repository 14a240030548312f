"""
Trip Request API Endpoints.

Requesters submit "deliver now" requests, follow their status and cancel them.
Matching runs in the background; submission returns immediately.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_backend.app.db.session import get_db
from dispatch_backend.app.models.enums import CancelOutcome, UserRole
from dispatch_backend.app.schemas.trip_request import (
    CancelResponse,
    SubmitResponse,
    TripRequestCreate,
    TripRequestResponse,
)
from dispatch_backend.app.core.dependencies import get_engine, get_session_context, require_role
from dispatch_backend.app.core.exceptions import ResourceNotFoundError
from dispatch_backend.app.core.security import SessionContext
from dispatch_backend.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/requests", tags=["Requester - Trip Requests"])


@router.post("", response_model=SubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_request(
    request_data: TripRequestCreate,
    session: SessionContext = Depends(require_role([UserRole.REQUESTER])),
    engine=Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Submit a delivery request (Requester only).

    The request is stored as `pending` and the first matching round starts
    in the background.
    """
    trip_request = await engine.coordinator.submit_request(session.user_id, request_data.to_facts())

    # Audit log
    await log_event(
        db=db,
        action=AuditAction.REQUEST_SUBMITTED,
        actor_id=session.user_id,
        actor_role=session.role.value,
        request_id=trip_request.id,
        metadata={
            "timing_mode": trip_request.timing_mode.value,
            "material_type": trip_request.material_type
        }
    )

    return SubmitResponse(request_id=trip_request.id, status=trip_request.status)


@router.get("/{request_id}", response_model=TripRequestResponse)
async def get_request(
    request_id: str = Path(..., description="Trip request ID"),
    session: SessionContext = Depends(get_session_context),
    engine=Depends(get_engine)
):
    """
    View a trip request.

    Visible to its requester, its assigned driver and admins.
    """
    trip_request = await engine.ledger.get(request_id)
    if trip_request is None:
        raise ResourceNotFoundError("Trip request", request_id)

    allowed = (
        session.role == UserRole.ADMIN
        or (session.role == UserRole.REQUESTER and trip_request.requester_id == session.user_id)
        or (session.role == UserRole.DRIVER and trip_request.assigned_driver_id == session.user_id)
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this request"
        )

    return TripRequestResponse.model_validate(trip_request)


@router.post("/{request_id}/cancel", response_model=CancelResponse)
async def cancel_request(
    request_id: str = Path(..., description="Trip request ID"),
    session: SessionContext = Depends(require_role([UserRole.REQUESTER])),
    engine=Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Cancel a request (Requester only).

    Takes precedence over any accept that has not yet been recorded.
    Returns `already_terminal` once a driver has accepted or the request ended.
    """
    outcome = await engine.coordinator.cancel_request(request_id, session.user_id)

    if outcome == CancelOutcome.CANCELLED:
        await log_event(
            db=db,
            action=AuditAction.REQUEST_CANCELLED,
            actor_id=session.user_id,
            actor_role=session.role.value,
            request_id=request_id
        )
        message = "Request cancelled"
    else:
        message = "Request can no longer be cancelled"

    return CancelResponse(request_id=request_id, outcome=outcome, message=message)
