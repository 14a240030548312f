"""
Admin Operations API Endpoints.

Dispatch statistics, the audit trail and a manual expiry sweep for
operations staff.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from dispatch_backend.app.db.session import get_db
from dispatch_backend.app.models.enums import UserRole
from dispatch_backend.app.schemas.admin import AuditEntry, DispatchStats, SweepResult
from dispatch_backend.app.core.dependencies import get_engine, require_role
from dispatch_backend.app.core.security import SessionContext
from dispatch_backend.app.services.audit import log_event, get_audit_trail, get_request_trail, AuditAction

router = APIRouter(prefix="/admin/dispatch", tags=["Admin - Dispatch"])


@router.get("/stats", response_model=DispatchStats)
async def dispatch_stats(
    session: SessionContext = Depends(require_role([UserRole.ADMIN])),
    engine=Depends(get_engine)
):
    """Request counts per status and driver response counts per outcome."""
    return DispatchStats(
        requests_by_status=await engine.ledger.status_counts(),
        responses_by_outcome=await engine.ledger.attempt_counts(),
        active_rounds=engine.coordinator.active_rounds
    )


@router.post("/sweep", response_model=SweepResult)
async def trigger_sweep(
    session: SessionContext = Depends(require_role([UserRole.ADMIN])),
    engine=Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Run one expiry sweep now.

    Expires overdue offers, re-matches or settles them, and restarts
    stalled requests. Safe to call while the background reaper runs.
    """
    counts = await engine.reaper.sweep()

    await log_event(
        db=db,
        action=AuditAction.SWEEP_TRIGGERED,
        actor_id=session.user_id,
        actor_role=session.role.value,
        metadata=counts
    )

    return SweepResult(**counts)


@router.get("/audit", response_model=List[AuditEntry])
async def recent_audit_entries(
    action: Optional[str] = Query(None, description="Filter by action, e.g. OFFER_ACCEPTED"),
    limit: int = Query(100, ge=1, le=500),
    session: SessionContext = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Most recent audit entries, newest first."""
    return await get_audit_trail(db, action=action, limit=limit)


@router.get("/requests/{request_id}/audit", response_model=List[AuditEntry])
async def request_audit_trail(
    request_id: str = Path(..., description="Trip request ID"),
    session: SessionContext = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Everything that happened to one request, oldest first (dispute resolution)."""
    return await get_request_trail(db, request_id)
