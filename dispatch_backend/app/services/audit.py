"""
Audit logging service for dispatch decisions.

Provides a durable trail of who submitted, accepted, declined or cancelled
what, for dispute resolution and operations review.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from dispatch_backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    REQUEST_SUBMITTED = "REQUEST_SUBMITTED"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"

    # Driver responses (OFFER_REJECTED covers too_late / invalid_round / not_offered)
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_DECLINED = "OFFER_DECLINED"
    OFFER_REJECTED = "OFFER_REJECTED"

    # Trip lifecycle
    PICKUP_STARTED = "PICKUP_STARTED"
    DELIVERY_COMPLETED = "DELIVERY_COMPLETED"

    # Operations
    SWEEP_TRIGGERED = "SWEEP_TRIGGERED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
    request_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Log a dispatch event to the audit log.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action
        actor_role: Role of the actor
        request_id: Trip request concerned (if applicable)
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        request_id=request_id,
        meta_data=metadata
    )

    db.add(audit_log)
    await db.commit()
    await db.refresh(audit_log)

    return audit_log


async def get_request_trail(
    db: AsyncSession,
    request_id: str,
    limit: int = 100
) -> list[AuditLog]:
    """Audit entries for one trip request, oldest first."""
    query = select(AuditLog).where(
        AuditLog.request_id == request_id
    ).order_by(AuditLog.timestamp, AuditLog.id).limit(limit)

    result = await db.execute(query)
    return result.scalars().all()


async def get_audit_trail(
    db: AsyncSession,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """Most recent audit entries, optionally filtered by action."""
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
