"""
Admin API Schema Definitions.

Operations views over the dispatch engine.
"""

from pydantic import BaseModel
from typing import Any, Dict, Optional
from datetime import datetime


class DispatchStats(BaseModel):
    """Request counts per status and response counts per outcome."""
    requests_by_status: Dict[str, int]
    responses_by_outcome: Dict[str, int]
    active_rounds: int


class SweepResult(BaseModel):
    expired: int
    rematched: int
    exhausted: int
    recovered: int


class AuditEntry(BaseModel):
    """One audit log row."""
    id: int
    action: str
    actor_id: Optional[int]
    actor_role: Optional[str]
    request_id: Optional[str]
    meta_data: Optional[Dict[str, Any]]
    timestamp: datetime

    class Config:
        from_attributes = True
