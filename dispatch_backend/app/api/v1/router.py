"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from dispatch_backend.app.api.v1.endpoints import (
    trip_requests, driver_offers, notifications, admin_ops
)

router = APIRouter()

# Requester endpoints
router.include_router(trip_requests.router)

# Driver endpoints (offers, location feed, trip events)
router.include_router(driver_offers.router)

# In-app notifications
router.include_router(notifications.router)

# Operations
router.include_router(admin_ops.router)
