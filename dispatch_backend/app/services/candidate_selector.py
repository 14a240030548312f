"""
Candidate selection for a pending trip request.

Filters drivers through the GeoIndex and the ledger, then ranks them:
nearest first, ties to the driver who has waited longest since their last
assignment, then by driver id so the order is deterministic.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from dispatch_backend.app.core.clock import utcnow
from dispatch_backend.app.models.trip_request import TripRequest
from dispatch_backend.app.services.geo_index import GeoIndex
from dispatch_backend.app.services.request_ledger import RequestLedger


@dataclass(frozen=True)
class Candidate:
    """A driver eligible to receive an offer."""
    driver_id: int
    latitude: float
    longitude: float
    distance_km: float
    last_assigned_at: Optional[datetime]
    location_updated_at: datetime


def ranking_key(candidate: Candidate):
    # Never-assigned drivers sort before everyone else on a distance tie
    return (
        round(candidate.distance_km, 3),
        candidate.last_assigned_at or datetime.min,
        candidate.driver_id,
    )


class CandidateSelector:
    """Pure read: never mutates the ledger or the location feed."""

    def __init__(self, geo_index: GeoIndex, ledger: RequestLedger):
        self.geo_index = geo_index
        self.ledger = ledger

    async def find_candidates(
        self,
        request: TripRequest,
        max_radius_km: float,
        max_count: int,
        exclude: Iterable[int] = (),
    ) -> list[Candidate]:
        """
        Ordered candidates for `request` within `max_radius_km`.

        Args:
            request: Trip request to match
            max_radius_km: Great-circle radius around the pickup point
            max_count: Maximum number of candidates returned
            exclude: Driver ids to leave out (e.g. already offered)

        Returns:
            Up to `max_count` candidates, best first. Empty when nobody qualifies.
        """
        now = utcnow()
        nearby = await self.geo_index.nearby(
            request.pickup_latitude,
            request.pickup_longitude,
            max_radius_km,
            required_tags=request.required_tags(),
            min_payload_tons=request.estimated_weight_tons,
            now=now,
        )
        if not nearby:
            return []

        excluded = set(exclude) | await self.ledger.busy_driver_ids()
        nearby = [(record, distance) for record, distance in nearby if record.driver_id not in excluded]
        if not nearby:
            return []

        last_assigned = await self.ledger.last_assignment_times(
            [record.driver_id for record, _ in nearby]
        )
        candidates = [
            Candidate(
                driver_id=record.driver_id,
                latitude=record.latitude,
                longitude=record.longitude,
                distance_km=distance,
                last_assigned_at=last_assigned.get(record.driver_id),
                location_updated_at=record.updated_at,
            )
            for record, distance in nearby
        ]
        candidates.sort(key=ranking_key)
        return candidates[:max_count]
