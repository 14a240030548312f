"""
GeoIndex - last known driver positions.

Answers "who is within radius R of point P, filtered by capability C".
A latitude/longitude bounding box narrows the SQL query; the exact
great-circle check runs in Python on the survivors.
"""

import math
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from dispatch_backend.app.core.clock import utcnow
from dispatch_backend.app.models.driver_location import DriverLocation
from dispatch_backend.app.services.capability import CapabilityLookup, TagCapabilityLookup
from dispatch_backend.app.db.session import store_errors

EARTH_RADIUS_KM = 6371.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in kilometers
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def bounding_box(latitude: float, longitude: float, radius_km: float):
    """
    Lat/lng box containing every point within `radius_km`.

    Returns (min_lat, max_lat, min_lng, max_lng); the longitude bounds are
    None when the box touches a pole or wraps the antimeridian.
    """
    angular = radius_km / EARTH_RADIUS_KM
    lat_delta = math.degrees(angular)
    min_lat, max_lat = latitude - lat_delta, latitude + lat_delta

    if min_lat <= -90 or max_lat >= 90 or angular >= math.pi / 2:
        return max(min_lat, -90.0), min(max_lat, 90.0), None, None

    lng_delta = math.degrees(math.asin(min(1.0, math.sin(angular) / math.cos(math.radians(latitude)))))
    min_lng, max_lng = longitude - lng_delta, longitude + lng_delta
    if min_lng < -180 or max_lng > 180:
        return min_lat, max_lat, None, None

    return min_lat, max_lat, min_lng, max_lng


class GeoIndex:
    """Read side of the driver location feed, plus the feed's upsert entry point."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        staleness_threshold_seconds: int = 300,
        capability_lookup: Optional[CapabilityLookup] = None,
    ):
        self._session_factory = session_factory
        self.staleness_threshold = timedelta(seconds=staleness_threshold_seconds)
        self.capability_lookup = capability_lookup or TagCapabilityLookup()

    async def nearby(
        self,
        latitude: float,
        longitude: float,
        radius_km: float,
        required_tags: Iterable[str] = (),
        min_payload_tons: Optional[float] = None,
        now=None,
    ) -> list[tuple[DriverLocation, float]]:
        """
        Available, idle, fresh drivers within `radius_km`, with their distance.

        Unordered; ranking is the CandidateSelector's job.
        """
        now = now or utcnow()
        required = set(required_tags)
        min_lat, max_lat, min_lng, max_lng = bounding_box(latitude, longitude, radius_km)

        query = select(DriverLocation).where(
            DriverLocation.available.is_(True),
            DriverLocation.active_trip_id.is_(None),
            DriverLocation.updated_at >= now - self.staleness_threshold,
            DriverLocation.latitude.between(min_lat, max_lat),
        )
        if min_lng is not None:
            query = query.where(DriverLocation.longitude.between(min_lng, max_lng))

        async with store_errors("geo_index.nearby"):
            async with self._session_factory() as db:
                result = await db.execute(query)
                records = result.scalars().all()

        matches = []
        for record in records:
            if not self.capability_lookup.is_compatible(required, record):
                continue
            if (
                min_payload_tons is not None
                and record.max_payload_tons is not None
                and record.max_payload_tons < min_payload_tons
            ):
                continue
            distance_km = haversine_distance(latitude, longitude, record.latitude, record.longitude)
            if distance_km <= radius_km:
                matches.append((record, distance_km))
        return matches

    async def position(self, driver_id: int) -> Optional[DriverLocation]:
        async with store_errors("geo_index.position"):
            async with self._session_factory() as db:
                result = await db.execute(
                    select(DriverLocation).where(DriverLocation.driver_id == driver_id)
                )
                return result.scalar_one_or_none()

    async def upsert(
        self,
        driver_id: int,
        latitude: float,
        longitude: float,
        capability_tags: Optional[list[str]] = None,
        available: bool = True,
        active_trip_id: Optional[str] = None,
        max_payload_tons: Optional[float] = None,
        updated_at=None,
    ) -> DriverLocation:
        """Record a driver's latest position (location feed entry point)."""
        async with store_errors("geo_index.upsert"):
            async with self._session_factory() as db:
                record = await db.get(DriverLocation, driver_id)
                if record is None:
                    record = DriverLocation(driver_id=driver_id)
                    db.add(record)
                record.latitude = latitude
                record.longitude = longitude
                if capability_tags is not None:
                    record.capability_tags = sorted(set(capability_tags))
                record.available = available
                record.active_trip_id = active_trip_id
                if max_payload_tons is not None:
                    record.max_payload_tons = max_payload_tons
                record.updated_at = updated_at or utcnow()
                await db.commit()
                return record

    async def set_availability(self, driver_id: int, available: bool) -> Optional[DriverLocation]:
        """Toggle the availability flag; returns None when the driver never reported a position."""
        async with store_errors("geo_index.set_availability"):
            async with self._session_factory() as db:
                record = await db.get(DriverLocation, driver_id)
                if record is None:
                    return None
                record.available = available
                await db.commit()
                return record
