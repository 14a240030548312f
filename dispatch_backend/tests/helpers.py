"""
Shared test helpers: fakes for Redis and the notification gateway, request
and driver builders, and a polling helper for background rounds.
"""

import asyncio
import math
import inspect
from datetime import timedelta

from redis.exceptions import ConnectionError as RedisConnectionError

from dispatch_backend.app.core.clock import utcnow
from dispatch_backend.app.core.config import Settings
from dispatch_backend.app.core.exceptions import NotificationDeliveryFailure
from dispatch_backend.app.core.security import create_access_token
from dispatch_backend.app.models.enums import UserRole
from dispatch_backend.app.services.engine import DispatchEngine
from dispatch_backend.app.services.geo_index import EARTH_RADIUS_KM
from dispatch_backend.app.services.notification_gateway import NotificationGateway

# Pickup point used throughout the suite (Tel Aviv)
PICKUP = (32.0853, 34.7818)
KM_PER_DEGREE_LAT = EARTH_RADIUS_KM * math.pi / 180


def north_of(latitude: float, km: float) -> float:
    """Latitude `km` kilometres due north; exact under the haversine formula."""
    return latitude + km / KM_PER_DEGREE_LAT


def make_settings(**overrides) -> Settings:
    values = dict(
        acceptance_window_seconds=2.0,
        reaper_enabled=False,
        ledger_retry_attempts=5,
        ledger_retry_base_delay_seconds=0.01,
        max_matching_rounds=3,
        stalled_round_seconds=60.0,
    )
    values.update(overrides)
    return Settings(**values)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.sets = {}
        self.broken = False

    def _check(self):
        if self.broken:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.store[key] = value
        return True

    async def delete(self, key):
        self._check()
        removed = int(key in self.store) + int(key in self.sets)
        self.store.pop(key, None)
        self.sets.pop(key, None)
        return removed

    async def sadd(self, key, *members):
        self._check()
        members = {str(m) for m in members}
        existing = self.sets.setdefault(key, set())
        added = len(members - existing)
        existing |= members
        return added

    async def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))

    async def expire(self, key, seconds):
        self._check()
        return key in self.store or key in self.sets

    async def flushdb(self):
        self.store = {}
        self.sets = {}

    async def aclose(self):
        await self.flushdb()


class RecordingGateway(NotificationGateway):
    """Captures what the coordinator sends; can be told to fail."""

    def __init__(self):
        self.offers = []
        self.revocations = []
        self.requester_updates = []
        self.failing_drivers = set()
        self.fail_all = False

    def _maybe_fail(self, user_id):
        if self.fail_all or user_id in self.failing_drivers:
            raise NotificationDeliveryFailure(user_id, "push provider rejected the message")

    async def send_offer(self, driver_id, offer):
        self._maybe_fail(driver_id)
        self.offers.append((driver_id, offer))

    async def revoke_offer(self, driver_id, request_id, reason):
        self._maybe_fail(driver_id)
        self.revocations.append((driver_id, request_id, reason))

    async def notify_requester(self, requester_id, request_id, title, message, metadata=None):
        self._maybe_fail(requester_id)
        self.requester_updates.append((requester_id, request_id, title))

    def offered_drivers(self, request_id=None):
        return [driver_id for driver_id, offer in self.offers if request_id in (None, offer.request_id)]


async def eventually(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll `predicate` (sync or async) until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def request_facts(**overrides) -> dict:
    facts = dict(
        pickup_latitude=PICKUP[0],
        pickup_longitude=PICKUP[1],
        pickup_address="Dizengoff St 50, Tel Aviv",
        delivery_latitude=32.0700,
        delivery_longitude=34.7900,
        delivery_address="Building site, Yigal Alon St",
        material_type="sand",
        estimated_weight_tons=8.0,
        quoted_price=450.0,
    )
    facts.update(overrides)
    return facts


async def place_driver(engine: DispatchEngine, driver_id: int, km_north: float, **kwargs):
    """Report a fresh, available driver `km_north` kilometres north of the pickup."""
    return await engine.geo_index.upsert(
        driver_id=driver_id,
        latitude=north_of(PICKUP[0], km_north),
        longitude=PICKUP[1],
        **kwargs,
    )


async def open_round(engine: DispatchEngine, driver_ids, requester_id: int = 1, window_seconds: float = 30.0, **facts):
    """Create a request and open round 1 to `driver_ids` without running a round task."""
    request = await engine.ledger.create(requester_id, **request_facts(**facts))
    await engine.ledger.claim_round(request.id, 0)
    await engine.ledger.open_offer(request.id, 1, driver_ids, utcnow() + timedelta(seconds=window_seconds))
    return await engine.ledger.get(request.id)


def auth_headers(user_id: int, role: UserRole) -> dict:
    token = create_access_token({"sub": f"{role.value.lower()}_{user_id}", "user_id": user_id, "role": role.value})
    return {"Authorization": f"Bearer {token}"}


