"""
Ephemeral matching round records.

One JSON record per (request, round) plus a set of declining drivers, both in
Redis with a TTL. The ledger stays authoritative: losing these records only
loses audit detail and decline bookkeeping, so Redis failures are logged and
the engine carries on.
"""

import json
import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel
from redis.exceptions import RedisError

from dispatch_backend.app.models.enums import OfferMode, RoundOutcome

logger = logging.getLogger("dispatch.rounds")

ROUND_KEY = "dispatch:round:{request_id}:{round_number}"
DECLINES_KEY = "dispatch:round:{request_id}:{round_number}:declines"


class MatchingRound(BaseModel):
    """One attempt to place a request with a set of candidates."""
    request_id: str
    round_number: int
    mode: OfferMode
    candidate_ids: List[int]
    radius_km: float
    started_at: datetime
    deadline: datetime
    outcome: RoundOutcome = RoundOutcome.PENDING
    winner_driver_id: Optional[int] = None


class RoundStore:
    def __init__(self, redis, ttl_seconds: int = 600):
        self._redis = redis
        self.ttl_seconds = ttl_seconds

    async def save(self, record: MatchingRound) -> None:
        key = ROUND_KEY.format(request_id=record.request_id, round_number=record.round_number)
        try:
            await self._redis.set(key, record.model_dump_json(), ex=self.ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning("Round record not saved", extra={"key": key, "error": str(e)})

    async def load(self, request_id: str, round_number: int) -> Optional[MatchingRound]:
        key = ROUND_KEY.format(request_id=request_id, round_number=round_number)
        try:
            raw = await self._redis.get(key)
        except (RedisError, OSError) as e:
            logger.warning("Round record not loaded", extra={"key": key, "error": str(e)})
            return None
        if raw is None:
            return None
        return MatchingRound.model_validate(json.loads(raw))

    async def set_outcome(
        self,
        request_id: str,
        round_number: int,
        outcome: RoundOutcome,
        winner_driver_id: Optional[int] = None,
        expected: Optional[RoundOutcome] = None,
    ) -> Optional[MatchingRound]:
        """
        Stamp the outcome on an existing record; rounds that never saved one are
        skipped. With `expected`, a record whose outcome has already moved on is
        left alone and returned unchanged.
        """
        record = await self.load(request_id, round_number)
        if record is None:
            return None
        if expected is not None and record.outcome != expected:
            return record
        record.outcome = outcome
        record.winner_driver_id = winner_driver_id
        await self.save(record)
        return record

    async def add_decline(self, request_id: str, round_number: int, driver_id: int) -> None:
        key = DECLINES_KEY.format(request_id=request_id, round_number=round_number)
        try:
            await self._redis.sadd(key, driver_id)
            await self._redis.expire(key, self.ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning("Decline not recorded", extra={"key": key, "driver_id": driver_id, "error": str(e)})

    async def declines(self, request_id: str, round_number: int) -> set[int]:
        key = DECLINES_KEY.format(request_id=request_id, round_number=round_number)
        try:
            members = await self._redis.smembers(key)
        except (RedisError, OSError) as e:
            logger.warning("Declines not loaded", extra={"key": key, "error": str(e)})
            return set()
        return {int(member) for member in members}
