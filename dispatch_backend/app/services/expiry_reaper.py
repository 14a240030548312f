"""
ExpiryReaper - periodic sweep for offers whose deadline passed.

Catches deadlines missed by a crashed or restarted instance and restarts
rounds that were abandoned mid-flight. Every step is a conditional ledger
write, so any number of reapers may sweep at once.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from dispatch_backend.app.core.clock import utcnow
from dispatch_backend.app.core.config import Settings
from dispatch_backend.app.core.exceptions import TransientStoreError
from dispatch_backend.app.models.enums import RequestStatus, RoundOutcome, TransitionResult
from dispatch_backend.app.services.coordinator import AssignmentCoordinator
from dispatch_backend.app.services.request_ledger import RequestLedger

logger = logging.getLogger("dispatch.reaper")


class ExpiryReaper:
    def __init__(self, ledger: RequestLedger, coordinator: AssignmentCoordinator, settings: Settings):
        self.ledger = ledger
        self.coordinator = coordinator
        self.interval_seconds = settings.reaper_interval_seconds
        self.stalled_after = timedelta(seconds=settings.stalled_round_seconds)
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> Dict[str, int]:
        """One pass over expired offers and stalled requests."""
        now = utcnow()
        counts = {"expired": 0, "rematched": 0, "exhausted": 0, "recovered": 0}

        for request_id, round_number in await self.ledger.list_expired_offers(now):
            # A round waiting in this process expires its own offer
            if self.coordinator.is_running(request_id):
                continue
            if not await self.coordinator.expire_offer(request_id, round_number):
                continue
            counts["expired"] += 1
            self._count(counts, await self.coordinator.continue_after_expiry(request_id))

        cutoff = now - self.stalled_after
        for request in await self.ledger.list_stalled(cutoff):
            if self.coordinator.is_running(request.id):
                continue
            if request.status == RequestStatus.PENDING:
                self.coordinator.start_round(request.id)
                counts["recovered"] += 1
                continue
            if request.status == RequestStatus.MATCHING:
                stuck = await self.ledger.expire_stuck_round(request.id, request.matching_round, cutoff)
                if stuck == TransitionResult.STALE:
                    continue
            counts["recovered"] += 1
            self._count(counts, await self.coordinator.continue_after_expiry(request.id))

        if any(counts.values()):
            logger.info("Sweep finished", extra=counts)
        return counts

    @staticmethod
    def _count(counts: Dict[str, int], outcome: RoundOutcome) -> None:
        if outcome == RoundOutcome.PENDING:
            counts["rematched"] += 1
        elif outcome == RoundOutcome.NO_DRIVERS:
            counts["exhausted"] += 1

    async def run(self) -> None:
        logger.info("Expiry reaper started", extra={"interval_s": self.interval_seconds})
        while True:
            try:
                await self.sweep()
            except TransientStoreError as e:
                logger.error("Sweep skipped, request store unavailable", extra={"error": e.message, **e.details})
            except Exception:
                logger.exception("Sweep failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="dispatch-expiry-reaper")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
