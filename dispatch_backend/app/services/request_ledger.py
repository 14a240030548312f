"""
RequestLedger - authoritative store of trip request state.

Every dispatch transition is a single conditional UPDATE whose WHERE clause
carries the expected status and round. The row count tells the caller whether
it won (APPLIED) or lost to a concurrent writer (STALE); a lost race is never
an exception. Transient database failures are retried with bounded backoff and
surface as TransientStoreError once retries run out.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import async_sessionmaker

from dispatch_backend.app.core.clock import utcnow
from dispatch_backend.app.core.exceptions import TransientStoreError
from dispatch_backend.app.core.reliability import retry_with_backoff
from dispatch_backend.app.db.session import store_errors
from dispatch_backend.app.models.assignment_attempt import AssignmentAttempt
from dispatch_backend.app.models.enums import (
    ASSIGNED_STATUSES,
    CANCELLABLE_STATUSES,
    Decision,
    RequestStatus,
    ResponseOutcome,
    TransitionResult,
)
from dispatch_backend.app.models.trip_request import TripRequest

logger = logging.getLogger("dispatch.ledger")

# States a reaper may need to push forward when no round is driving them
RECOVERABLE_STATUSES = (
    RequestStatus.PENDING,
    RequestStatus.MATCHING,
    RequestStatus.EXPIRED_NO_RESPONSE,
)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class RequestLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.1,
    ):
        self._session_factory = session_factory
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay

    async def _retry(self, fn, operation: str):
        return await retry_with_backoff(
            fn,
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            retry_on=(TransientStoreError,),
            operation=operation,
        )

    async def _transition(self, stmt, operation: str, request_id: str) -> TransitionResult:
        async def attempt():
            async with store_errors(operation):
                async with self._session_factory() as db:
                    result = await db.execute(stmt.execution_options(synchronize_session=False))
                    await db.commit()
                    return result.rowcount

        rowcount = await self._retry(attempt, operation)
        outcome = TransitionResult.APPLIED if rowcount == 1 else TransitionResult.STALE
        logger.debug(
            "Ledger transition",
            extra={"operation": operation, "request_id": request_id, "result": outcome.value},
        )
        return outcome

    async def _read(self, query_fn, operation: str):
        async def attempt():
            async with store_errors(operation):
                async with self._session_factory() as db:
                    return await query_fn(db)

        return await self._retry(attempt, operation)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, requester_id: int, **facts: Any) -> TripRequest:
        """Persist a new request in `pending`."""
        now = utcnow()
        if "scheduled_pickup_time" in facts:
            facts["scheduled_pickup_time"] = _naive_utc(facts["scheduled_pickup_time"])

        async def attempt():
            async with store_errors("ledger.create"):
                async with self._session_factory() as db:
                    request = TripRequest(
                        requester_id=requester_id,
                        status=RequestStatus.PENDING,
                        matching_round=0,
                        candidate_set_snapshot=[],
                        created_at=now,
                        updated_at=now,
                        **facts,
                    )
                    db.add(request)
                    await db.commit()
                    return request

        return await self._retry(attempt, "ledger.create")

    # ------------------------------------------------------------------
    # Conditional transitions
    # ------------------------------------------------------------------

    async def claim_round(self, request_id: str, expected_round: int) -> TransitionResult:
        """pending / expired_no_response -> matching, round expected_round + 1."""
        now = utcnow()
        stmt = update(TripRequest).where(
            TripRequest.id == request_id,
            TripRequest.status.in_([RequestStatus.PENDING, RequestStatus.EXPIRED_NO_RESPONSE]),
            TripRequest.matching_round == expected_round,
        ).values(
            status=RequestStatus.MATCHING,
            matching_round=expected_round + 1,
            matching_started_at=now,
            acceptance_deadline=None,
            candidate_set_snapshot=[],
            updated_at=now,
        )
        return await self._transition(stmt, "ledger.claim_round", request_id)

    async def open_offer(
        self,
        request_id: str,
        round_number: int,
        candidate_ids: Iterable[int],
        deadline: datetime,
    ) -> TransitionResult:
        """matching -> matched, stamping the deadline and candidate snapshot."""
        now = utcnow()
        stmt = update(TripRequest).where(
            TripRequest.id == request_id,
            TripRequest.status == RequestStatus.MATCHING,
            TripRequest.matching_round == round_number,
        ).values(
            status=RequestStatus.MATCHED,
            acceptance_deadline=deadline,
            candidate_set_snapshot=list(candidate_ids),
            matched_at=now,
            updated_at=now,
        )
        return await self._transition(stmt, "ledger.open_offer", request_id)

    async def accept_offer(self, request_id: str, driver_id: int, round_number: int) -> TransitionResult:
        """
        The acceptance compare-and-set.

        Applies only while the request is `matched` in `round_number`, nobody is
        assigned yet, the deadline has not passed and the driver is not already
        committed to another accepted or in-progress request. At most one caller
        per round can ever see APPLIED, and a driver holds at most one live job.
        """
        now = utcnow()
        other = aliased(TripRequest)
        committed_elsewhere = select(other.id).where(
            other.assigned_driver_id == driver_id,
            other.status.in_(ASSIGNED_STATUSES),
            other.id != request_id,
        ).exists()
        stmt = update(TripRequest).where(
            TripRequest.id == request_id,
            TripRequest.status == RequestStatus.MATCHED,
            TripRequest.matching_round == round_number,
            TripRequest.assigned_driver_id.is_(None),
            TripRequest.acceptance_deadline >= now,
            ~committed_elsewhere,
        ).values(
            status=RequestStatus.ACCEPTED,
            assigned_driver_id=driver_id,
            acceptance_deadline=None,
            accepted_at=now,
            updated_at=now,
        )
        try:
            return await self._transition(stmt, "ledger.accept_offer", request_id)
        except IntegrityError:
            # Two accepts by one driver on different requests committed together;
            # the one-live-job index let only the first through
            logger.info(
                "Accept rejected, driver already committed",
                extra={"request_id": request_id, "driver_id": driver_id},
            )
            return TransitionResult.STALE

    async def expire_offer(self, request_id: str, round_number: int) -> TransitionResult:
        """matched -> expired_no_response for the given round."""
        now = utcnow()
        stmt = update(TripRequest).where(
            TripRequest.id == request_id,
            TripRequest.status == RequestStatus.MATCHED,
            TripRequest.matching_round == round_number,
        ).values(
            status=RequestStatus.EXPIRED_NO_RESPONSE,
            acceptance_deadline=None,
            updated_at=now,
        )
        return await self._transition(stmt, "ledger.expire_offer", request_id)

    async def expire_stuck_round(self, request_id: str, round_number: int, cutoff: datetime) -> TransitionResult:
        """matching -> expired_no_response when the round has not moved since `cutoff`."""
        stmt = update(TripRequest).where(
            TripRequest.id == request_id,
            TripRequest.status == RequestStatus.MATCHING,
            TripRequest.matching_round == round_number,
            TripRequest.updated_at < cutoff,
        ).values(
            status=RequestStatus.EXPIRED_NO_RESPONSE,
            updated_at=utcnow(),
        )
        return await self._transition(stmt, "ledger.expire_stuck_round", request_id)

    async def mark_no_drivers(self, request_id: str, round_number: int) -> TransitionResult:
        """matching / expired_no_response -> no_drivers_available (terminal)."""
        stmt = update(TripRequest).where(
            TripRequest.id == request_id,
            TripRequest.status.in_([RequestStatus.MATCHING, RequestStatus.EXPIRED_NO_RESPONSE]),
            TripRequest.matching_round == round_number,
        ).values(
            status=RequestStatus.NO_DRIVERS_AVAILABLE,
            acceptance_deadline=None,
            updated_at=utcnow(),
        )
        return await self._transition(stmt, "ledger.mark_no_drivers", request_id)

    async def cancel(self, request_id: str, requester_id: int) -> TransitionResult:
        """Any cancellable state -> cancelled (terminal)."""
        now = utcnow()
        stmt = update(TripRequest).where(
            TripRequest.id == request_id,
            TripRequest.requester_id == requester_id,
            TripRequest.status.in_(CANCELLABLE_STATUSES),
        ).values(
            status=RequestStatus.CANCELLED,
            acceptance_deadline=None,
            cancelled_at=now,
            updated_at=now,
        )
        return await self._transition(stmt, "ledger.cancel", request_id)

    async def start_trip(self, request_id: str, driver_id: int) -> TransitionResult:
        """accepted -> in_progress, only for the assigned driver."""
        now = utcnow()
        stmt = update(TripRequest).where(
            TripRequest.id == request_id,
            TripRequest.status == RequestStatus.ACCEPTED,
            TripRequest.assigned_driver_id == driver_id,
        ).values(
            status=RequestStatus.IN_PROGRESS,
            pickup_started_at=now,
            updated_at=now,
        )
        return await self._transition(stmt, "ledger.start_trip", request_id)

    async def complete_delivery(self, request_id: str, driver_id: int) -> TransitionResult:
        """in_progress -> delivered (terminal), only for the assigned driver."""
        now = utcnow()
        stmt = update(TripRequest).where(
            TripRequest.id == request_id,
            TripRequest.status == RequestStatus.IN_PROGRESS,
            TripRequest.assigned_driver_id == driver_id,
        ).values(
            status=RequestStatus.DELIVERED,
            delivered_at=now,
            updated_at=now,
        )
        return await self._transition(stmt, "ledger.complete_delivery", request_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, request_id: str) -> Optional[TripRequest]:
        async def query(db):
            result = await db.execute(select(TripRequest).where(TripRequest.id == request_id))
            return result.scalar_one_or_none()

        return await self._read(query, "ledger.get")

    async def list_expired_offers(self, now: datetime, limit: int = 100) -> list[tuple[str, int]]:
        """(request_id, round) pairs still `matched` past their deadline, oldest first."""
        async def query(db):
            result = await db.execute(
                select(TripRequest.id, TripRequest.matching_round)
                .where(
                    TripRequest.status == RequestStatus.MATCHED,
                    TripRequest.acceptance_deadline < now,
                )
                .order_by(TripRequest.acceptance_deadline)
                .limit(limit)
            )
            return [(row.id, row.matching_round) for row in result.all()]

        return await self._read(query, "ledger.list_expired_offers")

    async def list_stalled(self, cutoff: datetime, limit: int = 100) -> list[TripRequest]:
        """Requests sitting in a pre-offer state without progress since `cutoff`."""
        async def query(db):
            result = await db.execute(
                select(TripRequest)
                .where(
                    TripRequest.status.in_(RECOVERABLE_STATUSES),
                    TripRequest.updated_at < cutoff,
                )
                .order_by(TripRequest.updated_at)
                .limit(limit)
            )
            return result.scalars().all()

        return await self._read(query, "ledger.list_stalled")

    async def open_offers_for_driver(self, driver_id: int, now: datetime) -> list[TripRequest]:
        """Matched requests whose live round offered `driver_id`, earliest deadline first."""
        async def query(db):
            result = await db.execute(
                select(TripRequest)
                .where(
                    TripRequest.status == RequestStatus.MATCHED,
                    TripRequest.acceptance_deadline > now,
                )
                .order_by(TripRequest.acceptance_deadline)
            )
            return result.scalars().all()

        requests = await self._read(query, "ledger.open_offers_for_driver")
        # JSON containment is not portable across backends, filter here
        return [r for r in requests if driver_id in (r.candidate_set_snapshot or [])]

    async def busy_driver_ids(self) -> set[int]:
        """Drivers currently committed to an accepted or in-progress request."""
        async def query(db):
            result = await db.execute(
                select(TripRequest.assigned_driver_id).where(
                    TripRequest.status.in_(ASSIGNED_STATUSES),
                    TripRequest.assigned_driver_id.is_not(None),
                )
            )
            return set(result.scalars().all())

        return await self._read(query, "ledger.busy_driver_ids")

    async def last_assignment_times(self, driver_ids: Iterable[int]) -> Dict[int, datetime]:
        """Most recent accept time per driver; drivers never assigned are absent."""
        driver_ids = list(driver_ids)
        if not driver_ids:
            return {}

        async def query(db):
            result = await db.execute(
                select(TripRequest.assigned_driver_id, func.max(TripRequest.accepted_at))
                .where(
                    TripRequest.assigned_driver_id.in_(driver_ids),
                    TripRequest.accepted_at.is_not(None),
                )
                .group_by(TripRequest.assigned_driver_id)
            )
            return {driver_id: accepted_at for driver_id, accepted_at in result.all()}

        return await self._read(query, "ledger.last_assignment_times")

    async def status_counts(self) -> Dict[str, int]:
        async def query(db):
            result = await db.execute(
                select(TripRequest.status, func.count(TripRequest.id)).group_by(TripRequest.status)
            )
            counts = {status.value: 0 for status in RequestStatus}
            for status, count in result.all():
                counts[status.value] = count
            return counts

        return await self._read(query, "ledger.status_counts")

    async def attempt_counts(self) -> Dict[str, int]:
        """Response totals per outcome, for the operations dashboard."""
        async def query(db):
            result = await db.execute(
                select(AssignmentAttempt.result, func.count(AssignmentAttempt.id))
                .group_by(AssignmentAttempt.result)
            )
            counts = {outcome.value: 0 for outcome in ResponseOutcome}
            for outcome, count in result.all():
                counts[outcome.value] = count
            return counts

        return await self._read(query, "ledger.attempt_counts")

    # ------------------------------------------------------------------
    # Attempt log
    # ------------------------------------------------------------------

    async def record_attempt(
        self,
        request_id: str,
        driver_id: int,
        round_number: int,
        decision: Decision,
        result: ResponseOutcome,
    ) -> None:
        async def attempt():
            async with store_errors("ledger.record_attempt"):
                async with self._session_factory() as db:
                    db.add(AssignmentAttempt(
                        request_id=request_id,
                        driver_id=driver_id,
                        round_number=round_number,
                        decision=decision,
                        result=result,
                    ))
                    await db.commit()

        await self._retry(attempt, "ledger.record_attempt")

    async def attempts_for(self, request_id: str) -> list[AssignmentAttempt]:
        async def query(db):
            result = await db.execute(
                select(AssignmentAttempt)
                .where(AssignmentAttempt.request_id == request_id)
                .order_by(AssignmentAttempt.id)
            )
            return result.scalars().all()

        return await self._read(query, "ledger.attempts_for")
