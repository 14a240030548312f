"""
AssignmentCoordinator - runs matching rounds and resolves driver responses.

A round claims the request in the ledger, searches for candidates (widening
the radius when nobody is close), opens an offer with a fixed deadline and
then waits. The wait ends when an accept or a cancellation resolves the
round's future, or when the deadline passes. All state that matters lives in
the ledger; the coordinator only decides which conditional write to attempt
next. Any instance can pick up any request.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, Optional

from dispatch_backend.app.core.clock import seconds_until, utcnow
from dispatch_backend.app.core.config import Settings
from dispatch_backend.app.core.exceptions import (
    InsufficientPermissionsError,
    InvalidTransitionError,
    NotificationDeliveryFailure,
    ResourceNotFoundError,
    TransientStoreError,
)
from dispatch_backend.app.models.enums import (
    CancelOutcome,
    Decision,
    OfferMode,
    RequestStatus,
    ResponseOutcome,
    RoundOutcome,
    TimingMode,
    TransitionResult,
)
from dispatch_backend.app.models.trip_request import TripRequest
from dispatch_backend.app.schemas.offer import OfferPayload, OfferView
from dispatch_backend.app.schemas.trip_request import Location
from dispatch_backend.app.services.candidate_selector import Candidate, CandidateSelector
from dispatch_backend.app.services.geo_index import GeoIndex, haversine_distance
from dispatch_backend.app.services.notification_gateway import NotificationGateway
from dispatch_backend.app.services.request_ledger import RequestLedger
from dispatch_backend.app.services.round_store import MatchingRound, RoundStore

logger = logging.getLogger("dispatch.coordinator")

REVOKE_REASONS = {
    RoundOutcome.WON: "Offer taken by another driver",
    RoundOutcome.CANCELLED: "Request cancelled",
    RoundOutcome.EXPIRED: "Offer expired",
}


@dataclass
class RoundResult:
    request_id: str
    outcome: RoundOutcome
    round_number: int = 0
    driver_id: Optional[int] = None


@dataclass
class ResponseResult:
    request_id: str
    round_number: int
    outcome: ResponseOutcome


class RoundSignals:
    """
    In-process wake-up for rounds waiting on their deadline.

    One future per (request, round). Resolving a future that nobody waits on
    (the round runs on another instance) is a no-op; that round notices at its
    deadline when its expire write comes back stale.
    """

    def __init__(self):
        self._waiters: Dict[tuple, asyncio.Future] = {}

    def register(self, request_id: str, round_number: int) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._waiters[(request_id, round_number)] = future
        return future

    def resolve(self, request_id: str, round_number: int, outcome: RoundOutcome, driver_id: Optional[int] = None) -> bool:
        future = self._waiters.get((request_id, round_number))
        if future is None or future.done():
            return False
        future.set_result((outcome, driver_id))
        return True

    def resolve_request(self, request_id: str, outcome: RoundOutcome) -> int:
        """Resolve every waiting round of a request (cancellation)."""
        resolved = 0
        for (waiting_id, round_number) in list(self._waiters):
            if waiting_id == request_id and self.resolve(waiting_id, round_number, outcome):
                resolved += 1
        return resolved

    def discard(self, request_id: str, round_number: int) -> None:
        self._waiters.pop((request_id, round_number), None)

    @staticmethod
    async def wait(future: asyncio.Future, timeout: float):
        """The future's (outcome, driver_id), or None once `timeout` elapses."""
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def __len__(self):
        return len(self._waiters)


class AssignmentCoordinator:
    def __init__(
        self,
        ledger: RequestLedger,
        selector: CandidateSelector,
        geo_index: GeoIndex,
        round_store: RoundStore,
        gateway: NotificationGateway,
        settings: Settings,
        signals: Optional[RoundSignals] = None,
    ):
        self.ledger = ledger
        self.selector = selector
        self.geo_index = geo_index
        self.round_store = round_store
        self.gateway = gateway
        self.settings = settings
        self.signals = signals or RoundSignals()
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def start_round(self, request_id: str) -> asyncio.Task:
        """Run matching for `request_id` in the background (one task per request)."""
        running = self._tasks.get(request_id)
        if running is not None and not running.done():
            return running

        task = asyncio.create_task(self.run_matching_round(request_id), name=f"dispatch-round-{request_id}")
        self._tasks[request_id] = task

        def _done(finished: asyncio.Task):
            if self._tasks.get(request_id) is finished:
                del self._tasks[request_id]
            if finished.cancelled():
                return
            if finished.exception() is not None:
                logger.error(
                    "Matching task crashed",
                    exc_info=finished.exception(),
                    extra={"request_id": request_id},
                )

        task.add_done_callback(_done)
        return task

    def is_running(self, request_id: str) -> bool:
        task = self._tasks.get(request_id)
        return task is not None and not task.done()

    @property
    def active_rounds(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def shutdown(self) -> None:
        """Cancel in-flight rounds; the reaper on another instance recovers them."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_request(self, requester_id: int, facts: dict, start: bool = True) -> TripRequest:
        """Persist a new request and start matching it."""
        request = await self.ledger.create(requester_id, **facts)
        logger.info(
            "Request submitted",
            extra={"request_id": request.id, "requester_id": requester_id, "timing_mode": request.timing_mode.value},
        )
        if start:
            self.start_round(request.id)
        return request

    # ------------------------------------------------------------------
    # Matching rounds
    # ------------------------------------------------------------------

    def search_radii(self, round_number: int) -> list[float]:
        """Radii tried by a round, widening up to `max_radius_km`."""
        radii: list[float] = []
        for widening in range(self.settings.max_radius_widenings + 1):
            radius = min(
                self.settings.initial_radius_km * self.settings.radius_growth_factor ** (round_number - 1 + widening),
                self.settings.max_radius_km,
            )
            if not radii or radius > radii[-1]:
                radii.append(radius)
        return radii

    async def run_matching_round(self, request_id: str) -> RoundResult:
        """
        Drive a request from `pending` / `expired_no_response` until it is
        accepted, cancelled, settled as `no_drivers_available`, or handed off.
        """
        try:
            request = await self.ledger.get(request_id)
            if request is None:
                logger.warning("Matching requested for unknown request", extra={"request_id": request_id})
                return RoundResult(request_id, RoundOutcome.ABORTED)

            while True:
                result = await self._run_single_round(request)
                if result.outcome != RoundOutcome.EXPIRED:
                    return result

                request = await self.ledger.get(request_id)
                if request is None or request.status != RequestStatus.EXPIRED_NO_RESPONSE:
                    return result
                if request.matching_round >= self.settings.max_matching_rounds:
                    await self._settle_no_drivers(request, request.matching_round)
                    return RoundResult(request_id, RoundOutcome.NO_DRIVERS, request.matching_round)
        except TransientStoreError as e:
            logger.error(
                "Round abandoned, request store unavailable",
                extra={"request_id": request_id, "error": e.message, **e.details},
            )
            return RoundResult(request_id, RoundOutcome.ABANDONED)

    async def _run_single_round(self, request: TripRequest) -> RoundResult:
        expected_round = request.matching_round
        round_number = expected_round + 1
        previous_offered = list(request.candidate_set_snapshot or [])

        if await self.ledger.claim_round(request.id, expected_round) == TransitionResult.STALE:
            logger.info(
                "Round claim lost",
                extra={"request_id": request.id, "expected_round": expected_round},
            )
            return RoundResult(request.id, RoundOutcome.ABORTED, expected_round)

        mode = OfferMode.BROADCAST if request.timing_mode == TimingMode.ASAP else OfferMode.SEQUENTIAL
        exclude = previous_offered if mode == OfferMode.SEQUENTIAL else ()

        candidates, radius_km = await self._search(request, round_number, exclude)
        if not candidates:
            await self._settle_no_drivers(request, round_number)
            return RoundResult(request.id, RoundOutcome.NO_DRIVERS, round_number)

        if mode == OfferMode.SEQUENTIAL:
            candidates = candidates[:1]

        started_at = utcnow()
        deadline = started_at + timedelta(seconds=self.settings.acceptance_window_seconds)
        candidate_ids = [c.driver_id for c in candidates]

        # Registered before the offer opens so an instant accept still wakes us
        waiter = self.signals.register(request.id, round_number)
        try:
            opened = await self.ledger.open_offer(request.id, round_number, candidate_ids, deadline)
            if opened == TransitionResult.STALE:
                logger.info("Offer not opened, request moved on", extra={"request_id": request.id, "round": round_number})
                return RoundResult(request.id, RoundOutcome.ABORTED, round_number)

            await self.round_store.save(MatchingRound(
                request_id=request.id,
                round_number=round_number,
                mode=mode,
                candidate_ids=candidate_ids,
                radius_km=radius_km,
                started_at=started_at,
                deadline=deadline,
            ))
            logger.info(
                "Offer opened",
                extra={
                    "request_id": request.id,
                    "round": round_number,
                    "mode": mode.value,
                    "candidates": candidate_ids,
                    "radius_km": radius_km,
                },
            )
            await self._dispatch_offers(request, round_number, deadline, candidates)
            if waiter.done():
                # Resolved while offers were still going out; a late one may have landed after the revocation
                outcome, winner = waiter.result()
                await self._revoke_offers(
                    request.id,
                    [d for d in candidate_ids if d != winner],
                    REVOKE_REASONS.get(outcome, "Offer no longer available"),
                )

            signal = await self.signals.wait(waiter, seconds_until(deadline))
        finally:
            self.signals.discard(request.id, round_number)

        if signal is not None:
            outcome, driver_id = signal
            return RoundResult(request.id, outcome, round_number, driver_id)

        if await self.expire_offer(request.id, round_number):
            return RoundResult(request.id, RoundOutcome.EXPIRED, round_number)

        # Someone else resolved the round (accept on another instance, cancel, reaper)
        current = await self.ledger.get(request.id)
        if current is not None and current.matching_round == round_number:
            if current.status in (RequestStatus.ACCEPTED, RequestStatus.CANCELLED):
                outcome = RoundOutcome.WON if current.status == RequestStatus.ACCEPTED else RoundOutcome.CANCELLED
                # The resolver ran elsewhere and may have revoked before our offers landed
                await self._revoke_offers(
                    request.id,
                    [d for d in candidate_ids if d != current.assigned_driver_id],
                    REVOKE_REASONS[outcome],
                )
                return RoundResult(request.id, outcome, round_number, current.assigned_driver_id)
        return RoundResult(request.id, RoundOutcome.ABORTED, round_number)

    async def _search(self, request: TripRequest, round_number: int, exclude: Iterable[int]):
        radius_km = 0.0
        for radius_km in self.search_radii(round_number):
            candidates = await self.selector.find_candidates(
                request, radius_km, self.settings.max_candidates, exclude=exclude
            )
            if candidates:
                return candidates, radius_km
            logger.info(
                "No candidates within radius",
                extra={"request_id": request.id, "round": round_number, "radius_km": radius_km},
            )
        return [], radius_km

    def _offer_payload(self, request: TripRequest, round_number: int, deadline, distance_km: Optional[float]) -> OfferPayload:
        return OfferPayload(
            request_id=request.id,
            round_number=round_number,
            deadline=deadline,
            pickup=Location(
                latitude=request.pickup_latitude,
                longitude=request.pickup_longitude,
                address=request.pickup_address,
            ),
            delivery=Location(
                latitude=request.delivery_latitude,
                longitude=request.delivery_longitude,
                address=request.delivery_address,
            ),
            material_type=request.material_type,
            estimated_weight_tons=request.estimated_weight_tons,
            quoted_price=request.quoted_price,
            distance_km=None if distance_km is None else round(distance_km, 2),
        )

    async def _dispatch_offers(self, request: TripRequest, round_number: int, deadline, candidates: list[Candidate]) -> int:
        async def send(candidate: Candidate) -> bool:
            payload = self._offer_payload(request, round_number, deadline, candidate.distance_km)
            try:
                await self.gateway.send_offer(candidate.driver_id, payload)
            except NotificationDeliveryFailure as e:
                logger.warning(
                    "Offer delivery failed",
                    extra={"request_id": request.id, "round": round_number, "driver_id": e.user_id, "reason": e.reason},
                )
                return False
            return True

        delivered = sum(await asyncio.gather(*(send(c) for c in candidates)))
        if delivered == 0:
            logger.warning(
                "No offer delivered, round runs to its deadline",
                extra={"request_id": request.id, "round": round_number},
            )
        return delivered

    async def _revoke_offers(self, request_id: str, driver_ids: Iterable[int], reason: str) -> None:
        for driver_id in driver_ids:
            try:
                await self.gateway.revoke_offer(driver_id, request_id, reason)
            except NotificationDeliveryFailure as e:
                logger.warning(
                    "Offer revocation failed",
                    extra={"request_id": request_id, "driver_id": driver_id, "reason": e.reason},
                )

    async def _notify_requester(self, request: TripRequest, title: str, message: str, **metadata) -> None:
        try:
            await self.gateway.notify_requester(
                request.requester_id, request.id, title, message, metadata={"request_id": request.id, **metadata}
            )
        except NotificationDeliveryFailure as e:
            logger.warning(
                "Requester notification failed",
                extra={"request_id": request.id, "requester_id": request.requester_id, "reason": e.reason},
            )

    async def _settle_no_drivers(self, request: TripRequest, round_number: int) -> bool:
        if await self.ledger.mark_no_drivers(request.id, round_number) == TransitionResult.STALE:
            return False
        await self.round_store.set_outcome(request.id, round_number, RoundOutcome.NO_DRIVERS)
        logger.info("No drivers available", extra={"request_id": request.id, "round": round_number})
        await self._notify_requester(
            request,
            "No drivers available",
            "No driver could take your delivery right now. You can submit the request again.",
            status=RequestStatus.NO_DRIVERS_AVAILABLE.value,
        )
        return True

    # ------------------------------------------------------------------
    # Expiry (shared with the reaper)
    # ------------------------------------------------------------------

    async def expire_offer(self, request_id: str, round_number: int) -> bool:
        """
        Close an offer whose deadline passed.

        Returns True only for the caller whose conditional write applied; that
        caller revokes the outstanding offers.
        """
        if await self.ledger.expire_offer(request_id, round_number) == TransitionResult.STALE:
            return False

        await self.round_store.set_outcome(request_id, round_number, RoundOutcome.EXPIRED)
        request = await self.ledger.get(request_id)
        logger.info("Offer expired", extra={"request_id": request_id, "round": round_number})
        if request is not None:
            await self._revoke_offers(request_id, request.candidate_set_snapshot or [], REVOKE_REASONS[RoundOutcome.EXPIRED])
        return True

    async def continue_after_expiry(self, request_id: str) -> RoundOutcome:
        """
        Decide what follows an expired offer: another round, or
        `no_drivers_available` once the round budget is spent.
        """
        request = await self.ledger.get(request_id)
        if request is None or request.status != RequestStatus.EXPIRED_NO_RESPONSE:
            return RoundOutcome.ABORTED
        if request.matching_round >= self.settings.max_matching_rounds:
            settled = await self._settle_no_drivers(request, request.matching_round)
            return RoundOutcome.NO_DRIVERS if settled else RoundOutcome.ABORTED
        self.start_round(request_id)
        return RoundOutcome.PENDING

    # ------------------------------------------------------------------
    # Driver side
    # ------------------------------------------------------------------

    async def get_offer(self, driver_id: int) -> Optional[OfferView]:
        """The open offer addressed to `driver_id` with the earliest deadline, if any."""
        now = utcnow()
        for request in await self.ledger.open_offers_for_driver(driver_id, now):
            declined = await self.round_store.declines(request.id, request.matching_round)
            if driver_id in declined:
                continue

            distance_km = None
            position = await self.geo_index.position(driver_id)
            if position is not None:
                distance_km = haversine_distance(
                    position.latitude, position.longitude, request.pickup_latitude, request.pickup_longitude
                )
            remaining = seconds_until(request.acceptance_deadline, now)
            return OfferView(
                offer=self._offer_payload(request, request.matching_round, request.acceptance_deadline, distance_km),
                remaining_seconds=max(0, math.ceil(remaining)),
            )
        return None

    async def respond_to_offer(
        self,
        request_id: str,
        driver_id: int,
        round_number: int,
        decision: Decision,
    ) -> ResponseResult:
        """
        Record a driver's accept or decline.

        Exactly one accept per round can win; everyone else gets a definite
        `too_late`, `invalid_round` or `not_offered`. Re-sending a winning
        accept returns `accepted` again.
        """
        request = await self.ledger.get(request_id)
        if request is None:
            raise ResourceNotFoundError("Trip request", request_id)

        if round_number != request.matching_round:
            outcome = ResponseOutcome.INVALID_ROUND
        elif driver_id not in (request.candidate_set_snapshot or []) and request.assigned_driver_id != driver_id:
            outcome = ResponseOutcome.NOT_OFFERED
        elif decision == Decision.DECLINE:
            outcome = await self._decline(request, driver_id, round_number)
        else:
            outcome = await self._accept(request, driver_id, round_number)

        logger.info(
            "Offer response",
            extra={
                "request_id": request_id,
                "driver_id": driver_id,
                "round": round_number,
                "decision": decision.value,
                "outcome": outcome.value,
            },
        )
        try:
            await self.ledger.record_attempt(request_id, driver_id, round_number, decision, outcome)
        except TransientStoreError as e:
            logger.warning("Attempt not recorded", extra={"request_id": request_id, "error": e.message})
        return ResponseResult(request_id, round_number, outcome)

    async def _accept(self, request: TripRequest, driver_id: int, round_number: int) -> ResponseOutcome:
        if request.assigned_driver_id == driver_id:
            return ResponseOutcome.ACCEPTED

        if await self.ledger.accept_offer(request.id, driver_id, round_number) == TransitionResult.APPLIED:
            await self._on_accepted(request, driver_id, round_number)
            return ResponseOutcome.ACCEPTED

        current = await self.ledger.get(request.id)
        if current is not None and current.assigned_driver_id == driver_id and current.matching_round == round_number:
            # Our own earlier write landed but its reply was lost, so nobody ran the side effects yet
            await self._on_accepted(current, driver_id, round_number)
            return ResponseOutcome.ACCEPTED
        if current is not None and current.matching_round != round_number:
            return ResponseOutcome.INVALID_ROUND
        return ResponseOutcome.TOO_LATE

    async def _on_accepted(self, request: TripRequest, driver_id: int, round_number: int) -> None:
        self.signals.resolve(request.id, round_number, RoundOutcome.WON, driver_id)
        await self.round_store.set_outcome(request.id, round_number, RoundOutcome.WON, driver_id)
        logger.info("Offer accepted", extra={"request_id": request.id, "round": round_number, "driver_id": driver_id})

        losers = [d for d in (request.candidate_set_snapshot or []) if d != driver_id]
        await self._revoke_offers(request.id, losers, REVOKE_REASONS[RoundOutcome.WON])
        await self._notify_requester(
            request,
            "Driver found",
            "A driver accepted your delivery request.",
            status=RequestStatus.ACCEPTED.value,
            driver_id=driver_id,
        )

    async def _decline(self, request: TripRequest, driver_id: int, round_number: int) -> ResponseOutcome:
        if request.status != RequestStatus.MATCHED:
            return ResponseOutcome.TOO_LATE

        await self.round_store.add_decline(request.id, round_number, driver_id)
        declined = await self.round_store.declines(request.id, round_number)
        if set(request.candidate_set_snapshot or []) <= declined:
            # Advisory only: the request stays matched until its deadline
            await self.round_store.set_outcome(
                request.id, round_number, RoundOutcome.ALL_DECLINED, expected=RoundOutcome.PENDING
            )
            logger.info("All candidates declined", extra={"request_id": request.id, "round": round_number})
        return ResponseOutcome.DECLINED

    # ------------------------------------------------------------------
    # Requester side
    # ------------------------------------------------------------------

    async def cancel_request(self, request_id: str, requester_id: int) -> CancelOutcome:
        """Cancel a request; wins against any later accept."""
        request = await self.ledger.get(request_id)
        if request is None:
            raise ResourceNotFoundError("Trip request", request_id)
        if request.requester_id != requester_id:
            raise InsufficientPermissionsError("Only the requester can cancel this request")

        if await self.ledger.cancel(request_id, requester_id) == TransitionResult.STALE:
            return CancelOutcome.ALREADY_TERMINAL

        self.signals.resolve_request(request_id, RoundOutcome.CANCELLED)
        # The cancelled row never changes again, so its snapshot is final
        cancelled = await self.ledger.get(request_id)
        round_number = cancelled.matching_round if cancelled is not None else request.matching_round
        await self.round_store.set_outcome(request_id, round_number, RoundOutcome.CANCELLED)
        if cancelled is not None and cancelled.candidate_set_snapshot:
            await self._revoke_offers(request_id, cancelled.candidate_set_snapshot, REVOKE_REASONS[RoundOutcome.CANCELLED])
        logger.info("Request cancelled", extra={"request_id": request_id, "round": round_number})
        return CancelOutcome.CANCELLED

    # ------------------------------------------------------------------
    # Trip lifecycle events
    # ------------------------------------------------------------------

    async def start_trip(self, request_id: str, driver_id: int) -> TripRequest:
        return await self._lifecycle(request_id, driver_id, self.ledger.start_trip, "start pickup for")

    async def complete_delivery(self, request_id: str, driver_id: int) -> TripRequest:
        return await self._lifecycle(request_id, driver_id, self.ledger.complete_delivery, "complete delivery for")

    async def _lifecycle(self, request_id: str, driver_id: int, transition, action: str) -> TripRequest:
        request = await self.ledger.get(request_id)
        if request is None:
            raise ResourceNotFoundError("Trip request", request_id)
        if request.assigned_driver_id != driver_id:
            raise InsufficientPermissionsError("Request is not assigned to this driver")
        if await transition(request_id, driver_id) == TransitionResult.STALE:
            current = await self.ledger.get(request_id)
            raise InvalidTransitionError(request_id, (current or request).status.value, action)
        updated = await self.ledger.get(request_id)
        await self._notify_requester(
            updated,
            "Delivery update",
            f"Your delivery is now {updated.status.value.replace('_', ' ')}.",
            status=updated.status.value,
        )
        return updated
