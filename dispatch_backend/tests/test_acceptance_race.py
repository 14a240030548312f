"""
Acceptance Race Tests.

Concurrent accepts, retries, stale rounds, declines and cancellation
racing an accept.
"""

import asyncio
import pytest

from dispatch_backend.app.core.exceptions import InsufficientPermissionsError, ResourceNotFoundError
from dispatch_backend.app.models.enums import (
    CancelOutcome,
    Decision,
    RequestStatus,
    ResponseOutcome,
    RoundOutcome,
)
from dispatch_backend.app.services.round_store import MatchingRound
from dispatch_backend.tests.helpers import open_round, place_driver


@pytest.mark.asyncio
async def test_eight_concurrent_accepts_one_winner(dispatch_engine, gateway):
    drivers = list(range(101, 109))
    request = await open_round(dispatch_engine, drivers)
    coordinator = dispatch_engine.coordinator

    results = await asyncio.gather(*(
        coordinator.respond_to_offer(request.id, driver_id, 1, Decision.ACCEPT)
        for driver_id in drivers
    ))

    winners = [r for r, d in zip(results, drivers) if r.outcome == ResponseOutcome.ACCEPTED]
    losers = [r for r in results if r.outcome == ResponseOutcome.TOO_LATE]
    assert len(winners) == 1
    assert len(losers) == 7

    winner_id = drivers[[r.outcome for r in results].index(ResponseOutcome.ACCEPTED)]
    stored = await dispatch_engine.ledger.get(request.id)
    assert stored.status == RequestStatus.ACCEPTED
    assert stored.assigned_driver_id == winner_id

    # Every other candidate had the offer revoked; the requester heard about the winner
    assert sorted(d for d, _, _ in gateway.revocations) == sorted(d for d in drivers if d != winner_id)
    assert [title for _, _, title in gateway.requester_updates] == ["Driver found"]


@pytest.mark.asyncio
async def test_winner_retry_is_idempotent(dispatch_engine):
    request = await open_round(dispatch_engine, [1, 2])
    coordinator = dispatch_engine.coordinator

    first = await coordinator.respond_to_offer(request.id, 1, 1, Decision.ACCEPT)
    again = await coordinator.respond_to_offer(request.id, 1, 1, Decision.ACCEPT)
    other = await coordinator.respond_to_offer(request.id, 2, 1, Decision.ACCEPT)

    assert first.outcome == ResponseOutcome.ACCEPTED
    assert again.outcome == ResponseOutcome.ACCEPTED
    assert other.outcome == ResponseOutcome.TOO_LATE
    assert (await dispatch_engine.ledger.get(request.id)).assigned_driver_id == 1


@pytest.mark.asyncio
async def test_stale_round_is_invalid(dispatch_engine):
    request = await open_round(dispatch_engine, [1])

    result = await dispatch_engine.coordinator.respond_to_offer(request.id, 1, 2, Decision.ACCEPT)

    assert result.outcome == ResponseOutcome.INVALID_ROUND
    assert (await dispatch_engine.ledger.get(request.id)).status == RequestStatus.MATCHED


@pytest.mark.asyncio
async def test_previous_round_response_is_invalid(dispatch_engine):
    ledger = dispatch_engine.ledger
    request = await open_round(dispatch_engine, [1])
    await ledger.expire_offer(request.id, 1)
    await ledger.claim_round(request.id, 1)

    result = await dispatch_engine.coordinator.respond_to_offer(request.id, 1, 1, Decision.ACCEPT)

    assert result.outcome == ResponseOutcome.INVALID_ROUND
    assert (await ledger.get(request.id)).assigned_driver_id is None


@pytest.mark.asyncio
async def test_driver_outside_snapshot_not_offered(dispatch_engine):
    request = await open_round(dispatch_engine, [1, 2])

    result = await dispatch_engine.coordinator.respond_to_offer(request.id, 3, 1, Decision.ACCEPT)

    assert result.outcome == ResponseOutcome.NOT_OFFERED
    assert (await dispatch_engine.ledger.get(request.id)).status == RequestStatus.MATCHED


@pytest.mark.asyncio
async def test_expired_offer_accept_is_too_late(dispatch_engine):
    request = await open_round(dispatch_engine, [1], window_seconds=-1)

    result = await dispatch_engine.coordinator.respond_to_offer(request.id, 1, 1, Decision.ACCEPT)

    assert result.outcome == ResponseOutcome.TOO_LATE


@pytest.mark.asyncio
async def test_unknown_request(dispatch_engine):
    with pytest.raises(ResourceNotFoundError):
        await dispatch_engine.coordinator.respond_to_offer("nope", 1, 1, Decision.ACCEPT)


@pytest.mark.asyncio
async def test_decline_is_idempotent_and_advisory(dispatch_engine, mock_redis):
    request = await open_round(dispatch_engine, [1, 2])
    coordinator = dispatch_engine.coordinator

    first = await coordinator.respond_to_offer(request.id, 1, 1, Decision.DECLINE)
    second = await coordinator.respond_to_offer(request.id, 1, 1, Decision.DECLINE)

    assert first.outcome == second.outcome == ResponseOutcome.DECLINED
    assert await dispatch_engine.round_store.declines(request.id, 1) == {1}
    stored = await dispatch_engine.ledger.get(request.id)
    assert stored.status == RequestStatus.MATCHED
    assert stored.assigned_driver_id is None

    # The other candidate can still take it
    accepted = await coordinator.respond_to_offer(request.id, 2, 1, Decision.ACCEPT)
    assert accepted.outcome == ResponseOutcome.ACCEPTED


@pytest.mark.asyncio
async def test_all_declined_keeps_request_matched(dispatch_engine):
    request = await open_round(dispatch_engine, [1, 2])
    await dispatch_engine.round_store.save(MatchingRound(
        request_id=request.id,
        round_number=1,
        mode="broadcast",
        candidate_ids=[1, 2],
        radius_km=10.0,
        started_at=request.matched_at,
        deadline=request.acceptance_deadline,
    ))

    for driver_id in (1, 2):
        await dispatch_engine.coordinator.respond_to_offer(request.id, driver_id, 1, Decision.DECLINE)

    record = await dispatch_engine.round_store.load(request.id, 1)
    assert record.outcome == RoundOutcome.ALL_DECLINED
    assert (await dispatch_engine.ledger.get(request.id)).status == RequestStatus.MATCHED


@pytest.mark.asyncio
async def test_decline_survives_redis_outage(dispatch_engine, mock_redis):
    request = await open_round(dispatch_engine, [1])
    mock_redis.broken = True

    result = await dispatch_engine.coordinator.respond_to_offer(request.id, 1, 1, Decision.DECLINE)

    assert result.outcome == ResponseOutcome.DECLINED


@pytest.mark.asyncio
async def test_cancel_races_accept(dispatch_engine):
    request = await open_round(dispatch_engine, [1], requester_id=9)
    coordinator = dispatch_engine.coordinator

    cancel, response = await asyncio.gather(
        coordinator.cancel_request(request.id, 9),
        coordinator.respond_to_offer(request.id, 1, 1, Decision.ACCEPT),
    )

    stored = await dispatch_engine.ledger.get(request.id)
    if cancel == CancelOutcome.CANCELLED:
        assert response.outcome == ResponseOutcome.TOO_LATE
        assert stored.status == RequestStatus.CANCELLED
        assert stored.assigned_driver_id is None
    else:
        assert cancel == CancelOutcome.ALREADY_TERMINAL
        assert response.outcome == ResponseOutcome.ACCEPTED
        assert stored.status == RequestStatus.ACCEPTED


@pytest.mark.asyncio
async def test_cancel_then_accept(dispatch_engine, gateway):
    request = await open_round(dispatch_engine, [1, 2], requester_id=9)
    coordinator = dispatch_engine.coordinator

    assert await coordinator.cancel_request(request.id, 9) == CancelOutcome.CANCELLED
    result = await coordinator.respond_to_offer(request.id, 1, 1, Decision.ACCEPT)

    assert result.outcome == ResponseOutcome.TOO_LATE
    assert sorted(d for d, _, _ in gateway.revocations) == [1, 2]
    assert await coordinator.cancel_request(request.id, 9) == CancelOutcome.ALREADY_TERMINAL


@pytest.mark.asyncio
async def test_only_owner_cancels(dispatch_engine):
    request = await open_round(dispatch_engine, [1], requester_id=9)

    with pytest.raises(InsufficientPermissionsError):
        await dispatch_engine.coordinator.cancel_request(request.id, 10)


@pytest.mark.asyncio
async def test_get_offer_skips_declined_and_counts_down(dispatch_engine):
    await place_driver(dispatch_engine, 1, 3.0)
    first = await open_round(dispatch_engine, [1], window_seconds=10)
    second = await open_round(dispatch_engine, [1], window_seconds=20)
    coordinator = dispatch_engine.coordinator

    view = await coordinator.get_offer(1)
    assert view.offer.request_id == first.id
    assert view.offer.round_number == 1
    assert 0 < view.remaining_seconds <= 10
    assert view.offer.distance_km == pytest.approx(3.0, abs=0.01)

    await coordinator.respond_to_offer(first.id, 1, 1, Decision.DECLINE)
    view = await coordinator.get_offer(1)
    assert view.offer.request_id == second.id

    await coordinator.respond_to_offer(second.id, 1, 1, Decision.ACCEPT)
    assert await coordinator.get_offer(1) is None
    assert await coordinator.get_offer(2) is None


@pytest.mark.asyncio
async def test_attempts_are_recorded(dispatch_engine):
    request = await open_round(dispatch_engine, [1, 2])
    coordinator = dispatch_engine.coordinator

    await coordinator.respond_to_offer(request.id, 1, 1, Decision.DECLINE)
    await coordinator.respond_to_offer(request.id, 2, 1, Decision.ACCEPT)
    await coordinator.respond_to_offer(request.id, 3, 1, Decision.ACCEPT)

    attempts = await dispatch_engine.ledger.attempts_for(request.id)
    assert [(a.driver_id, a.result) for a in attempts] == [
        (1, ResponseOutcome.DECLINED),
        (2, ResponseOutcome.ACCEPTED),
        (3, ResponseOutcome.NOT_OFFERED),
    ]


@pytest.mark.asyncio
async def test_driver_cannot_win_two_requests_at_once(dispatch_engine):
    first = await open_round(dispatch_engine, [301])
    second = await open_round(dispatch_engine, [301])
    coordinator = dispatch_engine.coordinator

    results = await asyncio.gather(
        coordinator.respond_to_offer(first.id, 301, 1, Decision.ACCEPT),
        coordinator.respond_to_offer(second.id, 301, 1, Decision.ACCEPT),
    )

    assert sorted(r.outcome.value for r in results) == ["accepted", "too_late"]
    stored = [await dispatch_engine.ledger.get(r.id) for r in (first, second)]
    assert sorted(s.status.value for s in stored) == ["accepted", "matched"]
    assert [s.assigned_driver_id for s in stored].count(301) == 1


@pytest.mark.asyncio
async def test_late_decline_keeps_won_record(dispatch_engine):
    """A decline acting on a stale `matched` read must not overwrite the winner."""
    request = await open_round(dispatch_engine, [1, 2])
    await dispatch_engine.round_store.save(MatchingRound(
        request_id=request.id,
        round_number=1,
        mode="broadcast",
        candidate_ids=[1, 2],
        radius_km=10.0,
        started_at=request.matched_at,
        deadline=request.acceptance_deadline,
        outcome=RoundOutcome.WON,
        winner_driver_id=2,
    ))

    for driver_id in (1, 2):
        await dispatch_engine.coordinator.respond_to_offer(request.id, driver_id, 1, Decision.DECLINE)

    record = await dispatch_engine.round_store.load(request.id, 1)
    assert record.outcome == RoundOutcome.WON
    assert record.winner_driver_id == 2
