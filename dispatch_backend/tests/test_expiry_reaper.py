"""
ExpiryReaper Tests.

Deadlines missed by a crashed instance, concurrent sweepers, and recovery
of abandoned rounds.
"""

import asyncio
import pytest
from datetime import timedelta
from sqlalchemy import update

from dispatch_backend.app.core.clock import utcnow
from dispatch_backend.app.models.enums import Decision, RequestStatus, ResponseOutcome
from dispatch_backend.app.models.trip_request import TripRequest
from dispatch_backend.tests.helpers import eventually, open_round, place_driver, request_facts


async def backdate(db_session, request_id: str, seconds: float):
    await db_session.execute(
        update(TripRequest)
        .where(TripRequest.id == request_id)
        .values(updated_at=utcnow() - timedelta(seconds=seconds))
    )
    await db_session.commit()


@pytest.mark.asyncio
async def test_sweep_with_nothing_to_do(dispatch_engine):
    await open_round(dispatch_engine, [1], window_seconds=30)

    assert await dispatch_engine.reaper.sweep() == {"expired": 0, "rematched": 0, "exhausted": 0, "recovered": 0}


@pytest.mark.asyncio
async def test_overdue_offer_is_rematched(make_engine, gateway):
    engine = make_engine(acceptance_window_seconds=5.0)
    await place_driver(engine, 11, 1.0)
    request = await open_round(engine, [11], window_seconds=-1)

    counts = await engine.reaper.sweep()

    assert counts["expired"] == 1
    assert counts["rematched"] == 1
    assert gateway.revocations == [(11, request.id, "Offer expired")]

    # The restarted round offers again under round 2
    await eventually(lambda: gateway.offers)
    stored = await engine.ledger.get(request.id)
    assert stored.matching_round == 2
    assert stored.status == RequestStatus.MATCHED

    result = await engine.coordinator.respond_to_offer(request.id, 11, 2, Decision.ACCEPT)
    assert result.outcome == ResponseOutcome.ACCEPTED


@pytest.mark.asyncio
async def test_overdue_offer_on_last_round_is_settled(make_engine, gateway):
    engine = make_engine(max_matching_rounds=1)
    request = await open_round(engine, [11], requester_id=6, window_seconds=-1)

    counts = await engine.reaper.sweep()

    assert counts == {"expired": 1, "rematched": 0, "exhausted": 1, "recovered": 0}
    assert (await engine.ledger.get(request.id)).status == RequestStatus.NO_DRIVERS_AVAILABLE
    assert gateway.requester_updates == [(6, request.id, "No drivers available")]


@pytest.mark.asyncio
async def test_concurrent_reapers_expire_once(make_engine, gateway):
    first = make_engine(max_matching_rounds=1)
    second = make_engine(max_matching_rounds=1)
    await open_round(first, [11], window_seconds=-1)

    a, b = await asyncio.gather(first.reaper.sweep(), second.reaper.sweep())

    assert a["expired"] + b["expired"] == 1
    assert a["exhausted"] + b["exhausted"] == 1
    assert len(gateway.revocations) == 1


@pytest.mark.asyncio
async def test_accepted_request_is_not_expired(dispatch_engine):
    request = await open_round(dispatch_engine, [11], window_seconds=30)
    await dispatch_engine.coordinator.respond_to_offer(request.id, 11, 1, Decision.ACCEPT)

    counts = await dispatch_engine.reaper.sweep()

    assert counts["expired"] == 0
    assert (await dispatch_engine.ledger.get(request.id)).status == RequestStatus.ACCEPTED


@pytest.mark.asyncio
async def test_stalled_pending_request_is_restarted(make_engine, db_session):
    engine = make_engine(stalled_round_seconds=30.0)
    request = await engine.ledger.create(1, **request_facts())
    await backdate(db_session, request.id, 120)

    counts = await engine.reaper.sweep()

    assert counts["recovered"] == 1
    # No drivers anywhere, so the restarted round settles the request
    await eventually(
        lambda: status_is(engine, request.id, RequestStatus.NO_DRIVERS_AVAILABLE)
    )


@pytest.mark.asyncio
async def test_stalled_matching_round_is_recovered(make_engine, db_session):
    engine = make_engine(stalled_round_seconds=30.0, max_matching_rounds=1)
    request = await engine.ledger.create(1, **request_facts())
    await engine.ledger.claim_round(request.id, 0)
    await backdate(db_session, request.id, 120)

    counts = await engine.reaper.sweep()

    assert counts["recovered"] == 1
    assert counts["exhausted"] == 1
    assert (await engine.ledger.get(request.id)).status == RequestStatus.NO_DRIVERS_AVAILABLE


@pytest.mark.asyncio
async def test_recent_requests_are_left_alone(make_engine):
    engine = make_engine(stalled_round_seconds=30.0)
    request = await engine.ledger.create(1, **request_facts())

    counts = await engine.reaper.sweep()

    assert counts["recovered"] == 0
    assert (await engine.ledger.get(request.id)).status == RequestStatus.PENDING


@pytest.mark.asyncio
async def test_background_loop_sweeps(make_engine):
    engine = make_engine(reaper_enabled=True, reaper_interval_seconds=0.05, max_matching_rounds=1)
    request = await open_round(engine, [11], window_seconds=-1)

    engine.start()
    await eventually(lambda: status_is(engine, request.id, RequestStatus.NO_DRIVERS_AVAILABLE))
    await engine.stop()


async def status_is(engine, request_id: str, status: RequestStatus) -> bool:
    return (await engine.ledger.get(request_id)).status == status
