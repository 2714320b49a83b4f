"""Tests for nearest-worker dispatch."""

import pytest
from sqlalchemy import func, select, update

from dispatch_service.dispatcher import DispatchOutcome, EVENT_NO_CANDIDATE
from dispatch_service.errors import InvalidState, NotFound
from dispatch_service.models import Booking, BookingStatus, Worker

from tests.conftest import CENTER, offset


async def active_count(session_factory, worker_id):
    async with session_factory() as session:
        return await session.scalar(
            select(func.count(Booking.id)).where(
                Booking.assigned_worker_id == worker_id,
                Booking.status.in_(["assigned", "accepted", "in_progress"]),
            )
        )


class TestAssign:
    async def test_single_eligible_worker_is_assigned(self, service, make_worker, make_booking, notifier):
        await make_worker("w1", location=offset(CENTER, north_m=1500))
        booking = await make_booking()

        result = await service.dispatch(booking.booking_id)

        assert result.outcome == DispatchOutcome.ASSIGNED
        assert result.success
        assert result.worker_id == "w1"
        assert result.distance_m == pytest.approx(1500, rel=0.01)

        stored = await service.get_booking(booking.booking_id)
        assert stored.status == BookingStatus.ASSIGNED.value
        assert stored.assigned_worker_id == "w1"
        assert [(a.worker_id, a.status) for a in stored.assignments] == [("w1", "assigned")]

        worker = await service.get_worker("w1")
        # reserved pending acceptance
        assert worker.active_booking_id == booking.booking_id
        assert worker.availability == "available"
        assert "booking.assigned" in notifier.types(booking.booking_id)

    async def test_nearest_worker_wins(self, service, make_worker, make_booking):
        await make_worker("far", location=offset(CENTER, north_m=4000))
        await make_worker("near", location=offset(CENTER, east_m=500))
        booking = await make_booking()

        result = await service.dispatch(booking.booking_id)
        assert result.worker_id == "near"

    async def test_reserved_worker_not_offered_again(self, service, make_worker, make_booking):
        await make_worker("w1")
        first = await make_booking()
        second = await make_booking()

        assert (await service.dispatch(first.booking_id)).worker_id == "w1"
        result = await service.dispatch(second.booking_id)

        assert result.outcome == DispatchOutcome.UNASSIGNED
        assert await active_count(service.session_factory, "w1") == 1

    async def test_no_candidate_leaves_booking_pending(self, service, make_worker, make_booking, notifier):
        await make_worker("sparky", skills=["electrical"])
        booking = await make_booking()

        result = await service.dispatch(booking.booking_id)

        assert result.outcome == DispatchOutcome.UNASSIGNED
        assert result.worker_id is None
        stored = await service.get_booking(booking.booking_id)
        assert stored.status == BookingStatus.PENDING.value
        assert stored.dispatch_note.startswith("No available workers within 10000m radius")
        assert [e.kind for e in stored.events] == [EVENT_NO_CANDIDATE]
        assert "booking.unassigned" in notifier.types(booking.booking_id)

    async def test_missing_booking(self, service):
        with pytest.raises(NotFound):
            await service.dispatch("does-not-exist")

    async def test_non_pending_booking(self, service, make_worker, make_booking):
        await make_worker("w1")
        booking = await make_booking()
        await service.dispatch(booking.booking_id)

        with pytest.raises(InvalidState):
            await service.dispatch(booking.booking_id)

    async def test_rejecters_are_excluded(self, service, make_worker, make_booking):
        await make_worker("w1", location=offset(CENTER, north_m=100))
        booking = await make_booking()
        await service.dispatch(booking.booking_id)
        await service.reject(booking.booking_id, "w1", "too far")

        stored = await service.get_booking(booking.booking_id)
        assert stored.status == BookingStatus.PENDING.value
        result = await service.dispatch(booking.booking_id)
        assert result.outcome == DispatchOutcome.UNASSIGNED


class TestLiveRecheck:
    async def test_stale_candidate_is_skipped(self, service, make_worker, make_booking, monkeypatch):
        await make_worker("w1", location=offset(CENTER, north_m=100))
        await make_worker("w2", location=offset(CENTER, north_m=900))
        booking = await make_booking()

        original = service.index.find_candidates

        async def stale_snapshot(*args, **kwargs):
            candidates = await original(*args, **kwargs)
            # w1 goes offline after the index was read
            async with service.session_factory() as session, session.begin():
                await session.execute(
                    update(Worker).where(Worker.worker_id == "w1").values(availability="offline")
                )
            return candidates

        monkeypatch.setattr(service.index, "find_candidates", stale_snapshot)

        result = await service.dispatch(booking.booking_id)

        assert result.outcome == DispatchOutcome.ASSIGNED
        assert result.worker_id == "w2"
        assert result.candidates_tried == 2
        w1 = await service.get_worker("w1")
        assert w1.active_booking_id is None

    async def test_all_candidates_stale(self, service, make_worker, make_booking, monkeypatch):
        await make_worker("w1")
        booking = await make_booking()

        original = service.index.find_candidates

        async def stale_snapshot(*args, **kwargs):
            candidates = await original(*args, **kwargs)
            await service.set_availability("w1", "offline")
            return candidates

        monkeypatch.setattr(service.index, "find_candidates", stale_snapshot)

        result = await service.dispatch(booking.booking_id)
        assert result.outcome == DispatchOutcome.UNASSIGNED
        assert result.message == "No candidate could be confirmed available"
        stored = await service.get_booking(booking.booking_id)
        assert stored.status == BookingStatus.PENDING.value


class TestConcurrentDispatch:
    async def test_one_candidate_two_dispatches(self, service, make_worker, make_booking, monkeypatch):
        await make_worker("w1")
        booking = await make_booking()

        original = service.index.find_candidates
        competing = []

        async def racing(*args, **kwargs):
            candidates = await original(*args, **kwargs)
            if not competing:
                competing.append(None)
                competing[0] = await service.dispatch(booking.booking_id)
            return candidates

        monkeypatch.setattr(service.index, "find_candidates", racing)

        result = await service.dispatch(booking.booking_id)

        outcomes = sorted([result.outcome.value, competing[0].outcome.value])
        assert outcomes == ["already_assigned", "assigned"]
        stored = await service.get_booking(booking.booking_id)
        assert stored.assigned_worker_id == "w1"
        assert len(stored.assignments) == 1
        assert await active_count(service.session_factory, "w1") == 1

    async def test_lost_booking_race_does_not_try_next_candidate(
        self, service, make_worker, make_booking, monkeypatch
    ):
        await make_worker("w1", location=offset(CENTER, north_m=100))
        await make_worker("w2", location=offset(CENTER, north_m=200))
        booking = await make_booking()

        original = service.index.find_candidates
        competing = []

        async def racing(*args, **kwargs):
            candidates = await original(*args, **kwargs)
            if not competing:
                competing.append(None)
                competing[0] = await service.dispatch(booking.booking_id)
            return candidates

        monkeypatch.setattr(service.index, "find_candidates", racing)

        result = await service.dispatch(booking.booking_id)

        assert competing[0].outcome == DispatchOutcome.ASSIGNED
        assert competing[0].worker_id == "w1"
        assert result.outcome == DispatchOutcome.ALREADY_ASSIGNED
        w2 = await service.get_worker("w2")
        assert w2.active_booking_id is None
