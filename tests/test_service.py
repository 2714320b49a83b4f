"""Tests for the service facade: worker registry, booking intake, stats, sweeps."""

from datetime import datetime
from decimal import Decimal

import pytest

from dispatch_service.dispatcher import DispatchOutcome, EVENT_NO_CANDIDATE
from dispatch_service.errors import InvalidState, NotFound, ValidationFailed
from dispatch_service.geo import GeoPoint
from dispatch_service.redispatch_worker import redispatch_tick

from tests.conftest import CENTER, offset


class TestWorkerRegistry:
    async def test_register_normalises_skills(self, service):
        worker = await service.register_worker("w1", "Asha", [" Plumbing", "plumbing", "ELECTRICAL", ""], CENTER)

        assert worker.skills == ["plumbing", "electrical"]
        assert worker.availability == "available"
        assert worker.active_booking_id is None
        assert worker.completed_jobs == 0
        balance = await service.get_balance("w1")
        assert balance.balance == Decimal("0")

    async def test_duplicate_registration(self, service, make_worker):
        await make_worker("w1")
        with pytest.raises(InvalidState):
            await make_worker("w1")

    async def test_unknown_timezone(self, service):
        with pytest.raises(ValidationFailed):
            await service.register_worker("w1", "Asha", ["plumbing"], CENTER, "Mars/Olympus_Mons")

    @pytest.mark.parametrize(
        "worker_id,name,skills",
        [("", "Asha", ["plumbing"]), ("w1", " ", ["plumbing"]), ("w1", "Asha", [" "])],
    )
    async def test_required_fields(self, service, worker_id, name, skills):
        with pytest.raises(ValidationFailed):
            await service.register_worker(worker_id, name, skills, CENTER)

    async def test_update_location(self, service, make_worker, clock):
        await make_worker("w1", location=None)
        clock.advance(minutes=5)

        worker = await service.update_location("w1", GeoPoint(77.6, 12.98))

        assert worker.latitude == pytest.approx(12.98)
        assert worker.longitude == pytest.approx(77.6)
        assert worker.last_location_update is not None

    async def test_update_location_unknown_worker(self, service):
        with pytest.raises(NotFound):
            await service.update_location("ghost", CENTER)

    async def test_manual_availability_toggle(self, service, make_worker):
        await make_worker("w1")
        worker = await service.set_availability("w1", "offline")
        assert worker.availability == "offline"
        worker = await service.set_availability("w1", "available")
        assert worker.availability == "available"

    async def test_toggle_refused_while_holding_booking(self, service, make_worker, make_booking):
        await make_worker("w1")
        booking = await make_booking()
        await service.dispatch(booking.booking_id)

        with pytest.raises(InvalidState):
            await service.set_availability("w1", "offline")

    async def test_toggle_validation(self, service, make_worker):
        await make_worker("w1")
        with pytest.raises(ValidationFailed):
            await service.set_availability("w1", "sleeping")
        with pytest.raises(NotFound):
            await service.set_availability("ghost", "offline")

    async def test_active_bookings(self, service, make_worker, make_booking):
        await make_worker("w1")
        booking = await make_booking()
        assert await service.active_bookings("w1") == []

        await service.dispatch(booking.booking_id)
        active = await service.active_bookings("w1")
        assert [b.booking_id for b in active] == [booking.booking_id]


class TestCreateBooking:
    async def test_created_pending(self, service, make_booking, notifier):
        booking = await make_booking(skill=" Plumbing ", estimated_cost="850.50")

        assert booking.status == "pending"
        assert booking.skill == "plumbing"
        assert booking.assigned_worker_id is None
        assert booking.estimated_cost == Decimal("850.50")
        assert booking.currency == "INR"
        assert notifier.types(booking.booking_id) == ["booking.created"]

    @pytest.mark.parametrize(
        "field,value",
        [
            ("requester_id", " "),
            ("skill", ""),
            ("description", ""),
            ("description", "x" * 501),
            ("priority", "whenever"),
            ("estimated_cost", -1),
            ("estimated_cost", "lots"),
        ],
    )
    async def test_validation(self, service, field, value):
        kwargs = dict(
            requester_id="customer-1",
            skill="plumbing",
            description="Leak",
            location=CENTER,
            scheduled_time=datetime(2024, 5, 2, 10, 0),
            priority="high",
            estimated_cost=100,
        )
        kwargs[field] = value
        with pytest.raises(ValidationFailed):
            await service.create_booking(**kwargs)

    async def test_naive_schedule_treated_as_utc(self, service):
        booking = await service.create_booking(
            "customer-1", "plumbing", "Leak", CENTER, datetime(2024, 5, 2, 10, 0)
        )
        assert booking.scheduled_time.tzinfo is not None


class TestStats:
    async def test_counts_are_zero_filled(self, service):
        stats = await service.get_stats()
        assert stats["bookings"] == {
            "pending": 0,
            "assigned": 0,
            "accepted": 0,
            "in_progress": 0,
            "completed": 0,
            "cancelled": 0,
        }
        assert stats["workers"] == {"available": 0, "busy": 0, "offline": 0}

    async def test_counts_reflect_state(self, service, make_worker, make_booking):
        await make_worker("w1")
        await make_worker("w2")
        await service.set_availability("w2", "offline")
        first = await make_booking()
        await make_booking()
        await service.dispatch(first.booking_id)
        await service.accept(first.booking_id, "w1")

        stats = await service.get_stats()
        assert stats["bookings"]["accepted"] == 1
        assert stats["bookings"]["pending"] == 1
        assert stats["workers"] == {"available": 0, "busy": 1, "offline": 1}

    async def test_repeated_reads_are_identical(self, service, make_worker, make_booking):
        await make_worker("w1")
        booking = await make_booking()
        await service.dispatch(booking.booking_id)

        assert await service.get_stats() == await service.get_stats()


class TestRedispatchSweep:
    async def test_urgent_bookings_served_first(self, service, make_worker, make_booking, clock):
        low = await make_booking(priority="low")
        clock.advance(minutes=1)
        urgent = await make_booking(priority="urgent")
        await make_worker("w1")

        results = await service.redispatch_pending(limit=10)

        assert [r.booking_id for r in results] == [urgent.booking_id, low.booking_id]
        assert results[0].outcome == DispatchOutcome.ASSIGNED
        assert results[1].outcome == DispatchOutcome.UNASSIGNED

    async def test_sweep_respects_limit(self, service, make_booking):
        for _ in range(3):
            await make_booking()
        results = await service.redispatch_pending(limit=2)
        assert len(results) == 2

    async def test_tick_counts_assignments(self, service, make_worker, make_booking):
        await make_worker("w1", location=offset(CENTER, north_m=200))
        await make_worker("w2", location=offset(CENTER, north_m=400))
        for _ in range(3):
            await make_booking()

        assert await redispatch_tick(service, batch=10) == 2

    async def test_background_dispatch_logs_failures(self, service, caplog):
        await service.dispatch_in_background("missing")
        assert "Background dispatch of booking missing failed" in caplog.text

    async def test_repeated_sweeps_annotate_once(self, service, make_booking, notifier):
        booking = await make_booking()

        for _ in range(5):
            results = await service.redispatch_pending()
            assert [r.outcome for r in results] == [DispatchOutcome.UNASSIGNED]

        stored = await service.get_booking(booking.booking_id)
        assert [e.kind for e in stored.events] == [EVENT_NO_CANDIDATE]
        assert notifier.types(booking.booking_id).count("booking.unassigned") == 1

    async def test_new_rejection_is_annotated_again(self, service, make_worker, make_booking):
        booking = await make_booking()
        await service.redispatch_pending()
        await make_worker("w1")
        await service.redispatch_pending()
        await service.reject(booking.booking_id, "w1", "busy")
        await service.redispatch_pending()

        stored = await service.get_booking(booking.booking_id)
        assert [e.kind for e in stored.events] == [EVENT_NO_CANDIDATE, EVENT_NO_CANDIDATE]
        assert stored.events[-1].detail["excluded_workers"] == ["w1"]
