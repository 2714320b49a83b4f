"""Shared test fixtures and helpers."""

import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from shared.database import create_all, get_engine, get_session
from dispatch_service import models  # noqa: F401  registers tables on Base
from dispatch_service.geo import GeoPoint
from dispatch_service.service import DispatchService

# Bengaluru city centre
CENTER = GeoPoint(77.5946, 12.9716)

METERS_PER_DEGREE = 111195.0


def offset(point: GeoPoint, north_m: float = 0.0, east_m: float = 0.0) -> GeoPoint:
    """Point displaced roughly north_m / east_m metres from point."""
    lat = point.latitude + north_m / METERS_PER_DEGREE
    lon = point.longitude + east_m / (METERS_PER_DEGREE * math.cos(math.radians(point.latitude)))
    return GeoPoint(lon, lat)


class FixedClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def publish(self, booking_id: str, event: dict) -> None:
        self.events.append((booking_id, event))

    def types(self, booking_id: str | None = None) -> list[str]:
        return [e["event_type"] for b, e in self.events if booking_id is None or b == booking_id]


class FailingNotifier:
    async def publish(self, booking_id: str, event: dict) -> None:
        raise ConnectionError("broker down")


@pytest.fixture
async def engine(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(session_factory, notifier, clock):
    return DispatchService(
        session_factory,
        notifier=notifier,
        clock=clock,
        search_radius_m=10000,
        max_candidates=5,
        minimum_reserve=Decimal("500"),
        currency="INR",
        allow_requester_cancel=True,
    )


@pytest.fixture
def make_worker(service):
    async def _make(worker_id, skills=("plumbing",), location=CENTER, timezone_name="UTC"):
        return await service.register_worker(
            worker_id, f"Worker {worker_id}", list(skills), location, timezone_name
        )

    return _make


@pytest.fixture
def make_booking(service):
    async def _make(
        skill="plumbing",
        location=CENTER,
        requester_id="customer-1",
        estimated_cost=800,
        priority="medium",
    ):
        return await service.create_booking(
            requester_id=requester_id,
            skill=skill,
            description="Kitchen sink is leaking",
            location=location,
            scheduled_time=datetime(2024, 5, 2, 10, 0, tzinfo=timezone.utc),
            priority=priority,
            estimated_cost=estimated_cost,
        )

    return _make
