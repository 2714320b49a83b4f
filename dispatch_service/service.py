import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from dateutil import tz
from sqlalchemy import case, func, select, update
from sqlalchemy.orm import selectinload

from .config import (
    ALLOW_REQUESTER_CANCEL,
    DEFAULT_CURRENCY,
    MAX_CANDIDATES,
    MINIMUM_RESERVE,
    REDISPATCH_BATCH,
    SEARCH_RADIUS_M,
)
from .dispatcher import DispatchResult, Dispatcher
from .errors import DispatchError, InvalidState, NotAuthorized, NotFound, ValidationFailed
from .geo import GeoPoint
from .ledger import Ledger, to_money
from .lifecycle import LifecycleController
from .models import (
    ACTIVE_STATUSES,
    Availability,
    Booking,
    BookingStatus,
    Priority,
    Worker,
    utcnow,
)
from .notifications import BOOKING_CREATED, NotificationPort, notify
from .worker_index import WorkerIndex, norm

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500

PRIORITY_ORDER = {
    Priority.URGENT.value: 0,
    Priority.HIGH.value: 1,
    Priority.MEDIUM.value: 2,
    Priority.LOW.value: 3,
}


def normalize_skills(skills) -> list[str]:
    return list(dict.fromkeys(s for s in (norm(x) for x in skills or []) if s))


class DispatchService:
    """
    Entry point used by the HTTP routes, the event consumer and the
    re-dispatch worker. Wires the worker index, dispatcher, lifecycle
    controller and ledger over one session factory and clock.
    """

    def __init__(
        self,
        session_factory,
        notifier: NotificationPort | None = None,
        clock=utcnow,
        search_radius_m: float = SEARCH_RADIUS_M,
        max_candidates: int = MAX_CANDIDATES,
        minimum_reserve: Decimal = MINIMUM_RESERVE,
        currency: str = DEFAULT_CURRENCY,
        allow_requester_cancel: bool = ALLOW_REQUESTER_CANCEL,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.currency = currency

        self.index = WorkerIndex(max_candidates=max_candidates)
        self.ledger = Ledger(session_factory, clock=clock, minimum_reserve=minimum_reserve, currency=currency)
        self.dispatcher = Dispatcher(
            session_factory,
            worker_index=self.index,
            notifier=notifier,
            clock=clock,
            search_radius_m=search_radius_m,
        )
        self.lifecycle = LifecycleController(
            session_factory,
            self.dispatcher,
            self.ledger,
            notifier=notifier,
            clock=clock,
            allow_requester_cancel=allow_requester_cancel,
        )

    # ---- workers ----

    async def register_worker(
        self,
        worker_id: str,
        name: str,
        skills,
        location: GeoPoint | None = None,
        timezone_name: str = "UTC",
    ) -> Worker:
        worker_id = (worker_id or "").strip()
        name = (name or "").strip()
        if not worker_id:
            raise ValidationFailed("worker_id is required")
        if not name:
            raise ValidationFailed("name is required")
        skills = normalize_skills(skills)
        if not skills:
            raise ValidationFailed("at least one skill is required")
        if not timezone_name or tz.gettz(timezone_name) is None:
            raise ValidationFailed(f"Unknown timezone: {timezone_name}")

        now = self.clock()
        async with self.session_factory() as session, session.begin():
            existing = await session.scalar(select(Worker.id).where(Worker.worker_id == worker_id))
            if existing:
                raise InvalidState(f"Worker {worker_id} already registered")

            worker = Worker(
                worker_id=worker_id,
                name=name,
                skills=skills,
                latitude=location.latitude if location else None,
                longitude=location.longitude if location else None,
                timezone=timezone_name,
                availability=Availability.AVAILABLE.value,
                active_booking_id=None,
                rating=0.0,
                completed_jobs=0,
                last_location_update=now if location else None,
                created_at=now,
            )
            session.add(worker)
            # wallet references workers.worker_id
            await session.flush()
            self.ledger.open_wallet(session, worker_id)

        logger.info("Registered worker %s with skills %s", worker_id, skills)
        return worker

    async def get_worker(self, worker_id: str) -> Worker:
        async with self.session_factory() as session:
            res = await session.execute(select(Worker).where(Worker.worker_id == worker_id))
            worker = res.scalar_one_or_none()
        if not worker:
            raise NotFound(f"Worker {worker_id} not found")
        return worker

    async def update_location(self, worker_id: str, location: GeoPoint) -> Worker:
        async with self.session_factory() as session, session.begin():
            res = await session.execute(
                update(Worker)
                .where(Worker.worker_id == worker_id)
                .values(
                    latitude=location.latitude,
                    longitude=location.longitude,
                    last_location_update=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise NotFound(f"Worker {worker_id} not found")
        return await self.get_worker(worker_id)

    async def set_availability(self, worker_id: str, availability) -> Worker:
        """Manual toggle by the worker. Refused while a booking is held."""
        try:
            availability = Availability(availability)
        except ValueError:
            raise ValidationFailed(f"Unknown availability: {availability}")

        async with self.session_factory() as session, session.begin():
            res = await session.execute(
                update(Worker)
                .where(Worker.worker_id == worker_id, Worker.active_booking_id.is_(None))
                .values(availability=availability.value)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                active = (
                    await session.execute(
                        select(Worker.active_booking_id).where(Worker.worker_id == worker_id)
                    )
                ).one_or_none()
                if active is None:
                    raise NotFound(f"Worker {worker_id} not found")
                raise InvalidState(
                    f"Worker {worker_id} holds active booking {active.active_booking_id}"
                )
        return await self.get_worker(worker_id)

    async def active_bookings(self, worker_id: str) -> list[Booking]:
        await self.get_worker(worker_id)
        async with self.session_factory() as session:
            res = await session.execute(
                select(Booking)
                .where(
                    Booking.assigned_worker_id == worker_id,
                    Booking.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
                .order_by(Booking.scheduled_time, Booking.id)
            )
            return list(res.scalars())

    # ---- bookings ----

    async def create_booking(
        self,
        requester_id: str,
        skill: str,
        description: str,
        location: GeoPoint,
        scheduled_time: datetime,
        priority: str = Priority.MEDIUM.value,
        estimated_cost=0,
    ) -> Booking:
        requester_id = (requester_id or "").strip()
        skill = norm(skill)
        description = (description or "").strip()
        if not requester_id:
            raise ValidationFailed("requester_id is required")
        if not skill:
            raise ValidationFailed("skill is required")
        if not description:
            raise ValidationFailed("description is required")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationFailed(f"description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")
        if not isinstance(location, GeoPoint):
            raise ValidationFailed("location must be a GeoPoint")
        try:
            priority = Priority(priority)
        except ValueError:
            raise ValidationFailed(f"Unknown priority: {priority}")
        estimated_cost = to_money(estimated_cost)
        if estimated_cost < 0:
            raise ValidationFailed("estimated_cost cannot be negative")
        if scheduled_time.tzinfo is None:
            scheduled_time = scheduled_time.replace(tzinfo=timezone.utc)

        now = self.clock()
        booking = Booking(
            booking_id=str(uuid.uuid4()),
            requester_id=requester_id,
            skill=skill,
            description=description,
            latitude=location.latitude,
            longitude=location.longitude,
            scheduled_time=scheduled_time,
            priority=priority.value,
            status=BookingStatus.PENDING.value,
            assigned_worker_id=None,
            estimated_cost=estimated_cost,
            final_cost=None,
            currency=self.currency,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session, session.begin():
            session.add(booking)

        logger.info("Booking %s created by %s for skill %s", booking.booking_id, requester_id, skill)
        if self.notifier:
            await notify(
                self.notifier,
                booking.booking_id,
                BOOKING_CREATED,
                {"requester_id": requester_id, "skill": skill, "priority": priority.value},
            )
        return booking

    async def get_booking(self, booking_id: str) -> Booking:
        async with self.session_factory() as session:
            res = await session.execute(
                select(Booking)
                .where(Booking.booking_id == booking_id)
                .options(
                    selectinload(Booking.rejections),
                    selectinload(Booking.assignments),
                    selectinload(Booking.events),
                )
            )
            booking = res.scalar_one_or_none()
        if not booking:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    async def view_booking(self, booking_id: str, caller_id: str) -> Booking:
        """A booking with its history, visible to its requester and assigned worker."""
        booking = await self.get_booking(booking_id)
        if caller_id not in (booking.requester_id, booking.assigned_worker_id):
            raise NotAuthorized(f"Caller {caller_id} may not view booking {booking_id}")
        return booking

    async def dispatch(self, booking_id: str) -> DispatchResult:
        return await self.dispatcher.assign(booking_id)

    async def dispatch_in_background(self, booking_id: str):
        """Fire-and-forget dispatch after creation; failures are only logged."""
        try:
            await self.dispatcher.assign(booking_id)
        except DispatchError as e:
            logger.warning("Background dispatch of booking %s failed: %s", booking_id, e)

    async def redispatch_pending(self, limit: int = REDISPATCH_BATCH) -> list[DispatchResult]:
        rank = case(PRIORITY_ORDER, value=Booking.priority, else_=len(PRIORITY_ORDER))
        async with self.session_factory() as session:
            res = await session.execute(
                select(Booking.booking_id)
                .where(Booking.status == BookingStatus.PENDING.value)
                .order_by(rank, Booking.created_at, Booking.id)
                .limit(limit)
            )
            booking_ids = list(res.scalars())

        results = []
        for booking_id in booking_ids:
            try:
                results.append(await self.dispatcher.assign(booking_id))
            except InvalidState:
                logger.debug("Booking %s left pending before re-dispatch", booking_id)
        return results

    async def accept(self, booking_id: str, worker_id: str):
        return await self.lifecycle.accept(booking_id, worker_id)

    async def reject(self, booking_id: str, worker_id: str, reason: str | None = None):
        return await self.lifecycle.reject(booking_id, worker_id, reason)

    async def update_status(self, booking_id: str, worker_id: str, target, notes=None, final_cost=None):
        return await self.lifecycle.update_status(booking_id, worker_id, target, notes, final_cost)

    async def cancel(self, booking_id: str, caller_id: str, reason: str | None = None):
        return await self.lifecycle.cancel(booking_id, caller_id, reason)

    async def readmit_worker(self, booking_id: str, worker_id: str) -> int:
        return await self.lifecycle.readmit_worker(booking_id, worker_id)

    async def retry_settlement(self, booking_id: str):
        return await self.lifecycle.retry_settlement(booking_id)

    async def get_stats(self) -> dict:
        async with self.session_factory() as session:
            booking_rows = await session.execute(
                select(Booking.status, func.count(Booking.id)).group_by(Booking.status)
            )
            worker_rows = await session.execute(
                select(Worker.availability, func.count(Worker.id)).group_by(Worker.availability)
            )
            by_status = dict(booking_rows.all())
            by_availability = dict(worker_rows.all())

        return {
            "bookings": {s.value: by_status.get(s.value, 0) for s in BookingStatus},
            "workers": {a.value: by_availability.get(a.value, 0) for a in Availability},
        }

    # ---- wallet ----

    async def get_balance(self, worker_id: str):
        return await self.ledger.get_balance(worker_id)

    async def withdraw(self, worker_id: str, amount, destination: str):
        return await self.ledger.withdraw(worker_id, amount, destination)

    async def get_transactions(self, worker_id: str, page: int = 1, limit: int = 20, txn_type=None, status=None):
        return await self.ledger.get_transactions(worker_id, page, limit, txn_type, status)

    async def confirm_withdrawal(self, transaction_id: str, succeeded: bool, reference=None, failure_reason=None):
        return await self.ledger.confirm_withdrawal(transaction_id, succeeded, reference, failure_reason)


_service: DispatchService | None = None


def get_service() -> DispatchService:
    global _service
    if _service is None:
        from .db import SessionLocal
        from .notifications import booking_events

        _service = DispatchService(SessionLocal, notifier=booking_events)
    return _service
