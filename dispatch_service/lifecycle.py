import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import ALLOW_REQUESTER_CANCEL
from .dispatcher import DispatchOutcome, DispatchResult, Dispatcher, load_booking
from .errors import (
    ConcurrencyConflict,
    DispatchError,
    InvalidState,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationFailed,
)
from .ledger import Ledger, SettlementResult, to_money
from .models import (
    Availability,
    Booking,
    BookingAssignment,
    BookingEvent,
    BookingRejection,
    BookingStatus,
    Worker,
    utcnow,
)
from .notifications import (
    BOOKING_ACCEPTED,
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_IN_PROGRESS,
    BOOKING_REJECTED,
    BOOKING_SETTLEMENT_FAILED,
    NotificationPort,
    notify,
)

logger = logging.getLogger(__name__)

EVENT_SETTLEMENT_FAILED = "settlement_failed"
EVENT_WORKER_READMITTED = "worker_readmitted"

DEFAULT_REJECTION_REASON = "unspecified"
MAX_REASON_LENGTH = 500

# pending -> assigned is performed by the Dispatcher only.
TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.ASSIGNED},
    BookingStatus.ASSIGNED: {BookingStatus.ACCEPTED, BookingStatus.PENDING},
    BookingStatus.ACCEPTED: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
}


def check_transition(source, target):
    try:
        source = BookingStatus(source)
        target = BookingStatus(target)
    except ValueError:
        raise InvalidTransition(source, target)
    if target not in TRANSITIONS.get(source, set()):
        raise InvalidTransition(source, target)


def normalize_reason(reason: str | None) -> str:
    reason = (reason or "").strip()
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationFailed(f"reason cannot exceed {MAX_REASON_LENGTH} characters")
    return reason or DEFAULT_REJECTION_REASON


@dataclass
class TransitionResult:
    booking_id: str
    status: BookingStatus
    worker_id: str | None = None
    reassignment: DispatchResult | None = None
    settlement: SettlementResult | None = None
    settlement_error: str | None = None


class LifecycleController:
    """
    Applies the booking state machine. Each transition is a conditional
    update of the booking (keyed on its current status and assigned worker)
    plus, where availability changes, a conditional update of the worker
    keyed on it still holding this booking. Both happen in one transaction.
    """

    def __init__(
        self,
        session_factory,
        dispatcher: Dispatcher,
        ledger: Ledger,
        notifier: NotificationPort | None = None,
        clock=utcnow,
        allow_requester_cancel: bool = ALLOW_REQUESTER_CANCEL,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock
        # When True the booking's requester may cancel an accepted or
        # in-progress booking in addition to the assigned worker.
        self.allow_requester_cancel = allow_requester_cancel

    def _authorize(self, booking: Booking, caller_id: str, requester_may_act: bool = False):
        if booking.assigned_worker_id and caller_id == booking.assigned_worker_id:
            return
        if requester_may_act and self.allow_requester_cancel and caller_id == booking.requester_id:
            return
        raise NotAuthorized(f"Caller {caller_id} may not update booking {booking.booking_id}")

    async def _transition(
        self,
        session: AsyncSession,
        booking_id: str,
        target: BookingStatus,
        caller_id: str,
        booking_values: dict | None = None,
        worker_values: dict | None = None,
        requester_may_act: bool = False,
    ) -> Booking:
        booking = await load_booking(session, booking_id)
        check_transition(booking.status, target)
        self._authorize(booking, caller_id, requester_may_act)

        res = await session.execute(
            update(Booking)
            .where(
                Booking.booking_id == booking_id,
                Booking.status == booking.status,
                Booking.assigned_worker_id == booking.assigned_worker_id,
            )
            .values(status=target.value, updated_at=self.clock(), **(booking_values or {}))
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConcurrencyConflict(f"Booking {booking_id} changed concurrently")

        if worker_values is not None:
            res = await session.execute(
                update(Worker)
                .where(
                    Worker.worker_id == booking.assigned_worker_id,
                    Worker.active_booking_id == booking_id,
                )
                .values(**worker_values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise ConcurrencyConflict(
                    f"Worker {booking.assigned_worker_id} no longer holds booking {booking_id}"
                )

        return booking

    async def _notify(self, booking_id: str, event_type: str, data: dict):
        if self.notifier:
            await notify(self.notifier, booking_id, event_type, data)

    # ---- transitions ----

    async def accept(self, booking_id: str, worker_id: str) -> TransitionResult:
        async with self.session_factory() as session, session.begin():
            await self._transition(
                session,
                booking_id,
                BookingStatus.ACCEPTED,
                worker_id,
                worker_values={"availability": Availability.BUSY.value},
            )
            session.add(
                BookingAssignment(
                    booking_id=booking_id,
                    worker_id=worker_id,
                    status=BookingStatus.ACCEPTED.value,
                    created_at=self.clock(),
                )
            )

        logger.info("Booking %s accepted by worker %s", booking_id, worker_id)
        await self._notify(booking_id, BOOKING_ACCEPTED, {"worker_id": worker_id})
        return TransitionResult(booking_id, BookingStatus.ACCEPTED, worker_id)

    async def reject(self, booking_id: str, worker_id: str, reason: str | None = None) -> TransitionResult:
        reason = normalize_reason(reason)
        async with self.session_factory() as session, session.begin():
            await self._transition(
                session,
                booking_id,
                BookingStatus.PENDING,
                worker_id,
                booking_values={"assigned_worker_id": None},
                worker_values={
                    "availability": Availability.AVAILABLE.value,
                    "active_booking_id": None,
                },
            )
            now = self.clock()
            session.add(
                BookingRejection(booking_id=booking_id, worker_id=worker_id, reason=reason, created_at=now)
            )
            session.add(
                BookingAssignment(
                    booking_id=booking_id, worker_id=worker_id, status="rejected", created_at=now
                )
            )

        logger.info("Booking %s rejected by worker %s. Reason: %s", booking_id, worker_id, reason)
        await self._notify(booking_id, BOOKING_REJECTED, {"worker_id": worker_id, "reason": reason})

        try:
            reassignment = await self.dispatcher.assign(booking_id)
        except InvalidState as e:
            # a concurrent re-dispatch already moved the booking on
            reassignment = DispatchResult(
                outcome=DispatchOutcome.ALREADY_ASSIGNED, booking_id=booking_id, message=e.message
            )

        status = BookingStatus.ASSIGNED if reassignment.success else BookingStatus.PENDING
        return TransitionResult(booking_id, status, reassignment.worker_id, reassignment=reassignment)

    async def start(self, booking_id: str, worker_id: str, notes: str | None = None) -> TransitionResult:
        values = {"notes": notes} if notes else {}
        async with self.session_factory() as session, session.begin():
            await self._transition(session, booking_id, BookingStatus.IN_PROGRESS, worker_id, booking_values=values)

        logger.info("Booking %s started by worker %s", booking_id, worker_id)
        await self._notify(booking_id, BOOKING_IN_PROGRESS, {"worker_id": worker_id})
        return TransitionResult(booking_id, BookingStatus.IN_PROGRESS, worker_id)

    async def complete(
        self,
        booking_id: str,
        worker_id: str,
        notes: str | None = None,
        final_cost=None,
    ) -> TransitionResult:
        values = {"completed_at": self.clock()}
        if notes:
            values["notes"] = notes
        if final_cost is not None:
            final_cost = to_money(final_cost)
            if final_cost < 0:
                raise ValidationFailed("final_cost cannot be negative")
            values["final_cost"] = final_cost

        async with self.session_factory() as session, session.begin():
            booking = await self._transition(
                session,
                booking_id,
                BookingStatus.COMPLETED,
                worker_id,
                booking_values=values,
                worker_values={
                    "availability": Availability.AVAILABLE.value,
                    "active_booking_id": None,
                    "completed_jobs": Worker.completed_jobs + 1,
                },
            )

        amount = self._settlement_amount(booking, final_cost)
        logger.info("Booking %s completed by worker %s", booking_id, worker_id)
        await self._notify(booking_id, BOOKING_COMPLETED, {"worker_id": worker_id, "amount": str(amount)})

        settlement, error = await self._settle(booking_id, worker_id, amount)
        return TransitionResult(
            booking_id,
            BookingStatus.COMPLETED,
            worker_id,
            settlement=settlement,
            settlement_error=error,
        )

    async def cancel(self, booking_id: str, caller_id: str, reason: str | None = None) -> TransitionResult:
        reason = (reason or "").strip() or None
        async with self.session_factory() as session, session.begin():
            booking = await self._transition(
                session,
                booking_id,
                BookingStatus.CANCELLED,
                caller_id,
                booking_values={
                    "cancelled_at": self.clock(),
                    "cancellation_reason": reason,
                    "cancelled_by": caller_id,
                },
                worker_values={
                    "availability": Availability.AVAILABLE.value,
                    "active_booking_id": None,
                },
                requester_may_act=True,
            )

        logger.info("Booking %s cancelled by %s", booking_id, caller_id)
        await self._notify(
            booking_id,
            BOOKING_CANCELLED,
            {"worker_id": booking.assigned_worker_id, "cancelled_by": caller_id, "reason": reason},
        )
        return TransitionResult(booking_id, BookingStatus.CANCELLED, booking.assigned_worker_id)

    async def update_status(
        self,
        booking_id: str,
        worker_id: str,
        target,
        notes: str | None = None,
        final_cost=None,
    ) -> TransitionResult:
        try:
            target = BookingStatus(target)
        except ValueError:
            raise ValidationFailed(f"Unknown booking status: {target}")

        if target == BookingStatus.ACCEPTED:
            return await self.accept(booking_id, worker_id)
        if target == BookingStatus.PENDING:
            return await self.reject(booking_id, worker_id, notes)
        if target == BookingStatus.IN_PROGRESS:
            return await self.start(booking_id, worker_id, notes)
        if target == BookingStatus.COMPLETED:
            return await self.complete(booking_id, worker_id, notes, final_cost)
        if target == BookingStatus.CANCELLED:
            return await self.cancel(booking_id, worker_id, notes)

        # assigned is reachable only through dispatch
        async with self.session_factory() as session:
            booking = await load_booking(session, booking_id)
        raise InvalidTransition(booking.status, target)

    # ---- settlement ----

    @staticmethod
    def _settlement_amount(booking: Booking, final_cost: Decimal | None = None) -> Decimal:
        if final_cost is not None:
            return final_cost
        if booking.final_cost is not None:
            return booking.final_cost
        return booking.estimated_cost or Decimal("0")

    async def _settle(self, booking_id: str, worker_id: str, amount: Decimal):
        try:
            result = await self.ledger.settle_booking_earning(worker_id, booking_id, amount)
        except (DispatchError, SQLAlchemyError) as e:
            logger.exception("Settlement of booking %s for worker %s failed", booking_id, worker_id)
            await self._record_event(
                booking_id,
                EVENT_SETTLEMENT_FAILED,
                {"worker_id": worker_id, "amount": str(amount), "error": str(e)},
            )
            await self._notify(booking_id, BOOKING_SETTLEMENT_FAILED, {"worker_id": worker_id, "error": str(e)})
            return None, str(e) or e.__class__.__name__
        return result, None

    async def retry_settlement(self, booking_id: str) -> TransitionResult:
        async with self.session_factory() as session:
            booking = await load_booking(session, booking_id)
        if booking.status != BookingStatus.COMPLETED.value:
            raise InvalidState(f"Booking {booking_id} is not completed. Current status: {booking.status}")
        if not booking.assigned_worker_id:
            raise InvalidState(f"Booking {booking_id} has no assigned worker")

        amount = self._settlement_amount(booking)
        settlement, error = await self._settle(booking_id, booking.assigned_worker_id, amount)
        return TransitionResult(
            booking_id,
            BookingStatus.COMPLETED,
            booking.assigned_worker_id,
            settlement=settlement,
            settlement_error=error,
        )

    async def _record_event(self, booking_id: str, kind: str, detail: dict):
        try:
            async with self.session_factory() as session, session.begin():
                await session.execute(
                    insert(BookingEvent).values(
                        booking_id=booking_id, kind=kind, detail=detail, created_at=self.clock()
                    )
                )
        except SQLAlchemyError:
            logger.exception("Could not record %s event for booking %s", kind, booking_id)

    # ---- rejection override ----

    async def readmit_worker(self, booking_id: str, worker_id: str) -> int:
        """
        Explicit override: drop worker_id from a pending booking's rejection
        set so dispatch may consider it again. Returns the entries removed.
        """
        async with self.session_factory() as session, session.begin():
            booking = await load_booking(session, booking_id)
            if booking.status != BookingStatus.PENDING.value:
                raise InvalidState(f"Booking {booking_id} is not pending. Current status: {booking.status}")
            res = await session.execute(
                delete(BookingRejection).where(
                    BookingRejection.booking_id == booking_id,
                    BookingRejection.worker_id == worker_id,
                )
            )
            if not res.rowcount:
                raise NotFound(f"Worker {worker_id} has not rejected booking {booking_id}")
            session.add(
                BookingEvent(
                    booking_id=booking_id,
                    kind=EVENT_WORKER_READMITTED,
                    detail={"worker_id": worker_id, "removed": res.rowcount},
                    created_at=self.clock(),
                )
            )
        logger.info("Worker %s readmitted for booking %s", worker_id, booking_id)
        return res.rowcount
