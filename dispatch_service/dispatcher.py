import enum
import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .config import SEARCH_RADIUS_M
from .errors import InvalidState, NotFound
from .geo import GeoPoint
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
from .notifications import BOOKING_ASSIGNED, BOOKING_UNASSIGNED, NotificationPort, notify
from .worker_index import Candidate, WorkerIndex

logger = logging.getLogger(__name__)

EVENT_NO_CANDIDATE = "no_candidate"


class DispatchOutcome(str, enum.Enum):
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    ALREADY_ASSIGNED = "already_assigned"


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    booking_id: str
    worker_id: str | None = None
    distance_m: float | None = None
    message: str = ""
    candidates_tried: int = 0

    @property
    def success(self) -> bool:
        return self.outcome == DispatchOutcome.ASSIGNED


class _CandidateTaken(Exception):
    """Internal: the candidate was claimed between re-check and write."""


async def load_booking(session: AsyncSession, booking_id: str) -> Booking:
    res = await session.execute(
        select(Booking).where(Booking.booking_id == booking_id).execution_options(populate_existing=True)
    )
    booking = res.scalar_one_or_none()
    if not booking:
        raise NotFound(f"Booking {booking_id} not found")
    return booking


async def rejected_worker_ids(session: AsyncSession, booking_id: str) -> list[str]:
    res = await session.execute(
        select(BookingRejection.worker_id)
        .where(BookingRejection.booking_id == booking_id)
        .order_by(BookingRejection.id)
    )
    return list(dict.fromkeys(res.scalars()))


class Dispatcher:
    """
    Finds the nearest eligible worker for a pending booking and claims it.

    The claim is one database transaction: a conditional update of the
    booking (still pending) and a conditional update of the worker (still
    available with no active booking). A candidate whose live state no
    longer qualifies is skipped; losing the booking race ends the attempt.
    """

    def __init__(
        self,
        session_factory,
        worker_index: WorkerIndex | None = None,
        notifier: NotificationPort | None = None,
        clock=utcnow,
        search_radius_m: float = SEARCH_RADIUS_M,
    ):
        self.session_factory = session_factory
        self.worker_index = worker_index or WorkerIndex()
        self.notifier = notifier
        self.clock = clock
        self.search_radius_m = search_radius_m

    async def assign(self, booking_id: str) -> DispatchResult:
        async with self.session_factory() as session:
            booking = await load_booking(session, booking_id)
            if booking.status != BookingStatus.PENDING.value:
                raise InvalidState(
                    f"Booking {booking_id} is not pending. Current status: {booking.status}"
                )

            point = GeoPoint(booking.longitude, booking.latitude)
            excluded = await rejected_worker_ids(session, booking_id)
            candidates = await self.worker_index.find_candidates(
                session, point, self.search_radius_m, booking.skill, excluded
            )

        if not candidates:
            message = f"No available workers within {self.search_radius_m:g}m radius"
            return await self._unassigned(booking_id, message, excluded, tried=0)

        for tried, candidate in enumerate(candidates, start=1):
            claimed = await self._try_claim(booking_id, candidate)
            if claimed is None:
                logger.info(
                    "Candidate %s for booking %s no longer available, trying next",
                    candidate.worker_id,
                    booking_id,
                )
                continue

            if claimed is False:
                logger.info("Booking %s was claimed by a concurrent dispatch", booking_id)
                return DispatchResult(
                    outcome=DispatchOutcome.ALREADY_ASSIGNED,
                    booking_id=booking_id,
                    message="Booking already assigned by another dispatch",
                    candidates_tried=tried,
                )

            logger.info(
                "Booking %s assigned to worker %s (%.0fm)",
                booking_id,
                candidate.worker_id,
                candidate.distance_m,
            )
            if self.notifier:
                await notify(
                    self.notifier,
                    booking_id,
                    BOOKING_ASSIGNED,
                    {"worker_id": candidate.worker_id, "distance_m": round(candidate.distance_m, 1)},
                )
            return DispatchResult(
                outcome=DispatchOutcome.ASSIGNED,
                booking_id=booking_id,
                worker_id=candidate.worker_id,
                distance_m=candidate.distance_m,
                message="Booking assigned successfully",
                candidates_tried=tried,
            )

        message = "No candidate could be confirmed available"
        return await self._unassigned(booking_id, message, excluded, tried=len(candidates))

    async def _try_claim(self, booking_id: str, candidate: Candidate) -> bool | None:
        """
        True when claimed, False when the booking is no longer pending,
        None when the candidate is no longer available.
        """
        worker_id = candidate.worker_id
        try:
            async with self.session_factory() as session, session.begin():
                live = (
                    await session.execute(
                        select(Worker.availability, Worker.active_booking_id).where(
                            Worker.worker_id == worker_id
                        )
                    )
                ).one_or_none()
                if (
                    live is None
                    or live.availability != Availability.AVAILABLE.value
                    or live.active_booking_id is not None
                ):
                    return None

                now = self.clock()
                res = await session.execute(
                    update(Booking)
                    .where(
                        Booking.booking_id == booking_id,
                        Booking.status == BookingStatus.PENDING.value,
                    )
                    .values(
                        status=BookingStatus.ASSIGNED.value,
                        assigned_worker_id=worker_id,
                        dispatch_note=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    return False

                res = await session.execute(
                    update(Worker)
                    .where(
                        Worker.worker_id == worker_id,
                        Worker.availability == Availability.AVAILABLE.value,
                        Worker.active_booking_id.is_(None),
                    )
                    .values(active_booking_id=booking_id)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    raise _CandidateTaken()

                session.add(
                    BookingAssignment(
                        booking_id=booking_id,
                        worker_id=worker_id,
                        status=BookingStatus.ASSIGNED.value,
                        created_at=now,
                    )
                )
        except _CandidateTaken:
            return None
        return True

    async def _unassigned(
        self, booking_id: str, message: str, excluded: list[str], tried: int
    ) -> DispatchResult:
        now = self.clock()
        detail = {
            "message": message,
            "search_radius_m": self.search_radius_m,
            "excluded_workers": excluded,
            "candidates_tried": tried,
        }
        async with self.session_factory() as session, session.begin():
            current = (
                await session.execute(
                    select(Booking.status, Booking.dispatch_note).where(Booking.booking_id == booking_id)
                )
            ).one_or_none()
            still_pending = current is not None and current.status == BookingStatus.PENDING.value

            # a sweep that finds nothing new leaves the existing annotation alone
            repeated = False
            if still_pending and current.dispatch_note:
                latest = await session.scalar(
                    select(BookingEvent.detail)
                    .where(
                        BookingEvent.booking_id == booking_id,
                        BookingEvent.kind == EVENT_NO_CANDIDATE,
                    )
                    .order_by(BookingEvent.id.desc())
                    .limit(1)
                )
                repeated = latest == detail

            if still_pending and not repeated:
                res = await session.execute(
                    update(Booking)
                    .where(
                        Booking.booking_id == booking_id,
                        Booking.status == BookingStatus.PENDING.value,
                    )
                    .values(dispatch_note=f"{message} at {now.isoformat()}", updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                still_pending = res.rowcount == 1
                if still_pending:
                    session.add(
                        BookingEvent(
                            booking_id=booking_id,
                            kind=EVENT_NO_CANDIDATE,
                            detail=detail,
                            created_at=now,
                        )
                    )

        if not still_pending:
            logger.info("Booking %s was claimed by a concurrent dispatch", booking_id)
            return DispatchResult(
                outcome=DispatchOutcome.ALREADY_ASSIGNED,
                booking_id=booking_id,
                message="Booking is no longer pending",
                candidates_tried=tried,
            )

        result = DispatchResult(
            outcome=DispatchOutcome.UNASSIGNED,
            booking_id=booking_id,
            message=message,
            candidates_tried=tried,
        )
        if repeated:
            logger.debug("Booking %s still has no candidate", booking_id)
            return result

        logger.warning("Booking %s left pending: %s", booking_id, message)
        if self.notifier:
            await notify(self.notifier, booking_id, BOOKING_UNASSIGNED, {"reason": message})
        return result
