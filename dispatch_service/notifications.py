import logging
from datetime import datetime
from typing import Protocol

from shared.events import build_event
from shared.rabbitmq import RabbitPublisher

from .config import RABBIT_URL

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_ASSIGNED = "booking.assigned"
BOOKING_UNASSIGNED = "booking.unassigned"
BOOKING_ACCEPTED = "booking.accepted"
BOOKING_REJECTED = "booking.rejected"
BOOKING_IN_PROGRESS = "booking.in_progress"
BOOKING_COMPLETED = "booking.completed"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_SETTLEMENT_FAILED = "booking.settlement_failed"


class NotificationPort(Protocol):
    """Outbound port observed by chat, call and push-notification subsystems."""

    async def publish(self, booking_id: str, event: dict) -> None: ...


class BookingEventPublisher:
    """Publishes booking events on the domain_events topic exchange."""

    def __init__(self, publisher: RabbitPublisher):
        self.publisher = publisher

    async def publish(self, booking_id: str, event: dict) -> None:
        await self.publisher.publish_event(event)


async def notify(
    port: NotificationPort,
    booking_id: str,
    event_type: str,
    data: dict,
    occurred_at: datetime | None = None,
):
    event = build_event(event_type, {"booking_id": booking_id, **data}, occurred_at=occurred_at)
    try:
        await port.publish(booking_id, event)
    except Exception:
        # observers must never break a committed transition
        logger.exception("Failed to publish %s for booking %s", event_type, booking_id)


publisher = RabbitPublisher(RABBIT_URL)
booking_events = BookingEventPublisher(publisher)
