import logging

import aio_pika
from aio_pika import ExchangeType

from shared.events import from_json
from shared.idempotency import claim_event, release_event
from shared.rabbitmq import EXCHANGE_NAME, connect
from shared.redis import create_client

from .config import REDIS_URL
from .errors import DispatchError, ValidationFailed
from .service import DispatchService, get_service

logger = logging.getLogger(__name__)

QUEUE_NAME = "dispatch_service_domain_events"

WITHDRAWAL_CONFIRMED = "withdrawal.confirmed"
WITHDRAWAL_FAILED = "withdrawal.failed"
REDISPATCH_REQUESTED = "booking.redispatch_requested"

ROUTING_KEYS = [WITHDRAWAL_CONFIRMED, WITHDRAWAL_FAILED, REDISPATCH_REQUESTED]

redis_client = create_client(REDIS_URL)


def _required(data: dict, field: str) -> str:
    value = data.get(field)
    if not value:
        raise ValidationFailed(f"event data is missing {field}")
    return value


async def _apply(event_type: str, data: dict, service: DispatchService):
    if event_type == WITHDRAWAL_CONFIRMED:
        await service.confirm_withdrawal(
            _required(data, "transaction_id"), True, reference=data.get("reference")
        )
        return

    if event_type == WITHDRAWAL_FAILED:
        await service.confirm_withdrawal(
            _required(data, "transaction_id"),
            False,
            reference=data.get("reference"),
            failure_reason=data.get("reason"),
        )
        return

    if event_type == REDISPATCH_REQUESTED:
        result = await service.dispatch(_required(data, "booking_id"))
        logger.info("Re-dispatch of %s: %s", result.booking_id, result.outcome.value)


async def process_event(payload: dict, service: DispatchService, client=None) -> bool:
    """
    Apply one decoded envelope. Returns False when the event is ignored
    (unknown type or already processed).
    """
    event_id = payload.get("event_id")
    event_type = payload.get("event_type")
    data = payload.get("data") or {}

    if not event_id or event_type not in ROUTING_KEYS:
        return False

    if client is None:
        client = redis_client

    # idempotent handling
    if not await claim_event(event_id, client):
        logger.info("Event %s already processed", event_id)
        return False

    try:
        await _apply(event_type, data, service)
    except DispatchError as e:
        # permanent: replaying the same event cannot succeed
        logger.warning("Event %s (%s) rejected: %s", event_id, event_type, e.message)
    except Exception:
        await release_event(event_id, client)
        raise
    return True


async def handle_message(message: aio_pika.IncomingMessage):
    async with message.process(requeue=False):
        payload = from_json(message.body)
        if payload is None:
            logger.warning("Dropping malformed message on %s", message.routing_key)
            return
        await process_event(payload, get_service())


async def start_consumer(rabbit_url: str):
    conn = await connect(rabbit_url)
    channel = await conn.channel()
    await channel.set_qos(prefetch_count=50)

    exchange = await channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)
    queue = await channel.declare_queue(QUEUE_NAME, durable=True)

    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(handle_message)
    logger.info("Domain event consumer started on %s", QUEUE_NAME)
    return conn
