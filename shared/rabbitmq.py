import logging

from .events import to_json
import aio_pika

EXCHANGE_NAME = "domain_events"

logger = logging.getLogger(__name__)


async def connect(rabbit_url: str | None):
    if not rabbit_url:
        return None
    return await aio_pika.connect_robust(rabbit_url)


class RabbitPublisher:
    """
    Topic-exchange publisher shared by the services.
    Disabled (every publish is a no-op) when no broker URL is configured.
    """

    def __init__(self, rabbit_url: str | None, exchange_name: str = EXCHANGE_NAME):
        self.rabbit_url = rabbit_url
        self.exchange_name = exchange_name
        self.enabled = bool(rabbit_url)
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection = await aio_pika.connect_robust(self.rabbit_url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                self.exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception:
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str):
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception as e:
            logger.warning("RabbitMQ connect failed, dropping %s: %s", routing_key, e)
            return

        if not self._exchange:
            return

        try:
            msg = aio_pika.Message(
                body=message_body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self._exchange.publish(msg, routing_key=routing_key)
        except Exception as e:
            logger.warning("RabbitMQ publish failed for %s: %s", routing_key, e)

    async def publish_event(self, event: dict):
        """Publish an envelope from shared.events, routed by its event_type."""
        await self.publish(event["event_type"], to_json(event))

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None
