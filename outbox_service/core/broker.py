import logging
from typing import Optional
import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractExchange, AbstractRobustConnection, AbstractRobustChannel

from outbox_service.core.config import settings

logger = logging.getLogger(__name__)


class RabbitMQBroker:
    """aio-pika transport used by the dispatcher to deliver outbox messages.

    Messages go to a durable topic exchange, routed by their message type.
    Publisher confirms are enabled on the channel, so ``publish`` only returns
    once the broker has accepted the message.
    """

    def __init__(self, url: str, exchange_name: str, prefetch_count: int = 10) -> None:
        self.url = url
        self.exchange_name = exchange_name
        self.prefetch_count = prefetch_count
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractRobustChannel] = None
        self.exchange: Optional[AbstractExchange] = None

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    async def connect(self) -> None:
        self.connection = await aio_pika.connect_robust(self.url)
        self.channel = await self.connection.channel(publisher_confirms=True)
        await self.channel.set_qos(prefetch_count=self.prefetch_count)

        self.exchange = await self.channel.declare_exchange(
            self.exchange_name,
            ExchangeType.TOPIC,
            durable=True
        )

        logger.info("Connected to RabbitMQ", extra={"exchange": self.exchange_name})

    async def close(self) -> None:
        if self.channel:
            await self.channel.close()
        if self.connection:
            await self.connection.close()
        self.exchange = None
        logger.info("Disconnected from RabbitMQ")

    async def publish(
        self,
        routing_key: str,
        body: bytes,
        *,
        message_id: str,
        headers: dict[str, str],
    ) -> None:
        if self.exchange is None:
            raise RuntimeError("Channel is not initialized")

        await self.exchange.publish(
            aio_pika.Message(
                body=body,
                message_id=message_id,
                headers=headers,
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT
            ),
            routing_key=routing_key
        )
        logger.debug("Published message", extra={"routing_key": routing_key, "message_id": message_id})


broker = RabbitMQBroker(
    settings.rabbitmq_url,
    settings.rabbitmq_exchange,
    prefetch_count=settings.rabbitmq_prefetch_count,
)
