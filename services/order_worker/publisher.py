"""Producer side: put OrderCreatedEvents on the orders queue."""
from __future__ import annotations

import aio_pika
from aio_pika import DeliveryMode
from aio_pika.abc import AbstractChannel

from shared.events import EventType, OrderCreatedEvent
from shared.logger import get_logger

logger = get_logger(__name__)


class OrderPublisher:
    def __init__(self, channel: AbstractChannel, queue_name: str = "orders"):
        self._channel = channel
        self.queue_name = queue_name

    async def publish(self, event: OrderCreatedEvent) -> None:
        # Default exchange: routing key is the queue name. No x-retry header on a first delivery.
        await self._channel.default_exchange.publish(
            aio_pika.Message(
                body=event.to_message_body(),
                content_type="application/json",
                delivery_mode=DeliveryMode.PERSISTENT,
                message_id=str(event.order_id),
                type=EventType.ORDER_CREATED.value,
            ),
            routing_key=self.queue_name,
        )
        logger.info("Order event published", extra={"order_id": str(event.order_id), "queue": self.queue_name})
