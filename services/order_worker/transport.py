"""
RabbitMQ transport adapter (aio-pika).

The dispatcher never touches aio-pika objects directly. It talks to a
MessageChannel: receive the next message, then ack / nack / reject it by
delivery tag, or publish a new one. RabbitMQTransport implements that on top of
a consumer subscription; tests substitute an in-memory broker.

aio-pika pushes messages into a callback. The callback only parks the message
in an asyncio.Queue; the dispatcher pulls from that queue in an explicit loop,
so nothing is processed from inside the callback after shutdown has begun.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

import aio_pika
from aio_pika import DeliveryMode
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from shared.logger import get_logger

logger = get_logger(__name__)


class TransportError(Exception):
    """Raised when acting on a delivery the transport does not know about."""


@dataclass(frozen=True)
class InboundMessage:
    body: bytes
    delivery_tag: Any
    headers: dict[str, Any] = field(default_factory=dict)


class MessageChannel(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def receive(self) -> InboundMessage: ...

    def receive_nowait(self) -> InboundMessage | None: ...

    async def ack(self, delivery_tag: Any) -> None: ...

    async def nack(self, delivery_tag: Any, requeue: bool = True) -> None: ...

    async def reject(self, delivery_tag: Any, requeue: bool = False) -> None: ...

    async def publish(self, routing_key: str, body: bytes, headers: dict[str, Any] | None = None) -> None: ...


class RabbitMQTransport:
    """
    Manual-ack consumer on one queue plus default-exchange publishing.

    Parameters
    ----------
    channel: open aio-pika channel (QoS prefetch already applied)
    queue:   the declared queue to consume from (see QueueBinder)
    """

    def __init__(self, channel: AbstractChannel, queue: AbstractQueue):
        self._channel = channel
        self._queue = queue
        self._inbox: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._unsettled: dict[Any, AbstractIncomingMessage] = {}
        self._consumer_tag: str | None = None

    async def start(self) -> None:
        # no_ack=False: a crash mid-processing leaves the message redeliverable
        self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
        logger.info("Consumer subscribed", extra={"queue": self._queue.name, "consumer_tag": self._consumer_tag})

    async def stop(self) -> None:
        if self._consumer_tag is None:
            return
        await self._queue.cancel(self._consumer_tag)
        logger.info("Consumer cancelled", extra={"queue": self._queue.name, "consumer_tag": self._consumer_tag})
        self._consumer_tag = None

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        self._unsettled[message.delivery_tag] = message
        await self._inbox.put(InboundMessage(
            body=message.body,
            delivery_tag=message.delivery_tag,
            headers=dict(message.headers or {}),
        ))

    async def receive(self) -> InboundMessage:
        return await self._inbox.get()

    def receive_nowait(self) -> InboundMessage | None:
        try:
            return self._inbox.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def _settle(self, delivery_tag: Any) -> AbstractIncomingMessage:
        try:
            return self._unsettled.pop(delivery_tag)
        except KeyError:
            raise TransportError(f"Unknown or already settled delivery tag {delivery_tag!r}") from None

    async def ack(self, delivery_tag: Any) -> None:
        await self._settle(delivery_tag).ack()

    async def nack(self, delivery_tag: Any, requeue: bool = True) -> None:
        await self._settle(delivery_tag).nack(requeue=requeue)

    async def reject(self, delivery_tag: Any, requeue: bool = False) -> None:
        await self._settle(delivery_tag).reject(requeue=requeue)

    async def publish(self, routing_key: str, body: bytes, headers: dict[str, Any] | None = None) -> None:
        await self._channel.default_exchange.publish(
            aio_pika.Message(
                body=body,
                headers=headers or {},
                content_type="application/json",
                delivery_mode=DeliveryMode.PERSISTENT,
            ),
            routing_key=routing_key,
        )
