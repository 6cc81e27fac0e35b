"""
Queue topology: the orders queue and its dead-letter queue.

    orders      durable, x-dead-letter-exchange=""  x-dead-letter-routing-key="orders.dlq"
    orders.dlq  durable, no arguments

Declaring is idempotent when the arguments match, so this runs on every
startup. When they don't match (someone created "orders" without DLX args),
RabbitMQ answers PRECONDITION_FAILED and we refuse to start: consuming from a
queue whose rejects are silently dropped would turn DEAD_LETTERED into "lost".
"""
from __future__ import annotations

import asyncio

from aio_pika.abc import AbstractChannel, AbstractQueue
from aio_pika.exceptions import AMQPError

from shared.logger import get_logger

logger = get_logger(__name__)


class TopologyError(Exception):
    """Queue declaration failed. Fatal at startup."""


class QueueBinder:
    def __init__(self, channel: AbstractChannel, queue_name: str = "orders", dlq_name: str = "orders.dlq"):
        self._channel = channel
        self.queue_name = queue_name
        self.dlq_name = dlq_name

    @property
    def queue_arguments(self) -> dict[str, str]:
        # default exchange + routing key == DLQ name delivers straight into the DLQ
        return {
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": self.dlq_name,
        }

    async def ensure_topology(self) -> AbstractQueue:
        """Declare both queues; returns the main queue for consuming."""
        try:
            queue = await self._channel.declare_queue(
                self.queue_name,
                durable=True,
                exclusive=False,
                auto_delete=False,
                arguments=self.queue_arguments,
            )
            await self._channel.declare_queue(
                self.dlq_name,
                durable=True,
                exclusive=False,
                auto_delete=False,
            )
        except (AMQPError, ConnectionError, asyncio.TimeoutError) as exc:
            logger.critical(
                "Queue topology declaration failed",
                extra={"queue": self.queue_name, "dlq": self.dlq_name, "error": str(exc)},
            )
            raise TopologyError(
                f"Could not declare {self.queue_name!r} / {self.dlq_name!r}: {exc}"
            ) from exc

        logger.info(
            "Queue topology ready",
            extra={"queue": self.queue_name, "dlq": self.dlq_name, "arguments": self.queue_arguments},
        )
        return queue
