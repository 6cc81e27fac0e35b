"""
Failure Router — Retry / Dead-Letter State Machine
==================================================
Every delivery ends in exactly one terminal state:

  RECEIVED → GUARDED ─┬─ SKIPPED        (order already processed: ack)
                      └─ EXECUTING ─┬─ ACKED          (success: mark, then ack)
                                    ├─ REQUEUED(n+1)  (failure, n < max_retry)
                                    ├─ DEAD_LETTERED  (failure, n >= max_retry)
                                    └─ RETURNED       (cancelled: nack requeue)

Ordering rules:
  ACKED      mark-before-ack. A crash between the two causes a redelivery that
             the idempotency store absorbs as SKIPPED. The reverse order could
             lose the mark and run the order twice.
  REQUEUED   publish-then-ack. RabbitMQ has no per-message counter, so the
             retry count rides in the x-retry header of a fresh copy. A crash
             between publish and ack leaves two copies in flight; the store
             absorbs the business effect, but the duplicate still burns a
             retry slot.
  DEAD_LETTERED  reject(requeue=False). The queue's x-dead-letter-* arguments
             route the message to the DLQ; the worker never publishes to the
             DLQ itself.
"""
from __future__ import annotations

from enum import Enum

from shared.config import MAX_RETRY
from shared.idempotency import IdempotencyKey, ProcessedMessageStore
from shared.logger import get_logger

from .delivery import Delivery, retry_headers
from .processor import Cancelled, Failure, Outcome, Success
from .transport import MessageChannel

logger = get_logger(__name__)


class DeliveryState(str, Enum):
    RECEIVED = "RECEIVED"
    GUARDED = "GUARDED"
    SKIPPED = "SKIPPED"
    EXECUTING = "EXECUTING"
    ACKED = "ACKED"
    REQUEUED = "REQUEUED"
    DEAD_LETTERED = "DEAD_LETTERED"
    RETURNED = "RETURNED"


def route(retry_count: int, outcome: Outcome, max_retry: int = MAX_RETRY) -> DeliveryState:
    """Pure decision: which terminal state an execution outcome leads to."""
    match outcome:
        case Success():
            return DeliveryState.ACKED
        case Cancelled():
            return DeliveryState.RETURNED
        case Failure():
            if retry_count < max_retry:
                return DeliveryState.REQUEUED
            return DeliveryState.DEAD_LETTERED
    raise TypeError(f"Unknown outcome: {outcome!r}")


class FailureRouter:
    """Carries out route()'s decision against the channel."""

    def __init__(
        self,
        channel: MessageChannel,
        store: ProcessedMessageStore,
        queue_name: str = "orders",
        max_retry: int = MAX_RETRY,
    ):
        self._channel = channel
        self._store = store
        self.queue_name = queue_name
        self.max_retry = max_retry

    async def finalize(self, delivery: Delivery, outcome: Outcome) -> DeliveryState:
        state = route(delivery.retry_count, outcome, self.max_retry)

        if state is DeliveryState.ACKED:
            self._store.mark_processed(IdempotencyKey.from_order_id(delivery.event.order_id))
            await self._channel.ack(delivery.delivery_tag)
            logger.info("Order processed", extra=delivery.log_fields)

        elif state is DeliveryState.REQUEUED:
            next_count = delivery.retry_count + 1
            await self._channel.publish(self.queue_name, delivery.raw_body, retry_headers(next_count))
            await self._channel.ack(delivery.delivery_tag)
            logger.warning(
                "Requeued for retry %d/%d: %s", next_count, self.max_retry, outcome.reason,
                extra=delivery.log_fields,
            )

        elif state is DeliveryState.DEAD_LETTERED:
            await self._channel.reject(delivery.delivery_tag, requeue=False)
            logger.error(
                "Retries exhausted, moved to DLQ: %s", outcome.reason,
                extra=delivery.log_fields,
            )

        elif state is DeliveryState.RETURNED:
            await self._channel.nack(delivery.delivery_tag, requeue=True)
            logger.info("Returned to queue on shutdown", extra=delivery.log_fields)

        return state

    async def skip(self, delivery: Delivery) -> DeliveryState:
        await self._channel.ack(delivery.delivery_tag)
        logger.info("Order already processed, skipping", extra=delivery.log_fields)
        return DeliveryState.SKIPPED

    async def return_to_queue(self, delivery_tag) -> DeliveryState:
        """Cancellation drain: hand an unexamined message back, untouched."""
        await self._channel.nack(delivery_tag, requeue=True)
        logger.info("Shutdown in progress, message returned to queue", extra={"delivery_tag": delivery_tag})
        return DeliveryState.RETURNED
