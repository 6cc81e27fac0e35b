"""
Delivery Dispatcher — the consume loop
======================================
One explicit receive loop per worker:

  while not cancelled:
      message = next message, or None if cancel fires while idle
      spawn handle(message) as a task (at most prefetch_count in flight)

handle() checks cancellation first (nack-requeue, no processing), decodes,
takes the order's idempotency claim, executes, and lets the router settle the
delivery. Every message handed to handle() leaves it acked, nacked or
rejected; errors are logged per message and never stop the loop.

Shutdown (cancel.set()):
  1. the idle wait unwinds, the loop stops pulling
  2. the consumer subscription is cancelled so the broker stops pushing
  3. in-flight handlers finish; processors see the same cancel signal and
     return Cancelled, which the router maps to nack-requeue
  4. messages buffered but never handled are nacked back to the queue
"""
from __future__ import annotations

import asyncio
from collections import Counter

from shared.idempotency import IdempotencyKey, ProcessedMessageStore
from shared.logger import get_logger

from .delivery import Delivery
from .processor import Failure, Outcome, Processor
from .router import DeliveryState, FailureRouter
from .transport import InboundMessage, MessageChannel

logger = get_logger(__name__)


class DeliveryDispatcher:
    def __init__(
        self,
        channel: MessageChannel,
        store: ProcessedMessageStore,
        processor: Processor,
        router: FailureRouter,
        prefetch_count: int = 10,
    ):
        self._channel = channel
        self._store = store
        self._processor = processor
        self._router = router
        self._slots = asyncio.Semaphore(prefetch_count)
        self._in_flight: set[asyncio.Task] = set()
        self.outcomes: Counter[DeliveryState] = Counter()

    async def run(self, cancel: asyncio.Event) -> None:
        await self._channel.start()
        logger.info("Worker started, waiting for messages", extra={"queue": self._router.queue_name})
        try:
            while not cancel.is_set():
                message = await self._next_message(cancel)
                if message is None:
                    break
                await self._slots.acquire()
                task = asyncio.create_task(self.handle(message, cancel))
                self._in_flight.add(task)
                task.add_done_callback(self._on_task_done)
        finally:
            await self._shutdown()

    async def _next_message(self, cancel: asyncio.Event) -> InboundMessage | None:
        receive = asyncio.ensure_future(self._channel.receive())
        stop = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({receive, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not receive.done():
                receive.cancel()
        return receive.result() if receive in done else None

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._slots.release()

    async def _shutdown(self) -> None:
        try:
            await self._channel.stop()
        except Exception:
            logger.exception("Failed to cancel the consumer subscription")
        if self._in_flight:
            logger.info("Waiting for in-flight deliveries", extra={"in_flight": len(self._in_flight)})
            await asyncio.gather(*self._in_flight)
        while (message := self._channel.receive_nowait()) is not None:
            try:
                self.outcomes[await self._router.return_to_queue(message.delivery_tag)] += 1
            except Exception:
                logger.exception("Failed to return buffered delivery", extra={"delivery_tag": message.delivery_tag})
        logger.info(
            "Worker is shutting down gracefully",
            extra={"outcomes": {state.value: n for state, n in self.outcomes.items()}},
        )

    async def handle(self, message: InboundMessage, cancel: asyncio.Event) -> DeliveryState | None:
        """Drive one message to a terminal state. Returns None if settling it failed."""
        try:
            state = await self._handle(message, cancel)
        except Exception:
            # ack/nack/publish failed (channel closed?). The broker redelivers
            # anything left unacknowledged once the channel goes away.
            logger.exception("Failed to settle delivery", extra={"delivery_tag": message.delivery_tag})
            return None
        self.outcomes[state] += 1
        return state

    async def _handle(self, message: InboundMessage, cancel: asyncio.Event) -> DeliveryState:
        if cancel.is_set():
            return await self._router.return_to_queue(message.delivery_tag)

        delivery = Delivery.from_message(message)
        if delivery.event is None:
            # Malformed bodies take the ordinary failure path: retried, then dead-lettered.
            logger.warning("Could not decode message body: %s", delivery.decode_error, extra=delivery.log_fields)
            return await self._router.finalize(delivery, Failure(delivery.decode_error))

        key = IdempotencyKey.from_order_id(delivery.event.order_id)
        async with self._store.claim(key):
            if self._store.is_processed(key):
                return await self._router.skip(delivery)
            outcome = await self._execute(delivery, cancel)
            return await self._router.finalize(delivery, outcome)

    async def _execute(self, delivery: Delivery, cancel: asyncio.Event) -> Outcome:
        try:
            return await self._processor.process(delivery.event, cancel)
        except Exception as exc:
            logger.exception("Processor raised", extra=delivery.log_fields)
            return Failure(f"{type(exc).__name__}: {exc}")
