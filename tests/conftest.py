"""
Pytest configuration and shared fixtures.
Unit tests use InMemoryBroker (a RabbitMQ stand-in, in-process).
Integration tests use a real RabbitMQ (Docker) and are skipped unless USE_RABBITMQ=true.
"""
import asyncio
import itertools
import sys

import pytest

sys.path.insert(0, "services")

from order_worker.transport import InboundMessage, TransportError  # noqa: E402
from shared.idempotency import ProcessedMessageStore  # noqa: E402


class InMemoryBroker:
    """
    Implements the MessageChannel the dispatcher consumes from, for one queue
    plus its DLQ. Behaves like RabbitMQ for the calls the worker makes:
      - publish to the main queue → delivered again with a fresh delivery tag
      - reject(requeue=False)     → dead-lettered into the DLQ
      - nack(requeue=True)        → back in the queue, not redelivered to us
    Every call is recorded so tests can assert the exact protocol.
    """

    def __init__(self, queue_name="orders", dlq_name="orders.dlq"):
        self.queue_name = queue_name
        self.dlq_name = dlq_name
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._tags = itertools.count(1)
        self.unsettled: dict = {}
        self.consuming = False
        self.acked: list = []
        self.requeued: list = []
        self.dead_letters: list = []
        self.published: list = []
        self.calls: list = []
        self.dead_lettered = asyncio.Event()

    def deliver(self, body: bytes, headers=None) -> int:
        tag = next(self._tags)
        message = InboundMessage(body=body, delivery_tag=tag, headers=dict(headers or {}))
        self.unsettled[tag] = message
        self._inbox.put_nowait(message)
        return tag

    def _settle(self, tag):
        try:
            return self.unsettled.pop(tag)
        except KeyError:
            raise TransportError(f"Unknown or already settled delivery tag {tag!r}") from None

    async def start(self):
        self.consuming = True

    async def stop(self):
        self.consuming = False

    async def receive(self):
        return await self._inbox.get()

    def receive_nowait(self):
        try:
            return self._inbox.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def ack(self, delivery_tag):
        self.calls.append(("ack", delivery_tag))
        self.acked.append(self._settle(delivery_tag))

    async def nack(self, delivery_tag, requeue=True):
        self.calls.append(("nack", delivery_tag, requeue))
        message = self._settle(delivery_tag)
        if requeue:
            self.requeued.append(message)

    async def reject(self, delivery_tag, requeue=False):
        self.calls.append(("reject", delivery_tag, requeue))
        message = self._settle(delivery_tag)
        if not requeue:
            self.dead_letters.append(message)
            self.dead_lettered.set()

    async def publish(self, routing_key, body, headers=None):
        self.calls.append(("publish", routing_key, dict(headers or {})))
        self.published.append((routing_key, body, dict(headers or {})))
        if routing_key == self.queue_name:
            self.deliver(body, headers)


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def store():
    store = ProcessedMessageStore()
    yield store
    store.reset()


@pytest.fixture
def cancel():
    return asyncio.Event()
