"""
Unit tests for the retry / dead-letter decision and how it is carried out.
"""
import pytest

import sys
sys.path.insert(0, "services")

from order_worker.delivery import Delivery, read_retry_count, retry_headers
from order_worker.processor import Cancelled, Failure, Success
from order_worker.router import DeliveryState, FailureRouter, route
from shared.events import OrderCreatedEvent


# ---------------------------------------------------------------------------
# route(): pure decision
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("retry_count", [0, 1, 2, 3, 7])
def test_success_always_acks(retry_count):
    assert route(retry_count, Success()) is DeliveryState.ACKED


@pytest.mark.parametrize("retry_count", [0, 1, 2])
def test_failure_below_ceiling_requeues(retry_count):
    assert route(retry_count, Failure("boom")) is DeliveryState.REQUEUED


@pytest.mark.parametrize("retry_count", [3, 4])
def test_failure_at_or_above_ceiling_dead_letters(retry_count):
    assert route(retry_count, Failure("boom")) is DeliveryState.DEAD_LETTERED


def test_cancelled_returns_to_queue():
    assert route(0, Cancelled()) is DeliveryState.RETURNED


def test_ceiling_is_configurable():
    assert route(1, Failure("boom"), max_retry=1) is DeliveryState.DEAD_LETTERED
    assert route(0, Failure("boom"), max_retry=0) is DeliveryState.DEAD_LETTERED


def test_unknown_outcome_is_rejected():
    with pytest.raises(TypeError):
        route(0, "success")


# ---------------------------------------------------------------------------
# Retry header codec
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("headers, expected", [
    (None, 0),
    ({}, 0),
    ({"x-retry": b"2"}, 2),
    ({"x-retry": "3"}, 3),
    ({"x-retry": 1}, 1),
    ({"x-retry": b"garbage"}, 0),
    ({"x-retry": b"-4"}, 0),
])
def test_read_retry_count(headers, expected):
    assert read_retry_count(headers) == expected


def test_retry_headers_encode_utf8_decimal_string():
    assert retry_headers(2) == {"x-retry": b"2"}


# ---------------------------------------------------------------------------
# FailureRouter: transport actions and their order
# ---------------------------------------------------------------------------

def _delivery(broker, retry_count=0, amount=100):
    event = OrderCreatedEvent.new(amount)
    body = event.to_message_body()
    tag = broker.deliver(body, retry_headers(retry_count) if retry_count else None)
    broker.receive_nowait()  # dispatcher would have pulled it
    return Delivery(raw_body=body, delivery_tag=tag, retry_count=retry_count, event=event)


@pytest.mark.asyncio
async def test_success_marks_before_ack(broker, store):
    """The key is already marked at the moment ack is issued."""
    router = FailureRouter(broker, store)
    delivery = _delivery(broker)
    seen_at_ack = []

    original_ack = broker.ack

    async def spying_ack(tag):
        seen_at_ack.append(store.is_processed(delivery.event.order_id))
        await original_ack(tag)

    broker.ack = spying_ack

    state = await router.finalize(delivery, Success())

    assert state is DeliveryState.ACKED
    assert seen_at_ack == [True]


@pytest.mark.asyncio
async def test_requeue_publishes_incremented_copy_then_acks(broker, store):
    router = FailureRouter(broker, store)
    delivery = _delivery(broker, retry_count=1)

    state = await router.finalize(delivery, Failure("boom"))

    assert state is DeliveryState.REQUEUED
    assert broker.calls == [
        ("publish", "orders", {"x-retry": b"2"}),
        ("ack", delivery.delivery_tag),
    ]
    assert broker.published[0][1] == delivery.raw_body
    assert store.is_processed(delivery.event.order_id) is False


@pytest.mark.asyncio
async def test_exhausted_failure_rejects_without_requeue(broker, store):
    router = FailureRouter(broker, store)
    delivery = _delivery(broker, retry_count=3)

    state = await router.finalize(delivery, Failure("boom"))

    assert state is DeliveryState.DEAD_LETTERED
    assert broker.calls == [("reject", delivery.delivery_tag, False)]
    assert broker.published == []
    assert len(broker.dead_letters) == 1


@pytest.mark.asyncio
async def test_cancelled_nacks_with_requeue_and_leaves_key_unmarked(broker, store):
    router = FailureRouter(broker, store)
    delivery = _delivery(broker, retry_count=2)

    state = await router.finalize(delivery, Cancelled())

    assert state is DeliveryState.RETURNED
    assert broker.calls == [("nack", delivery.delivery_tag, True)]
    assert store.is_processed(delivery.event.order_id) is False


@pytest.mark.asyncio
async def test_skip_acks_without_touching_retry_count(broker, store):
    router = FailureRouter(broker, store)
    delivery = _delivery(broker, retry_count=2)

    state = await router.skip(delivery)

    assert state is DeliveryState.SKIPPED
    assert broker.calls == [("ack", delivery.delivery_tag)]
    assert broker.published == []
