"""
Order Processor
===============
Applies domain logic to one OrderCreatedEvent and reports how it went.
Results are values, not exceptions: the router matches on
Success / Failure / Cancelled instead of catching.

The domain logic is a placeholder (a timed wait standing in for real work),
with one deterministic failure: amount == 1000 always fails. That gives tests
and demos a reproducible retry → DLQ path without fault injection.

The wait is cancellable. When shutdown is signalled mid-work the processor
returns Cancelled rather than finishing, and the order is NOT marked processed.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, Union

from shared.events import OrderCreatedEvent
from shared.logger import get_logger

logger = get_logger(__name__)

FAILURE_TRIGGER_AMOUNT = Decimal("1000")


@dataclass(frozen=True)
class Success:
    pass


@dataclass(frozen=True)
class Failure:
    reason: str


@dataclass(frozen=True)
class Cancelled:
    pass


Outcome = Union[Success, Failure, Cancelled]


class Processor(Protocol):
    async def process(self, event: OrderCreatedEvent, cancel: asyncio.Event) -> Outcome: ...


async def wait_cancellable(seconds: float, cancel: asyncio.Event) -> bool:
    """Sleep up to `seconds`. Returns True if `cancel` fired first."""
    if cancel.is_set():
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


class OrderProcessor:
    def __init__(self, work_seconds: float = 1.0):
        self.work_seconds = work_seconds

    async def process(self, event: OrderCreatedEvent, cancel: asyncio.Event) -> Outcome:
        logger.info("Order received", extra={"order_id": str(event.order_id), "amount": str(event.amount)})

        if cancel.is_set():
            return Cancelled()

        if event.amount == FAILURE_TRIGGER_AMOUNT:
            return Failure("Simulated processing failure")

        if await wait_cancellable(self.work_seconds, cancel):
            logger.info("Processing interrupted by shutdown", extra={"order_id": str(event.order_id)})
            return Cancelled()

        return Success()
