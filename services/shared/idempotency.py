"""
Idempotency — Exactly-Once Effects on an At-Least-Once Queue
============================================================
RabbitMQ redelivers whatever was not acknowledged: a worker crash, a lost
channel, or a retry republish that raced its own ack all produce duplicates.
The worker compensates at the consumer by remembering which order ids have
completed and skipping them on sight.

Lifecycle of a key:
  - absent     → the order has never completed; it may be executed
  - claimed    → one handler holds the per-key lock; duplicates wait behind it
  - processed  → marked after a successful execution; never removed except by
                 reset() (test harnesses only)

A failed or cancelled execution simply releases the claim without marking,
so the next delivery of the same order is free to try again.

Why a per-key lock and not just the set?
  With prefetch > 1 two copies of the same order can be in flight at once.
  A bare "is_processed → execute → mark" sequence lets both copies see
  "not processed" across the await in the middle. Holding the key's lock over
  the whole check-execute-mark section makes the second copy observe the
  first copy's mark. Different keys never contend.
"""
from __future__ import annotations

import asyncio
import threading
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable

from shared.logger import get_logger

logger = get_logger(__name__)


class ProcessedMessageStore:
    """In-process record of completed order ids. Owned by the worker, injected into the dispatcher."""

    def __init__(self) -> None:
        self._processed: set[Hashable] = set()
        self._mutex = threading.Lock()
        self._key_locks: dict[Hashable, asyncio.Lock] = {}
        self._claims: dict[Hashable, int] = {}

    def is_processed(self, key: Hashable) -> bool:
        with self._mutex:
            return key in self._processed

    def mark_processed(self, key: Hashable) -> bool:
        """Record key as completed. Returns False if it was already marked (no-op)."""
        with self._mutex:
            if key in self._processed:
                return False
            self._processed.add(key)
            return True

    def reset(self) -> None:
        """Forget every processed key. Test/ops tool, never called on the consume path."""
        with self._mutex:
            cleared = len(self._processed)
            self._processed.clear()
        logger.warning("Idempotency store reset", extra={"cleared_keys": cleared})

    def __len__(self) -> int:
        with self._mutex:
            return len(self._processed)

    @asynccontextmanager
    async def claim(self, key: Hashable) -> AsyncIterator[None]:
        """
        Hold the per-key lock for the duration of the block.

        Usage:
            async with store.claim(event.order_id):
                if store.is_processed(event.order_id):
                    return
                ...execute...
                store.mark_processed(event.order_id)
        """
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        self._claims[key] = self._claims.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._claims[key] -= 1
            if not self._claims[key]:
                del self._claims[key]
                del self._key_locks[key]


class IdempotencyKey:
    """Helpers for constructing consistent idempotency keys."""

    @staticmethod
    def from_order_id(order_id: uuid.UUID | str) -> uuid.UUID:
        """
        Normalize to uuid.UUID so "3F0C..." and "3f0c..." are the same key.
        Never key on the message body or delivery tag: a retry republish
        changes the tag and the headers but not the order.
        """
        if isinstance(order_id, uuid.UUID):
            return order_id
        return uuid.UUID(order_id)
