"""
Order Worker Event Schemas
==========================
The contract between the order API (producer) and the worker (consumer).
Both sides serialize through the same Pydantic model, so a field rename on one
side fails validation on the other instead of silently dropping data.

Wire format is a flat JSON record with camelCase names:

    {"orderId": "<uuid>", "amount": 1000, "createdAtUtc": "2024-01-01T00:00:00Z"}

Events are immutable facts. The model is frozen: once decoded from a message
body it is never mutated, only acknowledged, retried or dead-lettered.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer


class EventType(str, Enum):
    ORDER_CREATED = "orders.order.created"


class EventDecodeError(ValueError):
    """Raised when a message body is not a valid OrderCreatedEvent."""


class OrderCreatedEvent(BaseModel):
    """
    order_id is the idempotency key: one business order, one id, forever.
    A redelivered message carries the same order_id as the original.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    order_id: uuid.UUID = Field(alias="orderId")
    # At most 15 significant digits, so the JSON-number form below is exact.
    amount: Decimal = Field(max_digits=15)
    created_at_utc: datetime = Field(alias="createdAtUtc")

    @classmethod
    def new(cls, amount: Decimal | int | str) -> OrderCreatedEvent:
        """Build an event for a freshly created order (new id, current UTC time)."""
        return cls(
            order_id=uuid.uuid4(),
            amount=Decimal(str(amount)),
            created_at_utc=datetime.now(timezone.utc),
        )

    @field_serializer("amount", when_used="json")
    def _amount_as_number(self, amount: Decimal) -> int | float:
        # JSON number, not the quoted string pydantic emits for Decimal by default
        if amount % 1 == 0:
            return int(amount)
        return float(amount)

    def to_message_body(self) -> bytes:
        """Serialize for publishing: UTF-8 JSON with wire (camelCase) names."""
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_message_body(cls, body: bytes) -> OrderCreatedEvent:
        try:
            return cls.model_validate_json(body)
        except ValidationError as exc:
            raise EventDecodeError(
                f"Invalid OrderCreatedEvent body ({exc.error_count()} error(s)): {exc.errors()[0]['msg']}"
            ) from exc
