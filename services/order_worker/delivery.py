"""
Delivery — one received message on its way to a final outcome.

The retry count travels in the `x-retry` header as a UTF-8 decimal string
(b"2"). It is lifted into an explicit field here so the router decides on a
plain int and never reads message metadata itself.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from shared.events import EventDecodeError, OrderCreatedEvent
from shared.logger import get_logger

from .transport import InboundMessage

logger = get_logger(__name__)

RETRY_HEADER = "x-retry"


def read_retry_count(headers: Mapping[str, Any] | None) -> int:
    """Absent header means first delivery (0). Unreadable values also count as 0."""
    if not headers or RETRY_HEADER not in headers:
        return 0
    raw = headers[RETRY_HEADER]
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        count = int(raw)
    except (TypeError, ValueError, UnicodeDecodeError):
        logger.warning("Unreadable retry header, treating as 0", extra={"header_value": repr(raw)})
        return 0
    return max(count, 0)


def retry_headers(retry_count: int) -> dict[str, bytes]:
    return {RETRY_HEADER: str(retry_count).encode("utf-8")}


@dataclass(frozen=True)
class Delivery:
    raw_body: bytes
    delivery_tag: Any
    retry_count: int = 0
    event: OrderCreatedEvent | None = None
    decode_error: str | None = None

    @classmethod
    def from_message(cls, message: InboundMessage) -> Delivery:
        retry_count = read_retry_count(message.headers)
        try:
            event = OrderCreatedEvent.from_message_body(message.body)
        except EventDecodeError as exc:
            return cls(
                raw_body=message.body,
                delivery_tag=message.delivery_tag,
                retry_count=retry_count,
                decode_error=str(exc),
            )
        return cls(
            raw_body=message.body,
            delivery_tag=message.delivery_tag,
            retry_count=retry_count,
            event=event,
        )

    @property
    def log_fields(self) -> dict[str, Any]:
        return {
            "order_id": str(self.event.order_id) if self.event else None,
            "retry_count": self.retry_count,
            "delivery_tag": self.delivery_tag,
        }
