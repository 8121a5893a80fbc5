from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Literal

from app.domain.orders.errors import AlreadyShippedError, InvalidStateError
from app.domain.orders.models import Order, Shipment

OrderStatus = Literal[
    "pending",
    "paid",
    "processing",
    "shipped",
    "partially_refunded",
    "refunded",
    "failed",
]

PENDING = "pending"
PAID = "paid"
PROCESSING = "processing"
SHIPPED = "shipped"
PARTIALLY_REFUNDED = "partially_refunded"
REFUNDED = "refunded"
FAILED = "failed"

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PAID, FAILED}),
    PAID: frozenset({PROCESSING, SHIPPED, PARTIALLY_REFUNDED, REFUNDED}),
    PROCESSING: frozenset({SHIPPED, PARTIALLY_REFUNDED, REFUNDED}),
    SHIPPED: frozenset({PARTIALLY_REFUNDED, REFUNDED}),
    PARTIALLY_REFUNDED: frozenset({SHIPPED, PARTIALLY_REFUNDED, REFUNDED}),
    REFUNDED: frozenset(),
    FAILED: frozenset(),
}


def can_transition(src: str, dst: str) -> bool:
    return dst in TRANSITIONS.get(src, frozenset())


def can_ship(status: str) -> bool:
    return can_transition(status, SHIPPED)


def can_refund(status: str) -> bool:
    return can_transition(status, PARTIALLY_REFUNDED) or can_transition(status, REFUNDED)


def validate_shipment(order: Order) -> None:
    # shipped is no source state for SHIPPED; it is reported as a duplicate below
    if order.status != SHIPPED and not can_ship(order.status):
        raise InvalidStateError(
            f"cannot ship an order in status {order.status!r}",
            order_id=order.id,
            action="ship",
            status=order.status,
        )
    if order.has_shipment or order.status == SHIPPED:
        raise AlreadyShippedError(
            f"order {order.id} already has a shipment",
            order_id=order.id,
            action="ship",
        )


def apply_local_shipment(
    order: Order,
    provider: str,
    tracking_code: str | None = None,
    estimated_delivery: date | None = None,
    now: datetime | None = None,
) -> Order:
    now = now or datetime.now(timezone.utc)
    eta = None
    if estimated_delivery is not None:
        eta = datetime.combine(estimated_delivery, time(0, 0), tzinfo=timezone.utc)
    shipment = Shipment(
        provider=provider,
        tracking_code=tracking_code or None,
        shipped_at=now,
        estimated_delivery=eta,
    )
    return order.model_copy(update={"shipment": shipment, "status": SHIPPED, "updated_at": now})
