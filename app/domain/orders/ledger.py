from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from app.domain.orders.errors import InvalidAmountError, InvalidStateError
from app.domain.orders.lifecycle import PARTIALLY_REFUNDED, REFUNDED, can_refund
from app.domain.orders.models import ZERO, Order, Refund, quantize_money, to_money


def refunded_amount(order: Order) -> Decimal:
    return order.refunded_amount


def refundable_amount(order: Order) -> Decimal:
    return quantize_money(max(ZERO, order.total - order.refunded_amount))


def refund_status(total: Decimal, refunded: Decimal) -> str:
    return REFUNDED if refunded >= total else PARTIALLY_REFUNDED


def validate_refund(order: Order, amount: Any, epsilon: float = 0.0001) -> Decimal:
    """Check a refund request against the ledger before anything reaches the store.

    Returns the amount as a 2dp ``Decimal``. The amount is checked before the
    status, so a fully refunded order rejects further requests with
    ``InvalidAmountError``.
    """
    refundable = refundable_amount(order)
    try:
        value = to_money(amount)
    except ValueError as exc:
        raise InvalidAmountError(
            f"refund amount {amount!r} is not a number",
            order_id=order.id,
            action="refund",
            refundable=refundable,
        ) from exc

    if value <= 0:
        raise InvalidAmountError(
            f"refund amount must be positive, got {value}",
            order_id=order.id,
            action="refund",
            amount=value,
            refundable=refundable,
        )
    if value > refundable + Decimal(str(epsilon)):
        raise InvalidAmountError(
            f"refund amount {value} exceeds refundable amount {refundable}",
            order_id=order.id,
            action="refund",
            amount=value,
            refundable=refundable,
        )
    if not can_refund(order.status):
        raise InvalidStateError(
            f"cannot refund an order in status {order.status!r}",
            order_id=order.id,
            action="refund",
            amount=value,
            status=order.status,
        )
    return value


def apply_local_refund(
    order: Order,
    amount: Decimal,
    reason: str | None = None,
    refund_record: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> Order:
    """Best-effort update for a confirmed refund when the store did not return the order."""
    now = now or datetime.now(timezone.utc)
    cumulative = quantize_money(order.refunded_amount + amount)

    record = refund_record or {}
    refund = Refund(
        amount=amount,
        reason=record.get("reason") or reason,
        refunded_at=record.get("refundedAt") or now,
        refund_id=record.get("refundId"),
    )

    metadata = dict(order.metadata)
    previous = metadata.get("refunds")
    history = list(previous) if isinstance(previous, list) else []
    history.append(
        {
            "refundId": refund.refund_id,
            "amount": float(amount),
            "reason": refund.reason,
            "refundedAt": refund.refunded_at.isoformat() if refund.refunded_at else None,
        }
    )
    metadata["refunds"] = history
    metadata["refundedAmount"] = float(cumulative)

    return order.model_copy(
        update={
            "status": refund_status(order.total, cumulative),
            "refund": refund,
            "metadata": metadata,
            "refunded_amount": cumulative,
            "updated_at": now,
        }
    )
