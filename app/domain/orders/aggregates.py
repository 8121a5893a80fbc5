from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from app.domain.orders.ledger import refundable_amount
from app.domain.orders.lifecycle import PAID, PARTIALLY_REFUNDED, REFUNDED, SHIPPED
from app.domain.orders.models import ZERO, Order, quantize_money


@dataclass(frozen=True)
class OrderStats:
    order_count: int = 0
    net_revenue: Decimal = ZERO
    gross_revenue: Decimal = ZERO
    refunded_total: Decimal = ZERO
    paid_count: int = 0
    shipped_count: int = 0
    refunded_count: int = 0
    partially_refunded_count: int = 0

    def to_dict(self) -> dict:
        return {
            "order_count": self.order_count,
            "net_revenue": float(self.net_revenue),
            "gross_revenue": float(self.gross_revenue),
            "refunded_total": float(self.refunded_total),
            "paid_count": self.paid_count,
            "shipped_count": self.shipped_count,
            "refunded_count": self.refunded_count,
            "partially_refunded_count": self.partially_refunded_count,
        }


def compute_stats(orders: Iterable[Order]) -> OrderStats:
    count = 0
    net = ZERO
    gross = ZERO
    refunded = ZERO
    paid = shipped = fully_refunded = partial = 0

    for order in orders:
        count += 1
        gross += order.total
        refunded += order.refunded_amount
        # clamp per order so one inconsistent record cannot pull the sum down
        net += refundable_amount(order)
        if order.status in (PAID, SHIPPED):
            paid += 1
        if order.status == SHIPPED:
            shipped += 1
        if order.status == REFUNDED:
            fully_refunded += 1
        if order.status == PARTIALLY_REFUNDED:
            partial += 1

    return OrderStats(
        order_count=count,
        net_revenue=quantize_money(net),
        gross_revenue=quantize_money(gross),
        refunded_total=quantize_money(refunded),
        paid_count=paid,
        shipped_count=shipped,
        refunded_count=fully_refunded,
        partially_refunded_count=partial,
    )
