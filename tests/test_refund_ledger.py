from __future__ import annotations

from decimal import Decimal

import pytest

from app.domain.orders.errors import InvalidAmountError, InvalidStateError
from app.domain.orders.ledger import apply_local_refund, refund_status, refundable_amount, refunded_amount, validate_refund
from app.domain.orders.models import Order


def test_refunded_amount_prefers_numeric_metadata_total(order_doc, oid):
    order = Order.model_validate(
        order_doc(
            oid(1),
            metadata={"refundedAmount": 12.5, "refunds": [{"amount": 1}]},
            refund={"amount": 3},
        )
    )
    assert refunded_amount(order) == Decimal("12.50")


def test_refunded_amount_sums_history_when_no_explicit_total(order_doc, oid):
    order = Order.model_validate(
        order_doc(
            oid(1),
            metadata={"refunds": [{"amount": 5}, {"amount": "2.25"}, {"amount": None}, {"note": "manual"}]},
            refund={"amount": 40},
        )
    )
    assert refunded_amount(order) == Decimal("7.25")


def test_refunded_amount_falls_back_to_latest_refund(order_doc, oid):
    order = Order.model_validate(order_doc(oid(1), refund={"amount": 9.99}))
    assert refunded_amount(order) == Decimal("9.99")


@pytest.mark.parametrize("explicit", ["10", True, None, float("nan")])
def test_non_numeric_metadata_total_is_ignored(order_doc, oid, explicit):
    order = Order.model_validate(order_doc(oid(1), metadata={"refundedAmount": explicit}, refund={"amount": 4}))
    assert refunded_amount(order) == Decimal("4.00")


def test_no_refund_history_means_zero(order_doc, oid):
    order = Order.model_validate(order_doc(oid(1), metadata=None))
    assert refunded_amount(order) == Decimal("0")
    assert refundable_amount(order) == Decimal("50.00")


def test_refundable_amount_never_negative(order_doc, oid):
    order = Order.model_validate(order_doc(oid(1), metadata={"refundedAmount": 80}))
    assert refunded_amount(order) == Decimal("80.00")
    assert refundable_amount(order) == Decimal("0.00")


@pytest.mark.parametrize("amount", [0, -5, "0.00"])
def test_non_positive_refund_is_rejected(order_doc, oid, amount):
    order = Order.model_validate(order_doc(oid(1)))
    with pytest.raises(InvalidAmountError):
        validate_refund(order, amount)


def test_refund_above_refundable_reports_the_limit(order_doc, oid):
    order = Order.model_validate(order_doc(oid(1), status="partially_refunded", metadata={"refundedAmount": 20}))

    with pytest.raises(InvalidAmountError) as exc_info:
        validate_refund(order, "30.01")
    assert exc_info.value.refundable == Decimal("30.00")
    assert exc_info.value.order_id == oid(1)

    assert validate_refund(order, 30) == Decimal("30.00")


def test_float_noise_within_tolerance_is_accepted(order_doc, oid):
    order = Order.model_validate(order_doc(oid(1), total=0.5, metadata={"refundedAmount": 0.2}))
    assert validate_refund(order, 0.1 + 0.2) == Decimal("0.30")


def test_unparseable_amount_is_invalid(order_doc, oid):
    order = Order.model_validate(order_doc(oid(1)))
    with pytest.raises(InvalidAmountError):
        validate_refund(order, "ten pounds")


@pytest.mark.parametrize("status", ["pending", "failed"])
def test_refund_requires_a_refundable_status(order_doc, oid, status):
    order = Order.model_validate(order_doc(oid(1), status=status))
    with pytest.raises(InvalidStateError) as exc_info:
        validate_refund(order, 10)
    assert exc_info.value.status == status


def test_fully_refunded_order_rejects_any_further_amount(order_doc, oid):
    order = Order.model_validate(order_doc(oid(1), status="refunded", metadata={"refundedAmount": 50}))
    with pytest.raises(InvalidAmountError):
        validate_refund(order, "0.01")


def test_local_refunds_accumulate_exactly(order_doc, oid):
    order = Order.model_validate(order_doc(oid(1)))

    first = apply_local_refund(order, Decimal("12.34"), reason="damaged")
    assert first.refunded_amount == Decimal("12.34")
    assert first.status == "partially_refunded"
    assert first.refund.reason == "damaged"

    second = apply_local_refund(first, Decimal("7.66"))
    assert second.refunded_amount == Decimal("20.00")
    assert len(second.metadata["refunds"]) == 2
    assert second.metadata["refundedAmount"] == 20.0

    final = apply_local_refund(second, Decimal("30.00"))
    assert final.status == "refunded"
    assert refundable_amount(final) == Decimal("0.00")
    # the input snapshot is not touched
    assert order.refunded_amount == Decimal("0")
    assert order.metadata == {}


def test_local_refund_keeps_store_record_fields(order_doc, oid):
    order = Order.model_validate(order_doc(oid(1)))
    updated = apply_local_refund(
        order,
        Decimal("5.00"),
        refund_record={"refundId": "re_123", "refundedAt": "2025-02-03T10:00:00Z"},
    )
    assert updated.refund.refund_id == "re_123"
    assert updated.metadata["refunds"][0]["refundId"] == "re_123"


def test_refund_status_thresholds():
    assert refund_status(Decimal("50.00"), Decimal("49.99")) == "partially_refunded"
    assert refund_status(Decimal("50.00"), Decimal("50.00")) == "refunded"
