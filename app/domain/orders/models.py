from __future__ import annotations

import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any, Literal, get_args

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    PositiveInt,
    model_validator,
)
from pydantic.alias_generators import to_camel

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

ShipmentProvider = Literal[
    "royal-mail",
    "dpd",
    "evri",
    "ups",
    "dhl",
    "fedex",
    "parcelforce",
    "yodel",
]

SHIPMENT_PROVIDERS: tuple[str, ...] = get_args(ShipmentProvider)


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_money(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise ValueError("boolean is not a monetary amount")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("monetary amount must be finite")
        amount = Decimal(str(value))
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"not a monetary amount: {value!r}") from exc
    else:
        raise ValueError(f"not a monetary amount: {value!r}")
    if not amount.is_finite():
        raise ValueError("monetary amount must be finite")
    return quantize_money(amount)


def _coerce_ref(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, dict) and "$oid" in value:
        return str(value["$oid"])
    return str(value)


Money = Annotated[
    Decimal,
    BeforeValidator(to_money),
    PlainSerializer(float, return_type=float, when_used="json"),
]
RecordRef = Annotated[str | None, BeforeValidator(_coerce_ref)]


class StoreModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Address(StoreModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    city: str | None = None
    postcode: str | None = None


class OrderItem(StoreModel):
    name: str
    qty: PositiveInt
    unit_price: Money = Field(ge=0)
    total_price: Money = Field(ge=0)
    source: str | None = None

    @model_validator(mode="after")
    def _line_total(self) -> "OrderItem":
        expected = quantize_money(self.unit_price * self.qty)
        if abs(expected - self.total_price) > CENTS:
            raise ValueError(
                f"item {self.name!r}: totalPrice {self.total_price} != qty {self.qty} x unitPrice {self.unit_price}"
            )
        return self


class Shipment(StoreModel):
    provider: ShipmentProvider
    tracking_code: str | None = None
    shipped_at: datetime | None = None
    estimated_delivery: datetime | None = None


class Refund(StoreModel):
    amount: Money = Field(ge=0)
    reason: str | None = None
    refunded_at: datetime | None = None
    refund_id: str | None = None


def _history_amount(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return to_money(value)
    except ValueError:
        return None


def refunded_from_history(metadata: dict[str, Any], refund: Refund | None) -> Decimal:
    """Resolve the cumulative refunded amount from whichever history shape the store sent.

    Priority: ``metadata.refundedAmount`` (numeric only), then the sum of
    ``metadata.refunds[].amount``, then the single ``refund.amount``, then zero.
    """
    explicit = metadata.get("refundedAmount")
    if isinstance(explicit, (int, float, Decimal)) and not isinstance(explicit, bool):
        amount = _history_amount(explicit)
        if amount is not None:
            return amount

    refunds = metadata.get("refunds")
    if isinstance(refunds, list):
        total = ZERO
        for entry in refunds:
            if isinstance(entry, dict):
                total += _history_amount(entry.get("amount")) or ZERO
        return quantize_money(total)

    if refund is not None:
        return refund.amount
    return ZERO


class Order(StoreModel):
    id: Annotated[str, BeforeValidator(_coerce_ref)] = Field(
        validation_alias=AliasChoices("_id", "id"),
        serialization_alias="_id",
        min_length=1,
    )
    payment_intent_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    paid_at: datetime | None = None
    currency: str = "GBP"
    items: list[OrderItem] = Field(default_factory=list)
    subtotal: Money = Field(default=ZERO, ge=0)
    shipping: Money = Field(default=ZERO, ge=0)
    total: Money = Field(default=ZERO, ge=0)
    status: str = "pending"
    client_id: RecordRef = None
    billing_address: Address | None = None
    shipping_address: Address | None = None
    shipment: Shipment | None = None
    refund: Refund | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    # canonical cumulative refund, derived once on ingest
    refunded_amount: Money = ZERO

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if data.get("metadata") is None:
                data.pop("metadata", None)
            if data.get("items") is None:
                data.pop("items", None)
            if not data.get("currency"):
                data.pop("currency", None)
            if not data.get("status"):
                data.pop("status", None)
        return data

    @model_validator(mode="after")
    def _normalize_refunds(self) -> "Order":
        self.refunded_amount = refunded_from_history(self.metadata, self.refund)
        return self

    @property
    def has_shipment(self) -> bool:
        return self.shipment is not None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
