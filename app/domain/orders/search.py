from __future__ import annotations

import math
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Callable, Iterable, Literal, Sequence

from app.domain.orders.models import Address, Order

SearchField = Literal["all", "order_id", "client_id", "payment_intent", "email_name", "item", "tracking"]
StatusFilter = Literal[
    "all",
    "pending",
    "paid",
    "processing",
    "shipped",
    "partially_refunded",
    "refunded",
    "failed",
]

HEX24 = re.compile(r"^[0-9a-fA-F]{24}$")
_TOKEN_SPLIT = re.compile(r"[\s@._\-/|,:#]+")

# below this length a query only matches as a substring
MIN_FUZZY_LENGTH = 3


@dataclass(frozen=True)
class SearchKey:
    path: str
    weight: float
    extract: Callable[[Order], list[str | None]]


def _address(getter: Callable[[Order], Address | None], attr: str) -> Callable[[Order], list[str | None]]:
    def extract(order: Order) -> list[str | None]:
        address = getter(order)
        return [getattr(address, attr)] if address is not None else []

    return extract


def _shipping(order: Order) -> Address | None:
    return order.shipping_address


def _billing(order: Order) -> Address | None:
    return order.billing_address


SEARCH_KEYS: tuple[SearchKey, ...] = (
    SearchKey("items.name", 5, lambda o: [item.name for item in o.items]),
    SearchKey("_id", 4, lambda o: [o.id]),
    SearchKey("clientId", 3, lambda o: [o.client_id]),
    SearchKey("paymentIntentId", 3, lambda o: [o.payment_intent_id]),
    SearchKey("shippingAddress.firstName", 2, _address(_shipping, "first_name")),
    SearchKey("shippingAddress.lastName", 2, _address(_shipping, "last_name")),
    SearchKey("billingAddress.firstName", 1.5, _address(_billing, "first_name")),
    SearchKey("billingAddress.lastName", 1.5, _address(_billing, "last_name")),
    SearchKey("shippingAddress.email", 2, _address(_shipping, "email")),
    SearchKey("billingAddress.email", 2, _address(_billing, "email")),
    SearchKey("shipment.trackingCode", 2, lambda o: [o.shipment.tracking_code] if o.shipment else []),
    SearchKey("shipment.provider", 1, lambda o: [o.shipment.provider] if o.shipment else []),
    SearchKey("items.source", 1, lambda o: [item.source for item in o.items]),
)
KEYS_BY_PATH = {key.path: key for key in SEARCH_KEYS}

FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "all": tuple(key.path for key in SEARCH_KEYS),
    "order_id": ("_id",),
    "client_id": ("clientId",),
    "payment_intent": ("paymentIntentId",),
    "email_name": (
        "shippingAddress.email",
        "billingAddress.email",
        "shippingAddress.firstName",
        "shippingAddress.lastName",
        "billingAddress.firstName",
        "billingAddress.lastName",
    ),
    "item": ("items.name", "items.source"),
    "tracking": ("shipment.trackingCode", "shipment.provider"),
}


def keys_for_field(field: str) -> tuple[str, ...]:
    try:
        return FIELD_KEYS[field]
    except KeyError as exc:
        raise ValueError(f"unsupported search field: {field}") from exc


def key_values(order: Order, path: str) -> list[str]:
    return [str(value).lower() for value in KEYS_BY_PATH[path].extract(order) if value]


def similarity(query: str, value: str) -> float:
    """Score in [0, 1]: 1.0 for a substring hit, else the best ratio against the value or any of its tokens."""
    if query in value:
        return 1.0
    if len(query) < MIN_FUZZY_LENGTH:
        return 0.0
    best = 0.0
    for candidate in (value, *_TOKEN_SPLIT.split(value)):
        if not candidate:
            continue
        matcher = SequenceMatcher(None, query, candidate)
        if matcher.real_quick_ratio() <= best or matcher.quick_ratio() <= best:
            continue
        best = max(best, matcher.ratio())
    return best


class OrderSearchIndex:
    """Weighted fuzzy index over a fixed order set.

    Every key value is lower-cased once at build time. A query matches a key
    when ``similarity`` reaches ``1 - threshold``; the order's score is the
    weighted sum over matching keys. Multi-word queries additionally match
    when every word hits some key, so "jane doe" finds first and last name
    stored in separate fields. Ties keep the original order.
    """

    def __init__(self, orders: Iterable[Order], threshold: float = 0.4):
        self.threshold = threshold
        self.cutoff = 1.0 - threshold
        self._entries: list[tuple[Order, dict[str, list[str]]]] = [
            (order, {key.path: key_values(order, key.path) for key in SEARCH_KEYS}) for order in orders
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def _key_score(self, query: str, values: list[str]) -> float:
        best = 0.0
        for value in values:
            best = max(best, similarity(query, value))
            if best == 1.0:
                break
        return best if best >= self.cutoff else 0.0

    def _score(self, query: str, terms: list[str], fields: dict[str, list[str]], paths: tuple[str, ...]) -> float:
        phrase = 0.0
        for path in paths:
            phrase += KEYS_BY_PATH[path].weight * self._key_score(query, fields[path])
        if len(terms) < 2:
            return phrase

        per_term = 0.0
        for term in terms:
            term_best = max(KEYS_BY_PATH[path].weight * self._key_score(term, fields[path]) for path in paths)
            if term_best == 0.0:
                return phrase
            per_term += term_best
        return phrase + per_term

    def search(self, query: str, field: str = "all", allowed_ids: set[str] | None = None) -> list[Order]:
        paths = keys_for_field(field)
        normalized = query.strip().lower()
        if not normalized:
            return [order for order, _ in self._entries if allowed_ids is None or order.id in allowed_ids]
        terms = normalized.split()

        scored: list[tuple[float, int, Order]] = []
        for position, (order, fields) in enumerate(self._entries):
            if allowed_ids is not None and order.id not in allowed_ids:
                continue
            score = self._score(normalized, terms, fields, paths)
            if score > 0.0:
                scored.append((-score, position, order))
        scored.sort(key=lambda row: (row[0], row[1]))
        return [order for _, _, order in scored]


def scan_orders(orders: Iterable[Order], query: str, field: str = "all") -> list[Order]:
    """Case-insensitive substring scan over the same keys the index uses."""
    paths = keys_for_field(field)
    needle = query.strip().lower()
    if not needle:
        return list(orders)
    return [
        order
        for order in orders
        if any(needle in value for path in paths for value in key_values(order, path))
    ]


def filter_by_status(orders: Iterable[Order], status: str = "all") -> list[Order]:
    if not status or status == "all":
        return list(orders)
    return [order for order in orders if order.status == status]


def search_orders(
    orders: Sequence[Order],
    query: str = "",
    field: str = "all",
    status: str = "all",
    index: OrderSearchIndex | None = None,
) -> list[Order]:
    keys_for_field(field)
    base = filter_by_status(orders, status)
    q = (query or "").strip()
    if not q:
        return base

    if HEX24.match(q) and field in ("all", "order_id"):
        exact = [order for order in base if order.id.lower() == q.lower()]
        if exact:
            return exact

    if index is None:
        return scan_orders(base, q, field)
    allowed = None if status in ("", "all") else {order.id for order in base}
    return index.search(q, field, allowed_ids=allowed)


@dataclass(frozen=True)
class ResultPage:
    items: tuple[Order, ...]
    page: int
    per_page: int
    total_results: int
    total_pages: int


def paginate(results: Sequence[Order], page: int = 1, per_page: int = 12) -> ResultPage:
    per_page = max(1, per_page)
    page = max(1, page)
    total = len(results)
    start = (page - 1) * per_page
    return ResultPage(
        items=tuple(results[start : start + per_page]),
        page=page,
        per_page=per_page,
        total_results=total,
        total_pages=max(1, math.ceil(total / per_page)),
    )
