from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from pydantic import ValidationError

from app.domain.orders.errors import OrderNotFoundError, PageMissing, SafetyCapReached
from app.domain.orders.models import Order

if TYPE_CHECKING:
    from app.persistence.order_store import OrderStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    orders: list[Order] = field(default_factory=list)
    pages_fetched: int = 0
    total_pages: int = 0
    cap_reached: bool = False
    cancelled: bool = False
    skipped_records: int = 0
    duplicate_records: int = 0
    missing_pages: list[int] = field(default_factory=list)
    warnings: list[Warning] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not (self.cap_reached or self.cancelled or self.missing_pages)

    def summary(self) -> dict:
        return {
            "loaded": len(self.orders),
            "pages_fetched": self.pages_fetched,
            "total_pages": self.total_pages,
            "cap_reached": self.cap_reached,
            "cancelled": self.cancelled,
            "skipped_records": self.skipped_records,
            "duplicate_records": self.duplicate_records,
            "missing_pages": list(self.missing_pages),
            "warnings": [str(w) for w in self.warnings],
        }


def sync_orders(
    store: "OrderStore",
    page_size: int = 200,
    max_records: int = 5000,
    cancel: threading.Event | None = None,
    on_page: Callable[[list[Order]], None] | None = None,
) -> SyncResult:
    """Page through the store until the last page, the record cap, or cancellation.

    Records that fail validation are skipped, ids already seen are dropped.
    A page that answers not found is recorded in ``missing_pages`` and the
    walk continues with the next one while the last known page count allows.
    Once ``cancel`` is set no further page is requested and ``on_page`` is
    not called again; whatever was accumulated stays in the result.
    """
    result = SyncResult()
    seen: set[str] = set()
    page = 1

    while True:
        if cancel is not None and cancel.is_set():
            result.cancelled = True
            break
        try:
            store_page = store.list_orders(page, page_size)
        except OrderNotFoundError:
            warning = PageMissing(page=page, total_pages=result.total_pages)
            result.missing_pages.append(page)
            result.warnings.append(warning)
            logger.warning("order sync %s", warning)
            if page < result.total_pages:
                page += 1
                continue
            break
        if cancel is not None and cancel.is_set():
            result.cancelled = True
            break

        result.pages_fetched += 1
        result.total_pages = store_page.total_pages

        truncated = False
        for record in store_page.records:
            if len(result.orders) >= max_records:
                truncated = True
                break
            try:
                order = Order.model_validate(record)
            except ValidationError as exc:
                result.skipped_records += 1
                logger.warning(
                    "skipping malformed order record id=%s: %s",
                    record.get("_id") or record.get("id"),
                    exc.errors()[0]["msg"] if exc.errors() else exc,
                )
                continue
            if order.id in seen:
                result.duplicate_records += 1
                continue
            seen.add(order.id)
            result.orders.append(order)

        if on_page is not None:
            on_page(list(result.orders))

        last_page = store_page.page >= store_page.total_pages or not store_page.records
        if len(result.orders) >= max_records and (truncated or not last_page):
            warning = SafetyCapReached(cap=max_records, loaded=len(result.orders))
            result.cap_reached = True
            result.warnings.append(warning)
            logger.warning("order sync %s", warning)
            break
        if last_page:
            break
        page += 1

    logger.info(
        "order sync finished: loaded=%s pages=%s/%s missing=%s cancelled=%s",
        len(result.orders),
        result.pages_fetched,
        result.total_pages,
        result.missing_pages,
        result.cancelled,
    )
    return result
