from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Generator, Iterable, Mapping
from uuid import uuid4

from pydantic import ValidationError

from app.core.config import Settings, get_settings
from app.domain.orders.aggregates import OrderStats, compute_stats
from app.domain.orders.errors import (
    InvalidRequestError,
    MutationInProgressError,
    OrderNotFoundError,
    StoreUnavailableError,
)
from app.domain.orders.ledger import apply_local_refund, validate_refund
from app.domain.orders.lifecycle import apply_local_shipment, validate_shipment
from app.domain.orders.models import SHIPMENT_PROVIDERS, Order
from app.domain.orders.search import OrderSearchIndex, ResultPage, paginate, search_orders
from app.domain.orders.sync import SyncResult, sync_orders
from app.persistence.order_store import OrderStore, build_order_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderSnapshot:
    version: int = 0
    orders: Mapping[str, Order] = field(default_factory=lambda: MappingProxyType({}))
    index: OrderSearchIndex | None = None

    @property
    def indexed(self) -> bool:
        return self.index is not None

    def ordered(self) -> list[Order]:
        return list(self.orders.values())


class SingleFlight:
    """At most one holder per key; a second caller is rejected, not queued."""

    def __init__(self):
        self._lock = threading.Lock()
        self._held: set[str] = set()

    def busy(self, key: str) -> bool:
        with self._lock:
            return key in self._held

    @contextmanager
    def hold(self, key: str, action: str) -> Generator[None, None, None]:
        with self._lock:
            if key in self._held:
                raise MutationInProgressError(
                    f"another mutation is already running for order {key}",
                    order_id=key,
                    action=action,
                )
            self._held.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._held.discard(key)


class OrderService:
    """Owns the loaded order set.

    Reads (``query``, ``stats``, ``get``) work on the current immutable
    snapshot and never wait for a mutation. Mutations run validate, persist,
    reconcile under a per-order guard and publish a new snapshot only after
    the store confirmed; a failed store call leaves the snapshot untouched.
    """

    def __init__(self, store: OrderStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()
        self._snapshot = OrderSnapshot()
        self._state_lock = threading.Lock()
        self._reload_lock = threading.Lock()
        self._inflight = SingleFlight()
        # confirmed mutations made while a reload runs, keyed by order id; None marks a delete
        self._journal: dict[str, Order | None] | None = None

    @property
    def snapshot(self) -> OrderSnapshot:
        return self._snapshot

    def _build_index(self, orders: Iterable[Order]) -> OrderSearchIndex:
        return OrderSearchIndex(orders, threshold=self.settings.search_threshold)

    def _publish(self, orders: Iterable[Order], indexed: bool) -> OrderSnapshot:
        """Swap in a freshly loaded order set with journaled mutations replayed on top."""
        with self._state_lock:
            merged = {order.id: order for order in orders}
            for order_id, order in (self._journal or {}).items():
                if order is None:
                    merged.pop(order_id, None)
                else:
                    merged[order_id] = order
            index = self._build_index(merged.values()) if indexed else None
            self._snapshot = OrderSnapshot(self._snapshot.version + 1, MappingProxyType(merged), index)
            return self._snapshot

    def _replace(self, order: Order) -> None:
        with self._state_lock:
            if self._journal is not None:
                self._journal[order.id] = order
            current = self._snapshot
            orders = dict(current.orders)
            orders[order.id] = order
            index = self._build_index(orders.values()) if current.indexed else None
            self._snapshot = OrderSnapshot(current.version + 1, MappingProxyType(orders), index)

    def _remove(self, order_id: str) -> None:
        with self._state_lock:
            if self._journal is not None:
                self._journal[order_id] = None
            current = self._snapshot
            orders = {key: value for key, value in current.orders.items() if key != order_id}
            index = self._build_index(orders.values()) if current.indexed else None
            self._snapshot = OrderSnapshot(current.version + 1, MappingProxyType(orders), index)

    def reload(self, cancel: threading.Event | None = None) -> SyncResult:
        if not self._reload_lock.acquire(blocking=False):
            raise MutationInProgressError("an order reload is already running", action="reload")
        try:
            with self._state_lock:
                self._journal = {}
            # until a first index exists, expose each page so searches can use the scan path
            initial = not self._snapshot.indexed

            def publish_page(orders: list[Order]) -> None:
                if cancel is not None and cancel.is_set():
                    return
                self._publish(orders, indexed=False)

            result = sync_orders(
                self.store,
                page_size=self.settings.sync_page_size,
                max_records=self.settings.sync_max_records,
                cancel=cancel,
                on_page=publish_page if initial else None,
            )
            if result.cancelled:
                logger.info("order reload cancelled after %s records", len(result.orders))
                return result
            if result.missing_pages and not initial:
                logger.warning(
                    "order reload missed pages %s, keeping version %s",
                    result.missing_pages,
                    self._snapshot.version,
                )
                return result
            snapshot = self._publish(result.orders, indexed=True)
            logger.info("order set reloaded: version=%s orders=%s", snapshot.version, len(snapshot.orders))
            return result
        finally:
            with self._state_lock:
                self._journal = None
            self._reload_lock.release()

    def get(self, order_id: str) -> Order:
        order = self._snapshot.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"order {order_id} is not loaded", order_id=order_id)
        return order

    def query(
        self,
        query: str = "",
        field: str = "all",
        status: str = "all",
        page: int = 1,
        per_page: int | None = None,
    ) -> ResultPage:
        snapshot = self._snapshot
        try:
            results = search_orders(snapshot.ordered(), query, field=field, status=status, index=snapshot.index)
        except ValueError as exc:
            raise InvalidRequestError(str(exc), action="query") from exc
        return paginate(results, page=page, per_page=per_page or self.settings.admin_page_size)

    def orders_for_client(self, client_id: str, page: int = 1, per_page: int | None = None) -> ResultPage:
        matches = [order for order in self._snapshot.ordered() if order.client_id == client_id]
        matches.sort(key=lambda o: o.created_at.timestamp() if o.created_at else 0.0, reverse=True)
        return paginate(matches, page=page, per_page=per_page or self.settings.client_page_size)

    def stats(self) -> OrderStats:
        return compute_stats(self._snapshot.orders.values())

    def is_busy(self, order_id: str) -> bool:
        return self._inflight.busy(order_id)

    def _authoritative(self, document: dict[str, Any] | None, order_id: str, action: str) -> Order | None:
        if document is None:
            return None
        try:
            order = Order.model_validate(document)
        except ValidationError as exc:
            logger.warning("store returned an unreadable order for %s on %s: %s", order_id, action, exc)
            return None
        if order.id != order_id:
            logger.warning("store returned order %s for %s on %s, ignoring", order.id, order_id, action)
            return None
        return order

    def refund(
        self,
        order_id: str,
        amount: Any,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> Order:
        """Refund ``amount`` against the order.

        ``idempotency_key`` lets a caller retry after ``StoreUnavailableError``
        without the store counting the refund twice. When omitted a key is
        generated, and a store outage reports it in the error context.
        """
        key = (idempotency_key or "").strip() or uuid4().hex
        with self._inflight.hold(order_id, "refund"):
            order = self.get(order_id)
            value = validate_refund(order, amount, epsilon=self.settings.refund_epsilon)
            try:
                result = self.store.refund_order(order_id, value, reason=reason or None, idempotency_key=key)
            except StoreUnavailableError as exc:
                exc.idempotency_key = key
                raise
            updated = self._authoritative(result.order, order_id, "refund")
            if updated is None:
                updated = apply_local_refund(order, value, reason=reason, refund_record=result.refund)
            elif updated.refunded_amount < order.refunded_amount + value:
                logger.warning(
                    "store reports refunded=%s for %s after refunding %s on top of %s",
                    updated.refunded_amount,
                    order_id,
                    value,
                    order.refunded_amount,
                )
            self._replace(updated)
            logger.info(
                "refund applied: order_id=%s amount=%s refunded=%s status=%s key=%s",
                order_id,
                value,
                updated.refunded_amount,
                updated.status,
                key,
            )
            return updated

    def assign_shipment(
        self,
        order_id: str,
        provider: str,
        tracking_code: str | None = None,
        estimated_delivery: date | str | None = None,
    ) -> Order:
        if provider not in SHIPMENT_PROVIDERS:
            raise InvalidRequestError(f"unknown shipment provider: {provider}", order_id=order_id, action="ship")
        if isinstance(estimated_delivery, str):
            try:
                estimated_delivery = date.fromisoformat(estimated_delivery.strip())
            except ValueError as exc:
                raise InvalidRequestError(
                    "estimatedDelivery must be YYYY-MM-DD", order_id=order_id, action="ship"
                ) from exc
        tracking_code = (tracking_code or "").strip() or None

        with self._inflight.hold(order_id, "ship"):
            order = self.get(order_id)
            validate_shipment(order)
            document = self.store.add_shipment(
                order_id,
                provider,
                tracking_code=tracking_code,
                estimated_delivery=estimated_delivery,
            )
            updated = self._authoritative(document, order_id, "ship")
            if updated is None:
                updated = apply_local_shipment(order, provider, tracking_code, estimated_delivery)
            self._replace(updated)
            logger.info("shipment assigned: order_id=%s provider=%s tracking=%s", order_id, provider, tracking_code)
            return updated

    def delete(self, order_id: str) -> None:
        with self._inflight.hold(order_id, "delete"):
            self.get(order_id)
            self.store.delete_order(order_id)
            self._remove(order_id)
            logger.info("order deleted: order_id=%s", order_id)

    def export(self, fmt: str = "csv") -> bytes:
        return self.store.export_orders(fmt)


@lru_cache(maxsize=1)
def get_order_service() -> OrderService:
    settings = get_settings()
    return OrderService(build_order_store(settings), settings)
