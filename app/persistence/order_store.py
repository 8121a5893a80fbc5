from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Protocol
from urllib.parse import quote
from uuid import uuid4

import httpx
import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.domain.orders.errors import (
    InvalidAmountError,
    OrderNotFoundError,
    StoreRejectedError,
    StoreUnavailableError,
)
from app.domain.orders.ledger import refund_status, refundable_amount
from app.domain.orders.models import Order, quantize_money
from app.persistence.models import OrderDocumentModel
from app.persistence.pg import session_scope

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "orderId",
    "createdAt",
    "email",
    "name",
    "status",
    "currency",
    "total",
    "refundedTotal",
    "refundable",
    "shippingProvider",
    "trackingCode",
    "items",
]


@dataclass
class StorePage:
    records: list[dict[str, Any]]
    page: int
    total_pages: int


@dataclass
class StoreRefundResult:
    refund: dict[str, Any] | None
    order: dict[str, Any] | None


class OrderStore(Protocol):
    backend_name: str

    def list_orders(self, page: int, page_size: int) -> StorePage:
        ...

    def delete_order(self, order_id: str) -> None:
        ...

    def refund_order(
        self,
        order_id: str,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> StoreRefundResult:
        ...

    def add_shipment(
        self,
        order_id: str,
        provider: str,
        tracking_code: str | None = None,
        estimated_delivery: date | None = None,
    ) -> dict[str, Any] | None:
        ...

    def export_orders(self, fmt: str = "csv") -> bytes:
        ...


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HttpOrderStore:
    """Client for the storefront's order API."""

    backend_name = "http"

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.store_base_url.rstrip("/")
        self.timeout = max(1, self.settings.store_timeout_seconds)
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.store_api_key:
            headers["Authorization"] = f"Bearer {self.settings.store_api_key}"
        return headers

    @staticmethod
    def _order_path(order_id: str, suffix: str = "") -> str:
        return f"/api/orders/{quote(order_id, safe='')}{suffix}"

    def _send(
        self,
        method: str,
        path: str,
        *,
        action: str,
        order_id: str | None = None,
        amount: Decimal | None = None,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers={**self._headers(), **(headers or {})},
                )
        except httpx.TimeoutException as exc:
            raise StoreUnavailableError(
                f"order store timed out during {action}", order_id=order_id, action=action, amount=amount
            ) from exc
        except httpx.TransportError as exc:
            raise StoreUnavailableError(
                f"order store unreachable during {action}: {exc}", order_id=order_id, action=action, amount=amount
            ) from exc

        if response.is_success:
            return response
        detail = self._error_detail(response)
        context = {"order_id": order_id, "action": action, "amount": amount}
        if response.status_code == 404:
            raise OrderNotFoundError(f"order {order_id} not found in store: {detail}", **context)
        if response.status_code == 409 and action == "refund":
            refundable = self._json(response, action).get("refundable")
            raise InvalidAmountError(
                f"store rejected refund: {detail}",
                refundable=Decimal(str(refundable)) if isinstance(refundable, (int, float)) else None,
                **context,
            )
        if response.status_code >= 500:
            raise StoreUnavailableError(f"order store error {response.status_code}: {detail}", **context)
        raise StoreRejectedError(f"order store rejected {action} ({response.status_code}): {detail}", **context)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(payload, dict) and payload.get("error"):
            return str(payload["error"])
        return str(payload)[:200]

    @staticmethod
    def _json(response: httpx.Response, action: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise StoreRejectedError(f"order store returned invalid JSON for {action}", action=action) from exc
        if isinstance(payload, dict):
            return payload
        return {"data": payload}

    def list_orders(self, page: int, page_size: int) -> StorePage:
        response = self._send("GET", "/api/orders", action="list", params={"page": page, "limit": page_size})
        payload = self._json(response, "list")
        records = payload.get("data") or []
        meta = payload.get("meta") or {}
        current = int(meta.get("page") or page)
        total_pages = int(meta.get("pages") or meta.get("totalPages") or current)
        return StorePage(records=[r for r in records if isinstance(r, dict)], page=current, total_pages=total_pages)

    def delete_order(self, order_id: str) -> None:
        self._send("DELETE", self._order_path(order_id), action="delete", order_id=order_id)

    def refund_order(
        self,
        order_id: str,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> StoreRefundResult:
        body: dict[str, Any] = {"amount": float(amount)}
        if reason:
            body["reason"] = reason
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        response = self._send(
            "POST",
            self._order_path(order_id, "/refund"),
            action="refund",
            order_id=order_id,
            amount=amount,
            json_body=body,
            headers=headers,
        )
        data = self._json(response, "refund").get("data") or {}
        refund = data.get("refund")
        order = data.get("order")
        return StoreRefundResult(
            refund=refund if isinstance(refund, dict) else None,
            order=order if isinstance(order, dict) else None,
        )

    def add_shipment(
        self,
        order_id: str,
        provider: str,
        tracking_code: str | None = None,
        estimated_delivery: date | None = None,
    ) -> dict[str, Any] | None:
        body: dict[str, Any] = {"provider": provider}
        if tracking_code:
            body["trackingCode"] = tracking_code
        if estimated_delivery is not None:
            body["estimatedDelivery"] = estimated_delivery.isoformat()
        response = self._send(
            "POST",
            self._order_path(order_id, "/shipment"),
            action="ship",
            order_id=order_id,
            json_body=body,
        )
        payload = self._json(response, "ship")
        order = payload.get("order")
        if order is None and isinstance(payload.get("data"), dict):
            order = payload["data"].get("order")
        return order if isinstance(order, dict) else None

    def export_orders(self, fmt: str = "csv") -> bytes:
        response = self._send("GET", "/api/orders/export", action="export", params={"format": fmt})
        return response.content


class SqlOrderStore:
    """Order documents in a local table, answering the way the storefront API does."""

    backend_name = "sql"

    @staticmethod
    def _load(session: Session, order_id: str, action: str) -> OrderDocumentModel:
        row = session.get(OrderDocumentModel, order_id)
        if row is None:
            raise OrderNotFoundError(f"order {order_id} not found", order_id=order_id, action=action)
        return row

    @staticmethod
    def _parse_time(value: Any) -> datetime:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str) and value:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        else:
            return datetime.now(timezone.utc)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    def put_order(self, document: dict[str, Any]) -> None:
        order = Order.model_validate(document)
        created_at = self._parse_time(document.get("createdAt"))
        with session_scope() as session:
            row = session.get(OrderDocumentModel, order.id)
            if row is None:
                row = OrderDocumentModel(order_id=order.id, created_at=created_at)
                session.add(row)
            row.client_id = order.client_id
            row.status = order.status
            row.updated_at = datetime.now(timezone.utc)
            row.document = copy.deepcopy(document)

    def list_orders(self, page: int, page_size: int) -> StorePage:
        page = max(1, page)
        with session_scope() as session:
            total = session.scalar(select(func.count()).select_from(OrderDocumentModel)) or 0
            rows = session.scalars(
                select(OrderDocumentModel)
                .order_by(OrderDocumentModel.created_at.desc(), OrderDocumentModel.order_id.asc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            records = [copy.deepcopy(row.document) for row in rows]
        return StorePage(records=records, page=page, total_pages=max(1, math.ceil(total / page_size)))

    def delete_order(self, order_id: str) -> None:
        with session_scope() as session:
            session.delete(self._load(session, order_id, "delete"))

    def refund_order(
        self,
        order_id: str,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> StoreRefundResult:
        with session_scope() as session:
            row = self._load(session, order_id, "refund")
            document = copy.deepcopy(row.document)
            metadata = document.get("metadata") if isinstance(document.get("metadata"), dict) else {}
            history = list(metadata.get("refunds") or []) if isinstance(metadata.get("refunds"), list) else []

            if idempotency_key:
                for entry in history:
                    if isinstance(entry, dict) and entry.get("idempotencyKey") == idempotency_key:
                        return StoreRefundResult(refund=entry, order=document)

            order = Order.model_validate(document)
            refundable = refundable_amount(order)
            if amount > refundable + Decimal("0.0001"):
                raise InvalidAmountError(
                    "Refund amount exceeds refundable amount",
                    order_id=order_id,
                    action="refund",
                    amount=amount,
                    refundable=refundable,
                )

            now = _iso_now()
            record = {
                "refundId": f"manual_{uuid4().hex[:24]}",
                "amount": float(amount),
                "currency": (order.currency or "GBP").upper(),
                "reason": reason or None,
                "refundedAt": now,
                "idempotencyKey": idempotency_key,
            }
            new_total = quantize_money(order.refunded_amount + amount)
            history.append(record)
            metadata = {**metadata, "refunds": history, "refundedAmount": float(new_total), "lastRefund": record}
            status = refund_status(order.total, new_total)

            document["metadata"] = metadata
            document["status"] = status
            document["refund"] = {
                "refundId": record["refundId"],
                "amount": record["amount"],
                "reason": record["reason"],
                "refundedAt": now,
            }
            document["updatedAt"] = now
            row.document = document
            row.status = status
            row.updated_at = datetime.now(timezone.utc)
            logger.info("store refund recorded: order_id=%s amount=%s status=%s", order_id, amount, status)
            return StoreRefundResult(refund=record, order=copy.deepcopy(document))

    def add_shipment(
        self,
        order_id: str,
        provider: str,
        tracking_code: str | None = None,
        estimated_delivery: date | None = None,
    ) -> dict[str, Any] | None:
        with session_scope() as session:
            row = self._load(session, order_id, "ship")
            document = copy.deepcopy(row.document)
            now = _iso_now()
            eta = f"{estimated_delivery.isoformat()}T00:00:00Z" if estimated_delivery else None

            metadata = document.get("metadata") if isinstance(document.get("metadata"), dict) else {}
            shipment_history = list(metadata.get("shipmentHistory") or [])
            shipment_history.append(
                {"provider": provider, "trackingCode": tracking_code, "estimatedDelivery": eta, "shippedAt": now}
            )
            document["metadata"] = {**metadata, "shipmentHistory": shipment_history, "lastShippedAt": now}
            document["shipment"] = {
                "provider": provider,
                "trackingCode": tracking_code,
                "shippedAt": now,
                "estimatedDelivery": eta,
            }
            if document.get("status") not in ("refunded", "cancelled"):
                document["status"] = "shipped"
            document["updatedAt"] = now
            row.document = document
            row.status = document.get("status") or row.status
            row.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(document)

    def export_orders(self, fmt: str = "csv") -> bytes:
        if fmt != "csv":
            raise StoreRejectedError(f"unsupported export format: {fmt}", action="export")
        with session_scope() as session:
            documents = [
                row.document
                for row in session.scalars(
                    select(OrderDocumentModel).order_by(OrderDocumentModel.created_at.desc())
                ).all()
            ]

        rows = []
        for document in documents:
            order = Order.model_validate(document)
            address = order.shipping_address or order.billing_address
            name = " ".join(p for p in [address.first_name, address.last_name] if p) if address else ""
            rows.append(
                {
                    "orderId": order.id,
                    "createdAt": document.get("createdAt") or "",
                    "email": (address.email if address else None) or "",
                    "name": name,
                    "status": order.status,
                    "currency": (order.currency or "GBP").upper(),
                    "total": float(order.total),
                    "refundedTotal": float(order.refunded_amount),
                    "refundable": float(refundable_amount(order)),
                    "shippingProvider": order.shipment.provider if order.shipment else "",
                    "trackingCode": (order.shipment.tracking_code if order.shipment else None) or "",
                    "items": " | ".join(f"{item.name} x{item.qty}" for item in order.items),
                }
            )
        frame = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
        return frame.to_csv(index=False).encode("utf-8")


def build_order_store(settings: Settings | None = None) -> OrderStore:
    cfg = settings or get_settings()
    if cfg.order_store_backend == "http":
        return HttpOrderStore(cfg)
    return SqlOrderStore()
