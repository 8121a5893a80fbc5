from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Header, Query, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.api.utils import now_utc
from app.domain.orders.ledger import refundable_amount
from app.domain.orders.models import Order, ShipmentProvider
from app.domain.orders.search import ResultPage, SearchField, StatusFilter
from app.domain.orders.service import OrderService, get_order_service

router = APIRouter(tags=["orders"])


class RefundRequest(BaseModel):
    amount: Decimal
    reason: str | None = Field(default=None, max_length=500)


class ShipmentRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider: ShipmentProvider
    tracking_code: str | None = Field(default=None, max_length=128)
    estimated_delivery: date | None = None


def _order_payload(order: Order) -> dict:
    payload = order.model_dump(mode="json", by_alias=True)
    payload["refundableAmount"] = float(refundable_amount(order))
    return payload


def _page_payload(result: ResultPage, service: OrderService) -> dict:
    snapshot = service.snapshot
    return {
        "page": result.page,
        "per_page": result.per_page,
        "total_results": result.total_results,
        "total_pages": result.total_pages,
        "version": snapshot.version,
        "indexed": snapshot.indexed,
        "orders": [_order_payload(order) for order in result.items],
    }


@router.get("/orders")
def list_orders(
    q: str = Query(default="", max_length=200),
    field: SearchField = Query(default="all"),
    status: StatusFilter = Query(default="all"),
    page: int = Query(default=1, ge=1),
    per_page: int | None = Query(default=None, ge=1, le=200),
    service: OrderService = Depends(get_order_service),
):
    result = service.query(q, field=field, status=status, page=page, per_page=per_page)
    return _page_payload(result, service)


@router.get("/orders/stats")
def order_stats(service: OrderService = Depends(get_order_service)):
    return {"version": service.snapshot.version, "stats": service.stats().to_dict()}


@router.post("/orders/sync")
def sync_orders(service: OrderService = Depends(get_order_service)):
    result = service.reload()
    return {"version": service.snapshot.version, "sync": result.summary()}


@router.get("/orders/export")
def export_orders(
    format: Literal["csv"] = Query(default="csv"),
    service: OrderService = Depends(get_order_service),
):
    content = service.export(format)
    filename = f"orders-{now_utc().date().isoformat()}.{format}"
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/orders/{order_id}")
def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
    return _order_payload(service.get(order_id))


@router.post("/orders/{order_id}/refund")
def refund_order(
    order_id: str,
    body: RefundRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=200),
    service: OrderService = Depends(get_order_service),
):
    order = service.refund(order_id, body.amount, reason=body.reason, idempotency_key=idempotency_key)
    return {"order": _order_payload(order)}


@router.post("/orders/{order_id}/shipment")
def add_shipment(order_id: str, body: ShipmentRequest, service: OrderService = Depends(get_order_service)):
    order = service.assign_shipment(
        order_id,
        body.provider,
        tracking_code=body.tracking_code,
        estimated_delivery=body.estimated_delivery,
    )
    return {"order": _order_payload(order)}


@router.delete("/orders/{order_id}")
def delete_order(order_id: str, service: OrderService = Depends(get_order_service)):
    service.delete(order_id)
    return {"deleted": order_id}


@router.get("/clients/{client_id}/orders")
def client_orders(
    client_id: str,
    page: int = Query(default=1, ge=1),
    service: OrderService = Depends(get_order_service),
):
    result = service.orders_for_client(client_id, page=page)
    return _page_payload(result, service)
