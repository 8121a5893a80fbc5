from __future__ import annotations

import copy
import math
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete

import app.persistence.pg as pg
from app.core.config import get_settings
from app.domain.orders.errors import OrderNotFoundError
from app.domain.orders.service import OrderService, get_order_service
from app.persistence.models import Base, OrderDocumentModel
from app.persistence.order_store import StorePage, StoreRefundResult


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.order_store_backend = "sql"
    settings.sync_on_startup = False

    engine = pg.bind_engine(f"sqlite+pysqlite:///{test_db_path}")

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def clean_tables(configure_test_engine):
    with pg.session_scope() as s:
        s.execute(delete(OrderDocumentModel))
    yield


def _oid(n: int) -> str:
    return f"{n:024x}"


def _make_order(
    order_id: str,
    *,
    total: float = 50.0,
    status: str = "paid",
    items: list[dict[str, Any]] | None = None,
    created_at: str = "2025-01-01T10:00:00Z",
    **extra: Any,
) -> dict[str, Any]:
    if items is None:
        items = [{"name": "House Espresso", "qty": 1, "unitPrice": total, "totalPrice": total}]
    document = {
        "_id": order_id,
        "status": status,
        "currency": "GBP",
        "items": items,
        "subtotal": total,
        "shipping": 0,
        "total": total,
        "createdAt": created_at,
        "metadata": {},
    }
    document.update({key: value for key, value in extra.items() if value is not None})
    return document


@pytest.fixture()
def oid() -> Callable[[int], str]:
    return _oid


@pytest.fixture()
def order_doc() -> Callable[..., dict[str, Any]]:
    return _make_order


class FakeOrderStore:
    """In-memory store that answers like the storefront API."""

    backend_name = "fake"

    def __init__(self, documents: list[dict[str, Any]] | None = None):
        self.documents: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None
        self.return_order = True
        self.on_list: Callable[[int], None] | None = None
        self.on_mutation: Callable[[str, str], None] | None = None
        for document in documents or []:
            self.add(document)

    def add(self, document: dict[str, Any]) -> None:
        self.documents[document["_id"]] = copy.deepcopy(document)

    def mutation_calls(self) -> list[tuple]:
        return [call for call in self.calls if call[0] != "list"]

    def _before_mutation(self, action: str, order_id: str) -> None:
        if self.on_mutation is not None:
            self.on_mutation(action, order_id)
        if self.fail_with is not None:
            raise self.fail_with
        if order_id not in self.documents:
            raise OrderNotFoundError(f"order {order_id} not found", order_id=order_id, action=action)

    def list_orders(self, page: int, page_size: int) -> StorePage:
        self.calls.append(("list", page))
        if self.on_list is not None:
            self.on_list(page)
        docs = list(self.documents.values())
        start = (page - 1) * page_size
        return StorePage(
            records=copy.deepcopy(docs[start : start + page_size]),
            page=page,
            total_pages=max(1, math.ceil(len(docs) / page_size)),
        )

    def delete_order(self, order_id: str) -> None:
        self.calls.append(("delete", order_id))
        self._before_mutation("delete", order_id)
        del self.documents[order_id]

    def refund_order(self, order_id, amount, reason=None, idempotency_key=None) -> StoreRefundResult:
        self.calls.append(("refund", order_id, amount, idempotency_key))
        self._before_mutation("refund", order_id)
        document = self.documents[order_id]
        metadata = document.setdefault("metadata", {})
        refunded = Decimal(str(metadata.get("refundedAmount", 0))) + amount
        metadata["refundedAmount"] = float(refunded)
        document["status"] = "refunded" if refunded >= Decimal(str(document["total"])) else "partially_refunded"
        record = {"refundId": f"re_{len(self.calls)}", "amount": float(amount), "reason": reason}
        document["refund"] = record
        return StoreRefundResult(refund=record, order=copy.deepcopy(document) if self.return_order else None)

    def add_shipment(self, order_id, provider, tracking_code=None, estimated_delivery=None):
        self.calls.append(("ship", order_id, provider, tracking_code))
        self._before_mutation("ship", order_id)
        document = self.documents[order_id]
        document["shipment"] = {
            "provider": provider,
            "trackingCode": tracking_code,
            "shippedAt": "2025-02-01T09:00:00Z",
            "estimatedDelivery": f"{estimated_delivery.isoformat()}T00:00:00Z" if estimated_delivery else None,
        }
        document["status"] = "shipped"
        return copy.deepcopy(document) if self.return_order else None

    def export_orders(self, fmt: str = "csv") -> bytes:
        self.calls.append(("export", fmt))
        return ("orderId,status\n" + "".join(f"{key},{doc['status']}\n" for key, doc in self.documents.items())).encode()


@pytest.fixture()
def fake_store() -> FakeOrderStore:
    return FakeOrderStore()


@pytest.fixture()
def service(fake_store: FakeOrderStore) -> OrderService:
    return OrderService(fake_store, get_settings())


@pytest.fixture()
def client(configure_test_engine, service: OrderService):
    from app.main import app

    app.dependency_overrides[get_order_service] = lambda: service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
