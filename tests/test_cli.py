from __future__ import annotations

import json
import sys

from app.cli import main
from app.core.config import get_settings
from app.persistence.order_store import SqlOrderStore


def _run(monkeypatch, capsys, *argv: str) -> tuple[int, dict]:
    monkeypatch.setattr(sys, "argv", ["order-ledger", *argv])
    code = main()
    return code, json.loads(capsys.readouterr().out)


def test_refund_then_stats(monkeypatch, capsys, clean_tables, order_doc, oid):
    SqlOrderStore().put_order(order_doc(oid(1), total=40))

    code, refunded = _run(monkeypatch, capsys, "refund", oid(1), "15", "--reason", "damaged")
    assert code == 0
    assert refunded["status"] == "partially_refunded"
    assert refunded["refundable"] == 25.0

    code, stats = _run(monkeypatch, capsys, "stats")
    assert code == 0
    assert stats["net_revenue"] == 25.0


def test_errors_are_printed_with_code(monkeypatch, capsys, clean_tables, order_doc, oid):
    SqlOrderStore().put_order(order_doc(oid(1), status="pending"))

    code, payload = _run(monkeypatch, capsys, "ship", oid(1), "dpd")

    assert code == 1
    assert payload["error"] == "invalid_state"
    assert payload["order_id"] == oid(1)


def test_search_prints_a_page(monkeypatch, capsys, clean_tables, order_doc, oid):
    SqlOrderStore().put_order(order_doc(oid(1)))
    SqlOrderStore().put_order(
        order_doc(oid(2), items=[{"name": "Kenya AA", "qty": 2, "unitPrice": 8, "totalPrice": 16}], total=16)
    )

    code, page = _run(monkeypatch, capsys, "search", "kenya", "--field", "item")

    assert code == 0
    assert [order["id"] for order in page["orders"]] == [oid(2)]


def test_refund_retry_with_same_key_is_counted_once(monkeypatch, capsys, clean_tables, order_doc, oid):
    SqlOrderStore().put_order(order_doc(oid(1), total=40))

    _run(monkeypatch, capsys, "refund", oid(1), "10", "--idempotency-key", "till-7")
    code, retried = _run(monkeypatch, capsys, "refund", oid(1), "10", "--idempotency-key", "till-7")

    assert code == 0
    assert retried["refunded"] == 10.0
    assert retried["refundable"] == 30.0


def test_import_ndjson_then_search(monkeypatch, capsys, tmp_path, clean_tables, order_doc, oid):
    kenya = order_doc(oid(2), items=[{"name": "Kenya AA", "qty": 2, "unitPrice": 8, "totalPrice": 16}], total=16)
    kenya["_id"] = {"$oid": oid(2)}
    broken = order_doc(oid(3), total=-5)
    export = tmp_path / "orders.ndjson"
    export.write_text("\n".join(json.dumps(doc) for doc in [order_doc(oid(1)), kenya, broken]) + "\n")

    code, report = _run(monkeypatch, capsys, "import", str(export))
    assert code == 0
    assert report["imported"] == 2
    assert report["skipped"] == 1

    code, page = _run(monkeypatch, capsys, "search", "kenya", "--field", "item")
    assert [order["id"] for order in page["orders"]] == [oid(2)]


def test_import_accepts_a_json_page(monkeypatch, capsys, tmp_path, clean_tables, order_doc, oid):
    export = tmp_path / "orders.json"
    export.write_text(json.dumps({"data": [order_doc(oid(1), total=30), order_doc(oid(2), total=20)]}))

    code, report = _run(monkeypatch, capsys, "import", str(export))
    assert code == 0
    assert report["imported"] == 2

    code, stats = _run(monkeypatch, capsys, "stats")
    assert stats["order_count"] == 2
    assert stats["net_revenue"] == 50.0


def test_import_needs_the_sql_backend(monkeypatch, capsys, tmp_path, order_doc, oid):
    export = tmp_path / "orders.json"
    export.write_text(json.dumps([order_doc(oid(1))]))
    monkeypatch.setattr(get_settings(), "order_store_backend", "http")

    code, payload = _run(monkeypatch, capsys, "import", str(export))

    assert code == 1
    assert payload["error"] == "invalid_request"
    assert payload["action"] == "import"
