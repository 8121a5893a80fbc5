from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

import uvicorn

from app.api.utils import isoformat_z, now_utc
from app.core.config import get_settings
from app.core.logging import configure_logging
from app.domain.orders.errors import InvalidRequestError, OrderError
from app.domain.orders.ledger import refundable_amount
from app.domain.orders.models import SHIPMENT_PROVIDERS, Order
from app.domain.orders.search import FIELD_KEYS
from app.domain.orders.service import OrderService
from app.persistence.order_store import SqlOrderStore, build_order_store
from app.persistence.pg import init_db

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Order ledger CLI")
    parser.add_argument("--log-level", default=None)
    top = parser.add_subparsers(dest="command", required=True)

    top.add_parser("serve", help="Run the HTTP API")
    top.add_parser("sync", help="Load the full order set and report what was fetched")
    top.add_parser("stats", help="Print net revenue and status counts")

    search = top.add_parser("search", help="Search loaded orders")
    search.add_argument("query", nargs="?", default="")
    search.add_argument("--field", choices=sorted(FIELD_KEYS), default="all")
    search.add_argument("--status", default="all")
    search.add_argument("--page", type=int, default=1)
    search.add_argument("--per-page", type=int, default=None)

    refund = top.add_parser("refund", help="Refund part or all of an order")
    refund.add_argument("order_id")
    refund.add_argument("amount")
    refund.add_argument("--reason", default=None)
    refund.add_argument("--idempotency-key", default=None, help="Reuse the key of a refund that timed out")

    ship = top.add_parser("ship", help="Attach a shipment to an order")
    ship.add_argument("order_id")
    ship.add_argument("provider", choices=SHIPMENT_PROVIDERS)
    ship.add_argument("--tracking-code", default=None)
    ship.add_argument("--estimated-delivery", default=None, help="YYYY-MM-DD")

    export = top.add_parser("export", help="Download the order export")
    export.add_argument("--format", default="csv")
    export.add_argument("--output", default=None)

    load = top.add_parser("import", help="Load a JSON or NDJSON order export into the sql store")
    load.add_argument("path", type=Path)

    return parser


def _summary(order: Order) -> dict:
    return {
        "id": order.id,
        "status": order.status,
        "total": float(order.total),
        "refunded": float(order.refunded_amount),
        "refundable": float(refundable_amount(order)),
        "items": [item.name for item in order.items],
        "shipment": order.shipment.model_dump(mode="json", by_alias=True) if order.shipment else None,
    }


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _read_records(path: Path) -> list[dict[str, Any]]:
    """Records from a JSON array, a ``{"data": [...]}`` page, or one JSON object per line."""
    text = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return [json.loads(line) for line in text.splitlines() if line.strip()]
    if isinstance(payload, dict):
        payload = payload.get("data", [payload])
    if not isinstance(payload, list):
        raise InvalidRequestError(f"{path} does not hold a list of orders", action="import")
    return payload


def _import_orders(path: Path, service: OrderService) -> dict:
    if not isinstance(service.store, SqlOrderStore):
        raise InvalidRequestError("import needs the sql order store backend", action="import")
    try:
        records = _read_records(path)
    except (OSError, ValueError) as exc:
        raise InvalidRequestError(f"cannot read {path}: {exc}", action="import") from exc

    imported = skipped = 0
    for record in records:
        if not isinstance(record, dict):
            skipped += 1
            continue
        try:
            service.store.put_order(record)
        except ValueError as exc:
            skipped += 1
            logger.warning("skipping malformed order record id=%s: %s", record.get("_id") or record.get("id"), exc)
            continue
        imported += 1
    logger.info("imported %s orders from %s, skipped %s", imported, path, skipped)
    return {"path": str(path), "imported": imported, "skipped": skipped}


def _run(args: argparse.Namespace, service: OrderService) -> int:
    if args.command == "export":
        content = service.export(args.format)
        output = Path(args.output or f"orders-{now_utc().date().isoformat()}.{args.format}")
        output.write_bytes(content)
        _print({"written": str(output), "bytes": len(content)})
        return 0
    if args.command == "import":
        _print(_import_orders(args.path, service))
        return 0

    result = service.reload()
    if args.command == "sync":
        _print({"synced_at": isoformat_z(now_utc()), **result.summary()})
        return 0 if result.complete else 1
    if args.command == "stats":
        _print(service.stats().to_dict())
        return 0
    if args.command == "search":
        page = service.query(args.query, field=args.field, status=args.status, page=args.page, per_page=args.per_page)
        _print(
            {
                "page": page.page,
                "total_pages": page.total_pages,
                "total_results": page.total_results,
                "orders": [_summary(order) for order in page.items],
            }
        )
        return 0
    if args.command == "refund":
        order = service.refund(args.order_id, args.amount, reason=args.reason, idempotency_key=args.idempotency_key)
        _print(_summary(order))
        return 0
    if args.command == "ship":
        order = service.assign_shipment(
            args.order_id,
            args.provider,
            tracking_code=args.tracking_code,
            estimated_delivery=args.estimated_delivery,
        )
        _print(_summary(order))
        return 0
    return 2


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging(args.log_level)

    settings = get_settings()
    if args.command == "serve":
        uvicorn.run("app.main:app", host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
        return 0
    if settings.order_store_backend == "sql":
        init_db()
    service = OrderService(build_order_store(settings), settings)
    try:
        return _run(args, service)
    except OrderError as exc:
        _print(exc.to_dict())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
