from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.routes_orders import router as orders_router
from app.core.config import get_settings
from app.core.logging import configure_logging
from app.domain.orders.errors import OrderError, StoreUnavailableError
from app.domain.orders.service import OrderService, get_order_service
from app.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    if settings.order_store_backend == "sql":
        init_db()
    if settings.sync_on_startup:
        try:
            result = get_order_service().reload()
        except StoreUnavailableError as exc:
            logger.warning("initial order sync failed, serving an empty set: %s", exc)
            return
        logger.info(
            "initial order sync: loaded=%s cap_reached=%s",
            len(result.orders),
            result.cap_reached,
        )


@app.exception_handler(OrderError)
async def order_error_handler(_: Request, exc: OrderError):
    if exc.http_status >= 500:
        logger.warning("order %s failed: %s", exc.action or "operation", exc)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.get("/healthz")
def healthz(service: OrderService = Depends(get_order_service)) -> dict:
    snapshot = service.snapshot
    return {"status": "ok", "orders": len(snapshot.orders), "version": snapshot.version, "indexed": snapshot.indexed}


app.include_router(orders_router)
