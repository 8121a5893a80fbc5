from app.domain.orders.aggregates import OrderStats, compute_stats
from app.domain.orders.errors import (
    AlreadyShippedError,
    InvalidAmountError,
    InvalidRequestError,
    InvalidStateError,
    MutationInProgressError,
    OrderError,
    OrderNotFoundError,
    PageMissing,
    SafetyCapReached,
    StoreRejectedError,
    StoreUnavailableError,
)
from app.domain.orders.ledger import refundable_amount, refunded_amount, validate_refund
from app.domain.orders.models import Order, OrderItem, Refund, Shipment
from app.domain.orders.search import OrderSearchIndex, paginate, search_orders
from app.domain.orders.service import OrderService, get_order_service
from app.domain.orders.sync import SyncResult, sync_orders

__all__ = [
    "AlreadyShippedError",
    "InvalidAmountError",
    "InvalidRequestError",
    "InvalidStateError",
    "MutationInProgressError",
    "Order",
    "OrderError",
    "OrderItem",
    "OrderNotFoundError",
    "OrderSearchIndex",
    "OrderService",
    "OrderStats",
    "PageMissing",
    "Refund",
    "SafetyCapReached",
    "Shipment",
    "StoreRejectedError",
    "StoreUnavailableError",
    "SyncResult",
    "compute_stats",
    "get_order_service",
    "paginate",
    "refundable_amount",
    "refunded_amount",
    "search_orders",
    "sync_orders",
    "validate_refund",
]
