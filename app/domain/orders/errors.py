from __future__ import annotations

from decimal import Decimal
from typing import Any


class OrderError(Exception):
    code = "order_error"
    http_status = 400
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        order_id: str | None = None,
        action: str | None = None,
        amount: Decimal | None = None,
    ):
        super().__init__(message)
        self.order_id = order_id
        self.action = action
        self.amount = amount

    def context(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "action": self.action,
            "amount": float(self.amount) if self.amount is not None else None,
            "retryable": self.retryable,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"detail": str(self), "error": self.code, **self.context()}


class InvalidRequestError(OrderError, ValueError):
    code = "invalid_request"
    http_status = 400


class InvalidAmountError(OrderError, ValueError):
    code = "invalid_amount"
    http_status = 400

    def __init__(self, message: str, *, refundable: Decimal | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.refundable = refundable

    def context(self) -> dict[str, Any]:
        data = super().context()
        data["refundable"] = float(self.refundable) if self.refundable is not None else None
        return data


class InvalidStateError(OrderError):
    code = "invalid_state"
    http_status = 409

    def __init__(self, message: str, *, status: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status

    def context(self) -> dict[str, Any]:
        data = super().context()
        data["status"] = self.status
        return data


class AlreadyShippedError(OrderError):
    code = "already_shipped"
    http_status = 409


class OrderNotFoundError(OrderError, LookupError):
    code = "not_found"
    http_status = 404


class MutationInProgressError(OrderError):
    code = "mutation_in_progress"
    http_status = 409
    retryable = True


class StoreUnavailableError(OrderError):
    code = "store_unavailable"
    http_status = 503
    retryable = True

    def __init__(self, message: str, *, idempotency_key: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.idempotency_key = idempotency_key

    def context(self) -> dict[str, Any]:
        data = super().context()
        if self.idempotency_key is not None:
            data["idempotency_key"] = self.idempotency_key
        return data


class StoreRejectedError(OrderError):
    code = "store_rejected"
    http_status = 502


class SafetyCapReached(UserWarning):
    """Sync stopped at the record cap; the loaded set may be incomplete."""

    def __init__(self, cap: int, loaded: int):
        super().__init__(f"stopped after {loaded} records (cap={cap}); order set may be incomplete")
        self.cap = cap
        self.loaded = loaded


class PageMissing(UserWarning):
    """A list page answered not found; its records are absent from the sync."""

    def __init__(self, page: int, total_pages: int):
        super().__init__(f"page {page} was not found; order set is incomplete")
        self.page = page
        self.total_pages = total_pages
