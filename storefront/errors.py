# storefront/errors.py
from typing import List, Optional

from pydantic import BaseModel


class StorefrontError(Exception):
    """Base class for business-rule failures. Never retried automatically."""

    status_code = 400
    code = "error"
    message = "request failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


class CartEmpty(StorefrontError):
    code = "cart_empty"
    message = "cart is empty"


class CurrencyMismatch(StorefrontError):
    code = "currency_mismatch"
    message = "currency mismatch in cart"


class ProductUnavailable(StorefrontError):
    status_code = 409
    code = "product_unavailable"
    message = "product unavailable"


class OutOfStockItem(BaseModel):
    variant_id: str
    requested: int
    available: int


class OutOfStockError(StorefrontError):
    status_code = 409
    code = "out_of_stock"

    def __init__(self, items: List[OutOfStockItem]):
        self.items = items
        if items:
            it = items[0]
            msg = f"out of stock: variant={it.variant_id} requested={it.requested} available={it.available}"
        else:
            msg = "out of stock"
        super().__init__(msg)


class InvalidTransition(StorefrontError):
    status_code = 409
    code = "invalid_transition"
    message = "invalid order status transition"


class NotActionable(StorefrontError):
    code = "not_actionable"
    message = "order not actionable"


class OrderNotFound(StorefrontError):
    status_code = 404
    code = "not_found"
    message = "order not found"


class Forbidden(StorefrontError):
    # Same face as OrderNotFound: non-owners must not learn the order exists
    status_code = 404
    code = "not_found"
    message = "order not found"


class OrderNotPayable(StorefrontError):
    status_code = 409
    code = "order_not_payable"
    message = "order not payable"


class NotRefundable(StorefrontError):
    status_code = 409
    code = "not_refundable"
    message = "order not refundable"


class NoSucceededPayment(StorefrontError):
    status_code = 409
    code = "no_succeeded_payment"
    message = "no succeeded payment found"


class IdempotencyConflict(StorefrontError):
    status_code = 409
    code = "idempotency_conflict"
    message = "Idempotency-Key was used for a different request"


class WebhookVerificationError(StorefrontError):
    code = "invalid_webhook"
    message = "invalid signature or payload"


class WebhookApplyError(StorefrontError):
    status_code = 500
    code = "webhook_apply_failed"
    message = "webhook event apply failed"


class Internal(StorefrontError):
    status_code = 500
    code = "internal"
    message = "internal error"
