"""Error taxonomy for the shop API.

Every error carries a stable machine-readable ``kind`` and the HTTP status
the API answers with. ``extra`` is merged into the response envelope.
"""
from typing import Any, Dict, Optional


class ShopError(Exception):
    """Base exception for all shop errors."""

    kind = "ShopError"
    status_code = 500

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.message = message
        self.extra = extra or {}
        super().__init__(message)


class InvalidRequest(ShopError):
    kind = "InvalidRequest"
    status_code = 400


class Unauthenticated(ShopError):
    kind = "Unauthenticated"
    status_code = 401


class Forbidden(ShopError):
    kind = "Forbidden"
    status_code = 403


class NotFound(ShopError):
    kind = "NotFound"
    status_code = 404


class EmptyCart(ShopError):
    kind = "EmptyCart"
    status_code = 400

    def __init__(self):
        super().__init__("Your cart is empty. Please add items before checkout.")


class ProductUnavailable(ShopError):
    """Raised when a cart line points at a product that is gone or inactive."""

    kind = "ProductUnavailable"
    status_code = 404

    def __init__(self, name: str, product_id: str):
        self.product_id = product_id
        super().__init__(
            f'Product "{name}" is no longer available. Please clear your cart and try again.',
            {"product_id": product_id},
        )


class InsufficientStock(ShopError):
    kind = "InsufficientStock"
    status_code = 400

    def __init__(self, name: str, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(
            f'Insufficient stock for "{name}". Available: {available}',
            {"product": name, "available": available, "requested": requested},
        )


class PaymentVerificationFailed(ShopError):
    kind = "PaymentVerificationFailed"
    status_code = 400


class PaymentNotSuccessful(ShopError):
    kind = "PaymentNotSuccessful"
    status_code = 400

    def __init__(self, gateway_status: Optional[str]):
        self.gateway_status = gateway_status
        super().__init__("Payment was not successful", {"payment_status": gateway_status})


class DuplicatePayment(ShopError):
    """Raised when a payment reference already produced an order."""

    kind = "DuplicatePayment"
    status_code = 409

    def __init__(self, reference: str, order_id: Optional[str] = None):
        self.reference = reference
        super().__init__(
            f"An order already exists for payment reference {reference}",
            {"order_id": order_id} if order_id else {},
        )


class NotCancellable(ShopError):
    kind = "NotCancellable"
    status_code = 400

    def __init__(self, current_status: str, payment_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(
            "This order cannot be cancelled",
            {"current_status": current_status, "payment_status": payment_status},
        )


class InvalidStatus(ShopError):
    kind = "InvalidStatus"
    status_code = 400


class PersistenceFailure(ShopError):
    kind = "PersistenceFailure"
    status_code = 500
