"""
Checkout: turn a verified payment and the caller's cart into an order.

Steps run strictly in order: validate, guard against a reused payment
reference, load the cart, verify the payment, reserve stock line by line,
price, persist, clear the cart. Once the first unit of stock is reserved, any
failure releases every reservation made so far before the error propagates.
"""
import random
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from carts import CartStore, clear, price_breakdown, money
from catalog import ProductStore, first_image
from database import now_utc, is_oid
from errors import (
    DuplicatePayment,
    EmptyCart,
    InsufficientStock,
    InvalidRequest,
    NotFound,
    PaymentNotSuccessful,
    PersistenceFailure,
    ProductUnavailable,
    ShopError,
)
from events import EventPublisher, ADMIN_ROOM, user_room
from orders import OrderStore
from payments import PaymentVerifier

logger = logging.getLogger(__name__)

SHIPPING_FIELDS = ("full_name", "email", "phone", "address", "city", "state", "zip_code")


class ShippingInput(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


class CheckoutRequest(BaseModel):
    reference: Optional[str] = None
    order_id: Optional[str] = None
    shipping_info: Optional[ShippingInput] = None
    order_note: Optional[str] = None
    # Client-side figures; displayed by the frontend, never trusted here.
    items: Optional[List[Dict[str, Any]]] = None
    subtotal: Optional[float] = None
    shipping: Optional[float] = None
    tax: Optional[float] = None
    total: Optional[float] = None


def generate_order_id() -> str:
    millis = int(now_utc().timestamp() * 1000)
    return f"ORD-{millis}-{random.randint(1000, 9999)}"


def validate_request(request: CheckoutRequest) -> Dict[str, str]:
    if not request.reference:
        raise InvalidRequest("Payment reference is required")
    if request.shipping_info is None:
        raise InvalidRequest("Shipping information is required")
    shipping = request.shipping_info.model_dump()
    missing = [f for f in SHIPPING_FIELDS if not (shipping.get(f) or "").strip()]
    if missing:
        raise InvalidRequest("Incomplete shipping information", {"missing": missing})
    if request.order_note and len(request.order_note) > 500:
        raise InvalidRequest("Order note cannot exceed 500 characters")
    shipping["email"] = shipping["email"].strip().lower()
    return shipping


def release(products: ProductStore, reserved: List[Tuple[str, int]]) -> None:
    """Give back stock taken by a checkout that did not complete."""
    for product_id, quantity in reversed(reserved):
        try:
            products.increase_stock(product_id, quantity)
            logger.warning("Released %d of %s after failed checkout", quantity, product_id)
        except (NotFound, PyMongoError):
            logger.exception("Could not release %d of %s", quantity, product_id)


def reserve_items(products: ProductStore, cart: Dict[str, Any],
                  reserved: List[Tuple[str, int]]) -> List[Dict[str, Any]]:
    """Decrement stock for each cart line and snapshot it as an order line.

    `reserved` is appended to as each decrement succeeds so the caller can
    release exactly what was taken.
    """
    order_items = []
    for line in cart["items"]:
        product_id = line["product_id"]
        product = products.find(product_id) if is_oid(product_id) else None
        if product is None or not product.get("is_active", True):
            raise ProductUnavailable(line.get("name") or product_id, product_id)
        if product.get("stock", 0) < line["quantity"]:
            raise InsufficientStock(product["name"], product.get("stock", 0), line["quantity"])

        # conditional at the storage layer; a concurrent checkout may still win here
        try:
            products.decrease_stock(product_id, line["quantity"])
        except NotFound:
            raise ProductUnavailable(line.get("name") or product_id, product_id)
        reserved.append((product_id, line["quantity"]))

        order_items.append({
            "product_id": product_id,
            "name": product["name"],
            "price": money(product["price"]),
            "quantity": line["quantity"],
            "image": first_image(product),
        })
        logger.info("  reserved %d x %s", line["quantity"], product["name"])
    return order_items


def _warn_on_client_totals(request: CheckoutRequest, pricing: Dict[str, float]) -> None:
    for field in ("subtotal", "shipping", "tax", "total"):
        submitted = getattr(request, field)
        if submitted is not None and abs(submitted - pricing[field]) > 0.005:
            logger.warning("Client %s %.2f differs from computed %.2f; using computed",
                           field, submitted, pricing[field])


def _duplicate_error(orders: OrderStore, err: DuplicateKeyError, reference: str) -> ShopError:
    """Tell a reused payment reference apart from a caller-supplied order id that is taken."""
    key_pattern = (err.details or {}).get("keyPattern") or {}
    if "order_id" in key_pattern:
        return InvalidRequest("Order id already in use")
    existing = orders.find_by_reference(reference)
    if existing:
        return DuplicatePayment(reference, existing["order_id"])
    if "payment_info.reference" in key_pattern:
        return DuplicatePayment(reference)
    return InvalidRequest("Order id already in use")


def checkout(database: Database, verifier: PaymentVerifier, publisher: EventPublisher,
             user_id: str, request: CheckoutRequest) -> Dict[str, Any]:
    shipping_info = validate_request(request)
    orders = OrderStore(database)
    products = ProductStore(database)
    carts = CartStore(database)

    existing = orders.find_by_reference(request.reference)
    if existing:
        raise DuplicatePayment(request.reference, existing["order_id"])

    logger.info("Checkout started for user %s", user_id)
    cart = carts.find(user_id)
    if not cart or not cart.get("items"):
        raise EmptyCart()

    payment = verifier.verify(request.reference)
    if not payment.successful:
        logger.warning("Payment %s not successful: %s", request.reference, payment.status)
        raise PaymentNotSuccessful(payment.status)
    logger.info("Payment %s verified", payment.reference)

    reserved: List[Tuple[str, int]] = []
    try:
        order_items = reserve_items(products, cart, reserved)
        pricing = price_breakdown(sum(it["price"] * it["quantity"] for it in order_items))
        _warn_on_client_totals(request, pricing)

        order = orders.insert({
            "order_id": request.order_id or generate_order_id(),
            "user_id": user_id,
            "items": order_items,
            "shipping_info": shipping_info,
            "order_note": request.order_note or "",
            "pricing": pricing,
            "payment_info": {
                "method": "paystack",
                "reference": payment.reference,
                "transaction_id": payment.transaction_id,
                "status": "paid",
                "paid_at": payment.paid_at or now_utc(),
            },
            "status": "processing",
            "tracking_number": None,
            "estimated_delivery": None,
            "delivered_at": None,
            "cancellation_reason": None,
            "notes": [],
        })
    except DuplicateKeyError as e:
        release(products, reserved)
        raise _duplicate_error(orders, e, payment.reference)
    except PyMongoError:
        logger.exception("Persistence error during checkout for user %s", user_id)
        release(products, reserved)
        raise PersistenceFailure("Error creating order")
    except Exception:
        release(products, reserved)
        raise

    carts.save(clear(cart))
    logger.info("Order %s created for user %s, total %.2f", order["order_id"], user_id, pricing["total"])

    payload = {"order_id": order["order_id"], "status": order["status"], "total": pricing["total"]}
    publisher.publish(user_room(user_id), "order-created", payload)
    publisher.publish(ADMIN_ROOM, "order-created", payload)

    return {
        "order_id": order["order_id"],
        "_id": str(order["_id"]),
        "status": order["status"],
        "total": pricing["total"],
        "payment_status": order["payment_info"]["status"],
    }
