import os
import math
import logging
from datetime import datetime
from typing import List, Optional, Dict, Any, Literal

from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
import orders as order_ops
from auth import (
    Principal,
    Role,
    authenticate,
    bearer_token,
    current_principal,
    issue_token,
    register_user,
    require_admin,
    require_vendor,
    revoke_token,
)
from carts import CartStore, add_item, clear, empty_cart, remove_item, summary, update_quantity
from catalog import ProductStore, is_in_stock
from checkout import CheckoutRequest, checkout
from database import get_db, serialize
from errors import Forbidden, InsufficientStock, InvalidRequest, NotFound, ShopError
from events import EventPublisher, get_publisher
from orders import OrderStore, days_until_delivery
from payments import get_payment_verifier

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Shop API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if database.db is not None:
    database.ensure_indexes(database.db)

# ---------------------- Envelope & Errors ----------------------

def ok(data: Any = None, message: Optional[str] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def paginate(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}


@app.exception_handler(ShopError)
def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "error": exc.kind, **exc.extra},
    )


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Invalid request data", "error": InvalidRequest.kind, "errors": fields},
    )


@app.exception_handler(PyMongoError)
def persistence_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Persistence error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal storage error", "error": "PersistenceFailure"},
    )

# ---------------------- Models ----------------------

class RegisterBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["user", "vendor", "admin"] = "user"
    phone: Optional[str] = None

class LoginBody(BaseModel):
    email: EmailStr
    password: str

class ProductBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category: str = Field(..., min_length=1)
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    images: List[str] = []

class ProductUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    is_active: Optional[bool] = None

class StockBody(BaseModel):
    stock: int = Field(..., ge=0)
    operation: Literal["set", "increment", "decrement"] = "set"

class CartAddBody(BaseModel):
    product_id: str
    quantity: int = 1

class CartUpdateBody(BaseModel):
    quantity: int

class InitiatePaymentBody(BaseModel):
    email: EmailStr
    amount: float = Field(..., gt=0)
    reference: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = {}

class CancelBody(BaseModel):
    reason: Optional[str] = None

class StatusBody(BaseModel):
    status: str

class DeliveryBody(BaseModel):
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

class NoteBody(BaseModel):
    message: Optional[str] = None

# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Shop API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()
            response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    response["paystack_key"] = "✅ Set" if os.getenv("PAYSTACK_SECRET_KEY") else "❌ Not Set"
    return response

@app.get("/schema")
def get_schema():
    import schemas as s
    def model_fields(m):
        return {k: str(v.annotation) for k, v in getattr(m, "model_fields", {}).items()}
    return {
        "models": {
            "user": model_fields(s.User),
            "product": model_fields(s.Product),
            "cart": model_fields(s.Cart),
            "order": model_fields(s.Order),
        }
    }

# ---------------------- Auth ----------------------

def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize(user)
    out.pop("password_hash", None)
    return out

@app.post("/auth/register", status_code=201)
def register(body: RegisterBody, x_admin_key: Optional[str] = Header(None), db: Database = Depends(get_db)):
    user = register_user(db, body.name, body.email, body.password, Role(body.role), body.phone, x_admin_key)
    token = issue_token(db, str(user["_id"]))
    return ok({"token": token, "user": public_user(user)}, "User registered successfully")

@app.post("/auth/login")
def login(body: LoginBody, db: Database = Depends(get_db)):
    user = authenticate(db, body.email, body.password)
    token = issue_token(db, str(user["_id"]))
    return ok({"token": token, "user": public_user(user)}, "Login successful")

@app.get("/auth/me")
def me(principal: Principal = Depends(current_principal)):
    return ok({"id": principal.user_id, "role": principal.role.value, "name": principal.name, "email": principal.email})

@app.post("/auth/logout")
def logout(token: str = Depends(bearer_token), db: Database = Depends(get_db)):
    revoke_token(db, token)
    return ok(message="Logged out")

# ---------------------- Products ----------------------

def _ensure_owner(principal: Principal, product: Dict[str, Any]) -> None:
    if not principal.is_admin and product.get("vendor_id") != principal.user_id:
        raise Forbidden("Not authorized to modify this product")

@app.get("/products")
def list_products(category: Optional[str] = None, vendor_id: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  search: Optional[str] = None, is_active: Optional[bool] = None,
                  page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                  sort_by: str = "created_at", order: Literal["asc", "desc"] = "desc",
                  db: Database = Depends(get_db)):
    items, total = ProductStore(db).query(category, vendor_id, min_price, max_price, search, is_active,
                                          page, limit, sort_by, order)
    return ok([serialize(p) for p in items], pagination=paginate(page, limit, total))

@app.get("/products/vendor/{vendor_id}")
def products_by_vendor(vendor_id: str, db: Database = Depends(get_db)):
    items = [serialize(p) for p in ProductStore(db).find_by_vendor(vendor_id)]
    return ok(items, count=len(items))

@app.get("/products/search/{term}")
def search_products(term: str, db: Database = Depends(get_db)):
    items = [serialize(p) for p in ProductStore(db).search_by_text(term)]
    return ok(items, count=len(items))

@app.get("/products/category/{category}")
def products_by_category(category: str, db: Database = Depends(get_db)):
    items = [serialize(p) for p in ProductStore(db).find_by_category(category)]
    return ok(items, count=len(items))

@app.get("/products/price/{min_price}/{max_price}")
def products_by_price(min_price: float, max_price: float, db: Database = Depends(get_db)):
    items = [serialize(p) for p in ProductStore(db).find_by_price_range(min_price, max_price)]
    return ok(items, count=len(items))

@app.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return ok(serialize(ProductStore(db).get(product_id)))

@app.post("/products", status_code=201)
def create_product(body: ProductBody, principal: Principal = Depends(require_vendor), db: Database = Depends(get_db)):
    vendor_id = body.vendor_id or principal.user_id
    if vendor_id != principal.user_id and not principal.is_admin:
        raise Forbidden("Not authorized to create product for this vendor")
    doc = body.model_dump()
    doc.update({
        "vendor_id": vendor_id,
        "vendor_name": body.vendor_name or principal.name or "Unknown Vendor",
        "is_active": True,
    })
    product = ProductStore(db).create(doc)
    return ok(serialize(product), "Product created successfully")

@app.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, principal: Principal = Depends(require_vendor),
                   db: Database = Depends(get_db)):
    store = ProductStore(db)
    _ensure_owner(principal, store.get(product_id))
    product = store.update(product_id, body.model_dump(exclude_none=True))
    return ok(serialize(product), "Product updated successfully")

@app.patch("/products/{product_id}/stock")
def update_stock(product_id: str, body: StockBody, principal: Principal = Depends(require_vendor),
                 db: Database = Depends(get_db)):
    store = ProductStore(db)
    _ensure_owner(principal, store.get(product_id))
    if body.operation == "increment":
        product = store.increase_stock(product_id, body.stock)
    elif body.operation == "decrement":
        product = store.decrease_stock(product_id, body.stock)
    else:
        product = store.set_stock(product_id, body.stock)
    return ok(serialize(product), "Stock updated successfully")

@app.delete("/products/{product_id}")
def delete_product(product_id: str, permanent: bool = False, principal: Principal = Depends(require_admin),
                   db: Database = Depends(get_db)):
    store = ProductStore(db)
    if permanent:
        return ok(serialize(store.delete(product_id)), "Product permanently deleted")
    return ok(serialize(store.deactivate(product_id)), "Product deactivated")

# ---------------------- Cart ----------------------

def cart_view(cart: Dict[str, Any]) -> Dict[str, Any]:
    return {"_id": str(cart["_id"]) if cart.get("_id") else None, "user_id": cart["user_id"], **summary(cart)}

@app.get("/cart")
def get_cart(principal: Principal = Depends(current_principal), db: Database = Depends(get_db)):
    cart = CartStore(db).get_or_create(principal.user_id)
    return ok(cart_view(cart), "Cart retrieved successfully")

@app.post("/cart/add")
def add_to_cart(body: CartAddBody, principal: Principal = Depends(current_principal), db: Database = Depends(get_db)):
    if body.quantity <= 0:
        raise InvalidRequest("Quantity must be greater than 0")
    product = ProductStore(db).get(body.product_id)
    if not product.get("is_active", True):
        raise NotFound("Product not found")
    carts = CartStore(db)
    cart = carts.get_or_create(principal.user_id)
    in_cart = sum(it["quantity"] for it in cart["items"] if it["product_id"] == body.product_id)
    if not is_in_stock(product, in_cart + body.quantity):
        raise InsufficientStock(product["name"], product.get("stock", 0), in_cart + body.quantity)
    cart = carts.save(add_item(cart, product, body.quantity))
    return ok(cart_view(cart), "Item added to cart successfully")

@app.patch("/cart/update/{product_id}")
def update_cart_item(product_id: str, body: CartUpdateBody, principal: Principal = Depends(current_principal),
                     db: Database = Depends(get_db)):
    carts = CartStore(db)
    cart = carts.find(principal.user_id)
    if not cart:
        raise NotFound("Cart not found")
    cart = carts.save(update_quantity(cart, product_id, body.quantity))
    return ok(cart_view(cart), "Cart updated successfully")

@app.delete("/cart/remove/{product_id}")
def remove_from_cart(product_id: str, principal: Principal = Depends(current_principal), db: Database = Depends(get_db)):
    carts = CartStore(db)
    cart = carts.find(principal.user_id)
    if not cart:
        raise NotFound("Cart not found")
    cart = carts.save(remove_item(cart, product_id))
    return ok(cart_view(cart), "Item removed from cart")

@app.delete("/cart/clear")
def clear_cart(principal: Principal = Depends(current_principal), db: Database = Depends(get_db)):
    carts = CartStore(db)
    cart = carts.save(clear(carts.get_or_create(principal.user_id)))
    return ok(cart_view(cart), "Cart cleared successfully")

@app.get("/cart/summary")
def cart_summary(principal: Principal = Depends(current_principal), db: Database = Depends(get_db)):
    cart = CartStore(db).find(principal.user_id) or empty_cart(principal.user_id)
    return ok(summary(cart))

@app.get("/cart/admin/all")
def admin_all_carts(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                    principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    carts, total = CartStore(db).list_all(page, limit)
    return ok([cart_view(c) for c in carts], pagination=paginate(page, limit, total))

@app.get("/cart/admin/{user_id}")
def admin_user_cart(user_id: str, principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    cart = CartStore(db).find(user_id)
    if not cart:
        raise NotFound("Cart not found")
    return ok(cart_view(cart))

@app.delete("/cart/admin/{user_id}")
def admin_delete_cart(user_id: str, principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    if not CartStore(db).delete(user_id):
        raise NotFound("Cart not found")
    return ok(message="Cart deleted")

# ---------------------- Checkout & Payments (Paystack) ----------------------

@app.post("/orders/initiate-payment")
def initiate_payment(body: InitiatePaymentBody, principal: Principal = Depends(current_principal),
                     gateway=Depends(get_payment_verifier)):
    metadata = {"user_id": principal.user_id, **body.metadata}
    data = gateway.initialize(body.email, body.amount, body.reference, metadata)
    return ok(data, "Payment initiated successfully")

@app.post("/orders/verify-payment", status_code=201)
def verify_payment(body: CheckoutRequest, principal: Principal = Depends(current_principal),
                   db: Database = Depends(get_db), verifier=Depends(get_payment_verifier),
                   publisher: EventPublisher = Depends(get_publisher)):
    result = checkout(db, verifier, publisher, principal.user_id, body)
    return ok(result, "Order created successfully")

# ---------------------- Orders ----------------------

@app.get("/orders")
def list_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), status: Optional[str] = None,
                principal: Principal = Depends(current_principal), db: Database = Depends(get_db)):
    items, total = OrderStore(db).list(principal.user_id, status, page, limit)
    return ok([serialize(o) for o in items], pagination=paginate(page, limit, total))

@app.get("/orders/admin/all")
def admin_list_orders(page: int = Query(1, ge=1), limit: int = Query(100, ge=1, le=500), status: Optional[str] = None,
                      principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    items, total = OrderStore(db).list(None, status, page, limit)
    return ok([serialize(o) for o in items], pagination=paginate(page, limit, total))

@app.get("/orders/stats/user")
def user_order_stats(principal: Principal = Depends(current_principal), db: Database = Depends(get_db)):
    return ok(OrderStore(db).stats(principal.user_id), "Order statistics retrieved")

@app.get("/orders/stats/admin")
def admin_order_stats(principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(OrderStore(db).stats(), "All order statistics")

@app.get("/orders/{order_id}")
def get_order(order_id: str, principal: Principal = Depends(current_principal), db: Database = Depends(get_db)):
    order = OrderStore(db).get(order_id, user_id=None if principal.is_admin else principal.user_id)
    return ok({**serialize(order), "days_until_delivery": days_until_delivery(order)})

@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: Optional[CancelBody] = None, principal: Principal = Depends(current_principal),
                 db: Database = Depends(get_db), publisher: EventPublisher = Depends(get_publisher)):
    reason = body.reason if body else None
    order = order_ops.cancel_order(db, publisher, order_id, reason,
                                   user_id=None if principal.is_admin else principal.user_id)
    return ok(serialize(order), "Order cancelled successfully")

@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusBody, principal: Principal = Depends(require_admin),
                        db: Database = Depends(get_db), publisher: EventPublisher = Depends(get_publisher)):
    order = order_ops.update_status(db, publisher, order_id, body.status)
    return ok(serialize(order), "Order status updated successfully")

@app.patch("/orders/{order_id}/delivery")
def update_order_delivery(order_id: str, body: DeliveryBody, principal: Principal = Depends(require_admin),
                          db: Database = Depends(get_db), publisher: EventPublisher = Depends(get_publisher)):
    order = order_ops.update_delivery(db, publisher, order_id, body.tracking_number,
                                      body.estimated_delivery, body.delivered_at)
    return ok(serialize(order), "Delivery information updated successfully")

@app.post("/orders/{order_id}/notes")
def add_order_note(order_id: str, body: NoteBody, principal: Principal = Depends(require_admin),
                   db: Database = Depends(get_db)):
    order = order_ops.add_note(db, order_id, body.message or "", principal.user_id)
    return ok(serialize(order), "Note added successfully")

# ---------------------- Seed Demo Data ----------------------

@app.post("/admin/seed")
def seed(principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    store = ProductStore(db)
    if db["product"].count_documents({}) > 0:
        return ok(message="Already seeded")
    categories = ["electronics", "fashion", "home"]
    for i in range(1, 13):
        store.create({
            "name": f"Demo Product {i}",
            "description": "A modern, minimalist product with premium build.",
            "price": float(20 + i * 7),
            "stock": 50,
            "category": categories[i % len(categories)],
            "vendor_id": principal.user_id,
            "vendor_name": principal.name or "Demo Vendor",
            "images": [f"https://picsum.photos/seed/product{i}/600/400"],
            "is_active": True,
        })
    return ok(message="Seeded 12 products")

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
