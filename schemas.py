"""
Database Schemas for the shop

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product").
Embedded models (CartItem, OrderItem, ShippingInfo, ...) live inside their
parent document.
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal, get_args
from datetime import datetime

RoleName = Literal["user", "vendor", "admin"]
PaymentStatus = Literal["pending", "paid", "failed", "cancelled"]
PaymentMethod = Literal["paystack", "stripe", "card", "bank_transfer"]
OrderStatus = Literal["processing", "shipped", "delivered", "cancelled", "returned"]

ORDER_STATUSES = get_args(OrderStatus)


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: RoleName = "user"
    phone: Optional[str] = None
    is_active: bool = True


class Session(BaseModel):
    token: str
    user_id: str
    expires_at: datetime


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category: str = Field(..., min_length=1)
    vendor_id: str
    vendor_name: str = "Unknown Vendor"
    images: List[str] = []
    is_active: bool = True


class CartItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []
    total_items: int = 0
    total_price: float = 0.0


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class ShippingInfo(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)


class Pricing(BaseModel):
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(..., ge=0)
    tax: float = Field(..., ge=0)
    total: float = Field(..., ge=0)


class PaymentInfo(BaseModel):
    method: PaymentMethod = "paystack"
    reference: str
    transaction_id: Optional[str] = None
    status: PaymentStatus = "pending"
    paid_at: Optional[datetime] = None


class OrderNote(BaseModel):
    message: str
    created_by: str
    created_at: datetime


class Order(BaseModel):
    order_id: str
    user_id: str
    items: List[OrderItem]
    shipping_info: ShippingInfo
    order_note: str = Field("", max_length=500)
    pricing: Pricing
    payment_info: PaymentInfo
    status: OrderStatus = "processing"
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    notes: List[OrderNote] = []
