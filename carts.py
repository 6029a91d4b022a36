"""Shopping carts.

Cart edits are pure functions over the cart document: they return a new cart
and never write. `CartStore.save` is the one place a cart is persisted.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from catalog import first_image
from database import now_utc
from errors import InvalidRequest, NotFound

logger = logging.getLogger(__name__)

FREE_SHIPPING_THRESHOLD = 100
FLAT_SHIPPING = 10
TAX_RATE = 0.10


def money(value: float) -> float:
    return round(float(value), 2)


def price_breakdown(subtotal: float) -> Dict[str, float]:
    """Shipping and tax policy shared by cart summaries and checkout."""
    subtotal = money(subtotal)
    shipping = 0 if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING
    tax = money(subtotal * TAX_RATE)
    return {
        "subtotal": subtotal,
        "shipping": money(shipping),
        "tax": tax,
        "total": money(subtotal + shipping + tax),
    }


def empty_cart(user_id: str) -> Dict[str, Any]:
    return {"user_id": user_id, "items": [], "total_items": 0, "total_price": 0.0}


def recalculate(cart: Dict[str, Any]) -> Dict[str, Any]:
    items = cart.get("items", [])
    return {
        **cart,
        "total_items": sum(it["quantity"] for it in items),
        "total_price": money(sum(it["price"] * it["quantity"] for it in items)),
    }


def _find_line(items: List[Dict[str, Any]], product_id: str) -> Optional[Dict[str, Any]]:
    for it in items:
        if it["product_id"] == product_id:
            return it
    return None


def add_item(cart: Dict[str, Any], product: Dict[str, Any], quantity: int = 1) -> Dict[str, Any]:
    if quantity <= 0:
        raise InvalidRequest("Quantity must be greater than 0")
    product_id = str(product["_id"])
    items = [dict(it) for it in cart.get("items", [])]
    line = _find_line(items, product_id)
    if line:
        line["quantity"] += quantity
    else:
        items.append({
            "product_id": product_id,
            "name": product.get("name"),
            "price": product.get("price"),
            "quantity": quantity,
            "image": first_image(product),
        })
    return recalculate({**cart, "items": items})


def remove_item(cart: Dict[str, Any], product_id: str) -> Dict[str, Any]:
    items = [dict(it) for it in cart.get("items", []) if it["product_id"] != product_id]
    return recalculate({**cart, "items": items})


def update_quantity(cart: Dict[str, Any], product_id: str, quantity: int) -> Dict[str, Any]:
    items = [dict(it) for it in cart.get("items", [])]
    line = _find_line(items, product_id)
    if line is None:
        raise NotFound("Item not found in cart")
    if quantity <= 0:
        return remove_item(cart, product_id)
    line["quantity"] = quantity
    return recalculate({**cart, "items": items})


def clear(cart: Dict[str, Any]) -> Dict[str, Any]:
    return {**cart, "items": [], "total_items": 0, "total_price": 0.0}


def summary(cart: Dict[str, Any]) -> Dict[str, Any]:
    cart = recalculate(cart)
    if not cart["items"]:
        breakdown = {"subtotal": 0.0, "shipping": 0.0, "tax": 0.0, "total": 0.0}
    else:
        breakdown = price_breakdown(cart["total_price"])
    return {"items": cart["items"], **breakdown, "item_count": cart["total_items"]}


class CartStore:
    def __init__(self, database: Database):
        self.collection = database["cart"]

    def find(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"user_id": user_id})

    def get_or_create(self, user_id: str) -> Dict[str, Any]:
        now = now_utc()
        return self.collection.find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": {"items": [], "total_items": 0, "total_price": 0.0,
                              "created_at": now, "updated_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def save(self, cart: Dict[str, Any]) -> Dict[str, Any]:
        cart = recalculate(cart)
        fields = {
            "items": cart["items"],
            "total_items": cart["total_items"],
            "total_price": cart["total_price"],
            "updated_at": now_utc(),
        }
        saved = self.collection.find_one_and_update(
            {"user_id": cart["user_id"]},
            {"$set": fields, "$setOnInsert": {"created_at": now_utc()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.debug("Saved cart for %s with %d lines", cart["user_id"], len(cart["items"]))
        return saved

    def list_all(self, page: int = 1, limit: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        cursor = (self.collection.find({})
                  .sort("updated_at", DESCENDING)
                  .skip((page - 1) * limit)
                  .limit(limit))
        return list(cursor), self.collection.count_documents({})

    def delete(self, user_id: str) -> bool:
        res = self.collection.delete_one({"user_id": user_id})
        return res.deleted_count > 0
