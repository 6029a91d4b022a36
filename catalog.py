"""Product catalog with stock-aware writes.

Stock changes are single conditional updates at the storage layer; nothing
here reads stock, checks it in Python and writes it back.
"""
import re
import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from database import now_utc, oid
from errors import InsufficientStock, InvalidRequest, NotFound

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("created_at", "updated_at", "price", "name", "stock")
EDITABLE_FIELDS = ("name", "description", "price", "stock", "category", "images", "is_active", "vendor_name")


def is_in_stock(product: Dict[str, Any], quantity: int = 1) -> bool:
    return product.get("stock", 0) >= quantity


def first_image(product: Dict[str, Any]) -> Optional[str]:
    images = product.get("images") or []
    return images[0] if images else None


def _positive(quantity: int) -> int:
    if not isinstance(quantity, int) or quantity <= 0:
        raise InvalidRequest("Quantity must be a positive integer")
    return quantity


class ProductStore:
    def __init__(self, database: Database):
        self.collection = database["product"]

    # ---------------------- Reads ----------------------

    def find(self, product_id: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": oid(product_id)})

    def get(self, product_id: str) -> Dict[str, Any]:
        product = self.find(product_id)
        if not product:
            raise NotFound("Product not found")
        return product

    def query(self, category: Optional[str] = None, vendor_id: Optional[str] = None,
              min_price: Optional[float] = None, max_price: Optional[float] = None,
              search: Optional[str] = None, is_active: Optional[bool] = None,
              page: int = 1, limit: int = 10, sort_by: str = "created_at",
              order: str = "desc") -> Tuple[List[Dict[str, Any]], int]:
        filt: Dict[str, Any] = {}
        if category:
            filt["category"] = {"$regex": re.escape(category), "$options": "i"}
        if vendor_id:
            filt["vendor_id"] = vendor_id
        price_cond = {}
        if min_price is not None:
            price_cond["$gte"] = min_price
        if max_price is not None:
            price_cond["$lte"] = max_price
        if price_cond:
            filt["price"] = price_cond
        if search:
            filt.update(_text_filter(search))
        if is_active is not None:
            filt["is_active"] = is_active
        if sort_by not in SORTABLE_FIELDS:
            raise InvalidRequest(f"Cannot sort by {sort_by}")
        direction = ASCENDING if order == "asc" else DESCENDING
        cursor = (self.collection.find(filt)
                  .sort(sort_by, direction)
                  .skip((page - 1) * limit)
                  .limit(limit))
        return list(cursor), self.collection.count_documents(filt)

    def find_by_vendor(self, vendor_id: str) -> List[Dict[str, Any]]:
        return list(self.collection.find({"vendor_id": vendor_id, "is_active": True}).sort("created_at", DESCENDING))

    def find_by_category(self, category: str) -> List[Dict[str, Any]]:
        filt = {"category": {"$regex": re.escape(category), "$options": "i"}, "is_active": True}
        return list(self.collection.find(filt).sort("created_at", DESCENDING))

    def find_by_price_range(self, min_price: float, max_price: float) -> List[Dict[str, Any]]:
        if min_price < 0 or max_price < 0 or min_price > max_price:
            raise InvalidRequest("Invalid price range")
        filt = {"price": {"$gte": min_price, "$lte": max_price}, "is_active": True}
        return list(self.collection.find(filt).sort("price", ASCENDING))

    def search_by_text(self, term: str) -> List[Dict[str, Any]]:
        filt = _text_filter(term)
        filt["is_active"] = True
        return list(self.collection.find(filt).sort("name", ASCENDING))

    # ---------------------- Writes ----------------------

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(data)
        doc.update({"created_at": now_utc(), "updated_at": now_utc()})
        res = self.collection.insert_one(doc)
        doc["_id"] = res.inserted_id
        logger.info("Created product %s (%s) for vendor %s", doc["_id"], doc.get("name"), doc.get("vendor_id"))
        return doc

    def update(self, product_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS and v is not None}
        changes["updated_at"] = now_utc()
        product = self.collection.find_one_and_update(
            {"_id": oid(product_id)}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        if not product:
            raise NotFound("Product not found")
        return product

    def decrease_stock(self, product_id: str, quantity: int) -> Dict[str, Any]:
        """Take `quantity` units, failing if fewer than that remain."""
        _positive(quantity)
        product = self.collection.find_one_and_update(
            {"_id": oid(product_id), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if product is None:
            current = self.get(product_id)
            logger.warning("Stock decrement refused for %s: need %d, have %d",
                           product_id, quantity, current.get("stock", 0))
            raise InsufficientStock(current.get("name", product_id), current.get("stock", 0), quantity)
        logger.debug("Decreased %s by %d, now %d", product_id, quantity, product["stock"])
        return product

    def increase_stock(self, product_id: str, quantity: int) -> Dict[str, Any]:
        _positive(quantity)
        product = self.collection.find_one_and_update(
            {"_id": oid(product_id)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if product is None:
            raise NotFound("Product not found")
        logger.debug("Increased %s by %d, now %d", product_id, quantity, product["stock"])
        return product

    def set_stock(self, product_id: str, stock: int) -> Dict[str, Any]:
        if not isinstance(stock, int) or stock < 0:
            raise InvalidRequest("Stock cannot be negative")
        return self.update(product_id, {"stock": stock})

    def deactivate(self, product_id: str) -> Dict[str, Any]:
        return self.update(product_id, {"is_active": False})

    def activate(self, product_id: str) -> Dict[str, Any]:
        return self.update(product_id, {"is_active": True})

    def delete(self, product_id: str) -> Dict[str, Any]:
        product = self.collection.find_one_and_delete({"_id": oid(product_id)})
        if not product:
            raise NotFound("Product not found")
        logger.info("Deleted product %s", product_id)
        return product


def _text_filter(term: str) -> Dict[str, Any]:
    pattern = {"$regex": re.escape(term), "$options": "i"}
    return {"$or": [{"name": pattern}, {"description": pattern}]}
