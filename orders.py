"""Orders and their fulfillment state machine.

Transitions (`cancel`, `with_status`, `with_delivery`, `with_note`) are pure:
they take an order document and return an updated copy. `OrderStore.replace`
persists a transition only if the order is still in the status the transition
was computed from, so two racing updates cannot both apply.
"""
import math
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING
from pymongo.database import Database

from catalog import ProductStore
from database import now_utc, as_utc, oid, is_oid
from errors import InvalidRequest, InvalidStatus, NotCancellable, NotFound
from events import EventPublisher, user_room, ADMIN_ROOM
from schemas import ORDER_STATUSES

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "User requested cancellation"


# ---------------------- Pure transitions ----------------------

def can_be_cancelled(order: Dict[str, Any]) -> bool:
    return order.get("status") == "processing" and order.get("payment_info", {}).get("status") == "paid"


def cancel(order: Dict[str, Any], reason: Optional[str] = None) -> Dict[str, Any]:
    if not can_be_cancelled(order):
        raise NotCancellable(order.get("status"), order.get("payment_info", {}).get("status"))
    return {
        **order,
        "status": "cancelled",
        "cancellation_reason": reason or DEFAULT_CANCEL_REASON,
        "updated_at": now_utc(),
    }


def with_status(order: Dict[str, Any], status: str) -> Dict[str, Any]:
    if status not in ORDER_STATUSES:
        raise InvalidStatus(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
    if order.get("status") == "cancelled":
        raise InvalidStatus("Cancelled orders cannot change status", {"current_status": "cancelled"})
    return {**order, "status": status, "updated_at": now_utc()}


def with_delivery(order: Dict[str, Any], tracking_number: Optional[str] = None,
                  estimated_delivery: Optional[datetime] = None,
                  delivered_at: Optional[datetime] = None) -> Dict[str, Any]:
    if order.get("status") in ("cancelled", "returned"):
        raise InvalidStatus(f"Cannot update delivery for a {order['status']} order")
    updated = dict(order)
    if tracking_number is not None:
        updated["tracking_number"] = tracking_number
    if estimated_delivery is not None:
        updated["estimated_delivery"] = estimated_delivery
    if delivered_at is not None:
        updated["delivered_at"] = delivered_at
    updated["status"] = "delivered" if updated.get("delivered_at") else "shipped"
    updated["updated_at"] = now_utc()
    return updated


def with_note(order: Dict[str, Any], message: str, author_id: str) -> Dict[str, Any]:
    note = {"message": message, "created_by": author_id, "created_at": now_utc()}
    return {**order, "notes": list(order.get("notes", [])) + [note], "updated_at": now_utc()}


def days_until_delivery(order: Dict[str, Any], now: Optional[datetime] = None) -> Optional[int]:
    estimate = as_utc(order.get("estimated_delivery"))
    if estimate is None:
        return None
    now = now or now_utc()
    days_left = math.ceil((estimate - now).total_seconds() / 86400)
    return days_left if days_left > 0 else 0


# ---------------------- Store ----------------------

class OrderStore:
    def __init__(self, database: Database):
        self.collection = database["order"]

    def insert(self, order: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(order)
        doc.setdefault("created_at", now_utc())
        doc.setdefault("updated_at", now_utc())
        res = self.collection.insert_one(doc)
        doc["_id"] = res.inserted_id
        return doc

    def get(self, order_ref: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Look an order up by its human order id, falling back to the ObjectId."""
        scope = {"user_id": user_id} if user_id else {}
        order = self.collection.find_one({"order_id": order_ref, **scope})
        if order is None and is_oid(order_ref):
            order = self.collection.find_one({"_id": oid(order_ref), **scope})
        if order is None:
            raise NotFound("Order not found")
        return order

    def find_by_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"payment_info.reference": reference})

    def list(self, user_id: Optional[str] = None, status: Optional[str] = None,
             page: int = 1, limit: int = 10) -> Tuple[List[Dict[str, Any]], int]:
        filt: Dict[str, Any] = {}
        if user_id:
            filt["user_id"] = user_id
        if status and status != "all":
            filt["status"] = status
        cursor = (self.collection.find(filt)
                  .sort("created_at", DESCENDING)
                  .skip((page - 1) * limit)
                  .limit(limit))
        return list(cursor), self.collection.count_documents(filt)

    def replace(self, order: Dict[str, Any], expected_status: str) -> Optional[Dict[str, Any]]:
        """Write `order` back if it is still in `expected_status`; None otherwise."""
        fields = {k: v for k, v in order.items() if k != "_id"}
        res = self.collection.replace_one({"_id": order["_id"], "status": expected_status}, fields)
        if res.matched_count == 0:
            return None
        return order

    def stats(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        pipeline: List[Dict[str, Any]] = []
        if user_id:
            pipeline.append({"$match": {"user_id": user_id}})
        pipeline += [
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_revenue": {"$sum": "$pricing.total"}}},
            {"$sort": {"count": -1}},
        ]
        return [
            {"status": row["_id"], "count": row["count"], "total_revenue": round(row["total_revenue"], 2)}
            for row in self.collection.aggregate(pipeline)
        ]


# ---------------------- Service operations ----------------------

def _persist(store: OrderStore, before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    saved = store.replace(after, expected_status=before["status"])
    if saved is None:
        current = store.get(str(before["_id"]))
        raise InvalidStatus(
            "Order was modified concurrently, please retry",
            {"current_status": current.get("status")},
        )
    return saved


def _notify(publisher: EventPublisher, order: Dict[str, Any], event: str) -> None:
    payload = {"order_id": order["order_id"], "status": order["status"]}
    publisher.publish(user_room(order["user_id"]), event, payload)
    publisher.publish(ADMIN_ROOM, event, payload)


def cancel_order(database: Database, publisher: EventPublisher, order_ref: str,
                 reason: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Cancel an order and put its reserved stock back.

    `user_id` scopes the lookup to the owner; admins pass None.
    """
    store = OrderStore(database)
    order = store.get(order_ref, user_id=user_id)
    cancelled = cancel(order, reason)
    try:
        _persist(store, order, cancelled)
    except InvalidStatus:
        current = store.get(str(order["_id"]))
        raise NotCancellable(current.get("status"), current.get("payment_info", {}).get("status"))

    products = ProductStore(database)
    for item in cancelled["items"]:
        try:
            products.increase_stock(item["product_id"], item["quantity"])
        except NotFound:
            # hard-deleted since the order was placed; nothing to restore
            logger.warning("Product %s gone, stock not restored for order %s",
                           item["product_id"], cancelled["order_id"])
    logger.info("Order %s cancelled: %s", cancelled["order_id"], cancelled["cancellation_reason"])
    _notify(publisher, cancelled, "order-status-changed")
    return cancelled


def update_status(database: Database, publisher: EventPublisher, order_ref: str, status: str) -> Dict[str, Any]:
    if status not in ORDER_STATUSES:
        raise InvalidStatus(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
    if status == "cancelled":
        return cancel_order(database, publisher, order_ref, reason="Cancelled by admin")
    store = OrderStore(database)
    order = store.get(order_ref)
    updated = _persist(store, order, with_status(order, status))
    logger.info("Order %s status %s -> %s", updated["order_id"], order["status"], status)
    _notify(publisher, updated, "order-status-changed")
    return updated


def update_delivery(database: Database, publisher: EventPublisher, order_ref: str,
                    tracking_number: Optional[str] = None, estimated_delivery: Optional[datetime] = None,
                    delivered_at: Optional[datetime] = None) -> Dict[str, Any]:
    store = OrderStore(database)
    order = store.get(order_ref)
    updated = _persist(store, order, with_delivery(order, tracking_number, estimated_delivery, delivered_at))
    _notify(publisher, updated, "order-updated")
    return updated


def add_note(database: Database, order_ref: str, message: str, author_id: str) -> Dict[str, Any]:
    if not message or not message.strip():
        raise InvalidRequest("Note message is required")
    store = OrderStore(database)
    order = store.get(order_ref)
    # notes are append-only, so push instead of replacing the whole document
    note = with_note(order, message, author_id)["notes"][-1]
    store.collection.update_one(
        {"_id": order["_id"]},
        {"$push": {"notes": note}, "$set": {"updated_at": now_utc()}},
    )
    return store.get(str(order["_id"]))
