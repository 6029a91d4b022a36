"""
MongoDB connection and small document helpers.

The client is created once from DATABASE_URL / DATABASE_NAME. Route handlers
receive the database through the `get_db` dependency so tests can swap it.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ASCENDING, DESCENDING
from pymongo.database import Database

from errors import InvalidRequest, PersistenceFailure

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise PersistenceFailure("Database is not configured")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes unless the client is tz-aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidRequest(f"Invalid id: {id_str}")


def is_oid(id_str: str) -> bool:
    return ObjectId.is_valid(id_str)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["_id"] = str(out["_id"])
    return out


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["session"].create_index("token", unique=True)
    database["product"].create_index([("category", ASCENDING), ("price", ASCENDING)])
    database["product"].create_index("vendor_id")
    database["cart"].create_index("user_id", unique=True)
    database["order"].create_index("order_id", unique=True)
    database["order"].create_index("payment_info.reference", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Indexes ensured on %s", database.name)
