import os
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from fastapi import Depends, Header
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import get_db, now_utc, as_utc, oid, is_oid
from errors import Forbidden, InvalidRequest, Unauthenticated

logger = logging.getLogger(__name__)

ADMIN_KEY = os.getenv("ADMIN_KEY", "demo-admin-key")
SESSION_TTL_DAYS = int(os.getenv("SESSION_TTL_DAYS", 7))


class Role(str, Enum):
    USER = "user"
    VENDOR = "vendor"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Role
    name: str = ""
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def ensure_role(principal: Principal, *roles: Role) -> Principal:
    """The one capability check every protected operation goes through."""
    if principal.role not in roles:
        allowed = " or ".join(r.value for r in roles)
        raise Forbidden(f"Access denied. {allowed} role required")
    return principal


def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


# ---------------------- Sessions ----------------------

def register_user(database: Database, name: str, email: str, password: str, role: Role = Role.USER,
                  phone: Optional[str] = None, admin_key: Optional[str] = None) -> dict:
    if role is Role.ADMIN and admin_key != ADMIN_KEY:
        raise Forbidden("Admin registration requires a valid admin key")
    user = {
        "name": name,
        "email": email.lower(),
        "password_hash": hash_password(password),
        "role": role.value,
        "phone": phone,
        "is_active": True,
        "created_at": now_utc(),
        "updated_at": now_utc(),
    }
    try:
        res = database["user"].insert_one(user)
    except DuplicateKeyError:
        raise InvalidRequest("User already exists with this email")
    user["_id"] = res.inserted_id
    logger.info("Registered %s user %s", role.value, res.inserted_id)
    return user


def authenticate(database: Database, email: str, password: str) -> dict:
    user = database["user"].find_one({"email": email.lower(), "is_active": True})
    if not user or user.get("password_hash") != hash_password(password):
        raise Unauthenticated("Invalid email or password")
    return user


def issue_token(database: Database, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    database["session"].insert_one({
        "token": token,
        "user_id": user_id,
        "expires_at": now_utc() + timedelta(days=SESSION_TTL_DAYS),
        "created_at": now_utc(),
    })
    return token


def revoke_token(database: Database, token: str) -> None:
    database["session"].delete_one({"token": token})


def principal_for_token(database: Database, token: str) -> Principal:
    session = database["session"].find_one({"token": token})
    if not session or as_utc(session["expires_at"]) < now_utc():
        raise Unauthenticated("Invalid or expired token")
    user_id = session["user_id"]
    user = database["user"].find_one({"_id": oid(user_id)}) if is_oid(user_id) else None
    if not user or not user.get("is_active", True):
        raise Unauthenticated("Invalid or expired token")
    return Principal(
        user_id=str(user["_id"]),
        role=Role(user.get("role", "user")),
        name=user.get("name", ""),
        email=user.get("email", ""),
    )


# ---------------------- Dependencies ----------------------

def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization:
        raise Unauthenticated("No authorization token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthenticated("Authorization header must be 'Bearer <token>'")
    return token


def current_principal(token: str = Depends(bearer_token), database: Database = Depends(get_db)) -> Principal:
    return principal_for_token(database, token)


def require_roles(*roles: Role):
    def dependency(principal: Principal = Depends(current_principal)) -> Principal:
        return ensure_role(principal, *roles)
    return dependency


require_admin = require_roles(Role.ADMIN)
require_vendor = require_roles(Role.VENDOR, Role.ADMIN)
