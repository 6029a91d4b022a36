"""Pytest fixtures for the shop API tests."""

from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import Role, issue_token, register_user
from carts import CartStore, add_item
from catalog import ProductStore
from database import ensure_indexes, get_db
from events import get_publisher
from payments import PaymentVerification, get_payment_verifier

PAID_AT = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeVerifier:
    """Payment gateway stand-in. Unknown references verify as successful."""

    def __init__(self):
        self.outcomes = {}
        self.calls = []

    def verify(self, reference):
        self.calls.append(reference)
        outcome = self.outcomes.get(reference, "success")
        if isinstance(outcome, Exception):
            raise outcome
        return PaymentVerification(
            status=outcome,
            reference=reference,
            transaction_id=f"tx-{reference}",
            amount=0,
            paid_at=PAID_AT,
        )

    def initialize(self, email, amount, reference, metadata=None):
        return {"authorization_url": f"https://pay.test/{reference}", "access_code": "ac", "reference": reference}


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, room, event, payload):
        self.events.append((room, event, payload))

    def names(self):
        return [event for _, event, _ in self.events]


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=True)["shop_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def client(db, verifier, publisher):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_verifier] = lambda: verifier
    app.dependency_overrides[get_publisher] = lambda: publisher
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_account(db, role=Role.USER, email=None):
    email = email or f"{role.value}@shop.com"
    user = register_user(db, f"Test {role.value}", email, "secret123", role, admin_key="demo-admin-key")
    user_id = str(user["_id"])
    return user_id, issue_token(db, user_id)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user(db):
    return make_account(db, Role.USER)


@pytest.fixture
def vendor(db):
    return make_account(db, Role.VENDOR)


@pytest.fixture
def admin(db):
    return make_account(db, Role.ADMIN)


@pytest.fixture
def make_product(db):
    store = ProductStore(db)

    def factory(name="Product X", price=50.0, stock=10, vendor_id="vendor-1", **extra):
        doc = {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "stock": stock,
            "category": extra.pop("category", "electronics"),
            "vendor_id": vendor_id,
            "vendor_name": "Vendor One",
            "images": [f"https://img.test/{name.replace(' ', '-').lower()}.png"],
            "is_active": True,
        }
        doc.update(extra)
        return store.create(doc)

    return factory


@pytest.fixture
def fill_cart(db):
    carts = CartStore(db)

    def fill(user_id, *lines):
        cart = carts.get_or_create(user_id)
        for product, quantity in lines:
            cart = add_item(cart, product, quantity)
        return carts.save(cart)

    return fill


SHIPPING = {
    "full_name": "Ada Obi",
    "email": "Ada@Shop.com",
    "phone": "+2348000000000",
    "address": "1 Marina Road",
    "city": "Lagos",
    "state": "Lagos",
    "zip_code": "100001",
}
