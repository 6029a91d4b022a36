"""Tests for the checkout workflow."""

import pytest
from pymongo.errors import PyMongoError

import catalog
import orders
from carts import CartStore
from catalog import ProductStore
from checkout import CheckoutRequest, ShippingInput, checkout, generate_order_id
from errors import (
    DuplicatePayment,
    EmptyCart,
    InsufficientStock,
    InvalidRequest,
    PaymentNotSuccessful,
    PaymentVerificationFailed,
    PersistenceFailure,
    ProductUnavailable,
)

from .conftest import PAID_AT, SHIPPING

USER = "user-1"


def request(reference="ref-1", **overrides):
    body = {"reference": reference, "shipping_info": ShippingInput(**SHIPPING), "order_note": "Leave at gate"}
    body.update(overrides)
    return CheckoutRequest(**body)


def stock_of(db, product):
    return ProductStore(db).get(str(product["_id"]))["stock"]


def cart_items(db, user_id=USER):
    cart = CartStore(db).find(user_id)
    return cart["items"] if cart else []


class TestHappyPath:
    def test_scenario_a_order_created_stock_reserved_cart_cleared(self, db, verifier, publisher, make_product, fill_cart):
        x = make_product(name="Product X", price=50, stock=10)
        fill_cart(USER, (x, 2))

        result = checkout(db, verifier, publisher, USER, request())

        assert result["status"] == "processing"
        assert result["payment_status"] == "paid"
        assert result["total"] == 120.0
        order = db["order"].find_one({"order_id": result["order_id"]})
        assert order["pricing"] == {"subtotal": 100.0, "shipping": 10.0, "tax": 10.0, "total": 120.0}
        assert order["items"][0]["name"] == "Product X"
        assert order["items"][0]["quantity"] == 2
        assert order["items"][0]["image"] == "https://img.test/product-x.png"
        assert order["payment_info"]["status"] == "paid"
        assert order["payment_info"]["transaction_id"] == "tx-ref-1"
        assert order["shipping_info"]["email"] == "ada@shop.com"
        assert order["order_note"] == "Leave at gate"
        assert stock_of(db, x) == 8
        assert cart_items(db) == []
        assert CartStore(db).find(USER)["total_price"] == 0

    def test_scenario_f_free_shipping_over_threshold(self, db, verifier, publisher, make_product, fill_cart):
        x = make_product(price=75, stock=5)
        fill_cart(USER, (x, 2))
        result = checkout(db, verifier, publisher, USER, request())
        order = db["order"].find_one({"order_id": result["order_id"]})
        assert order["pricing"] == {"subtotal": 150.0, "shipping": 0.0, "tax": 15.0, "total": 165.0}

    def test_prices_come_from_live_product_not_cart_snapshot(self, db, verifier, publisher, make_product, fill_cart):
        x = make_product(price=50, stock=5)
        fill_cart(USER, (x, 1))
        ProductStore(db).update(str(x["_id"]), {"price": 60.0})
        result = checkout(db, verifier, publisher, USER, request(subtotal=1.0, total=1.0))
        order = db["order"].find_one({"order_id": result["order_id"]})
        assert order["items"][0]["price"] == 60.0
        assert order["pricing"]["subtotal"] == 60.0

    def test_paid_at_from_gateway(self, db, verifier, publisher, make_product, fill_cart):
        fill_cart(USER, (make_product(), 1))
        result = checkout(db, verifier, publisher, USER, request())
        order = db["order"].find_one({"order_id": result["order_id"]})
        assert order["payment_info"]["paid_at"].replace(tzinfo=None) == PAID_AT.replace(tzinfo=None)

    def test_caller_supplied_order_id_is_kept(self, db, verifier, publisher, make_product, fill_cart):
        fill_cart(USER, (make_product(), 1))
        result = checkout(db, verifier, publisher, USER, request(order_id="ORD-123-4567"))
        assert result["order_id"] == "ORD-123-4567"

    def test_publishes_order_created(self, db, verifier, publisher, make_product, fill_cart):
        fill_cart(USER, (make_product(), 1))
        checkout(db, verifier, publisher, USER, request())
        assert ("user:user-1", "order-created") in [(room, event) for room, event, _ in publisher.events]

    def test_generated_order_id_format(self):
        parts = generate_order_id().split("-")
        assert parts[0] == "ORD"
        assert parts[1].isdigit()
        assert len(parts[2]) == 4


class TestRejectedBeforeAnyMutation:
    def test_missing_reference(self, db, verifier, publisher):
        with pytest.raises(InvalidRequest):
            checkout(db, verifier, publisher, USER, request(reference=None))
        assert verifier.calls == []

    @pytest.mark.parametrize("field", ["full_name", "email", "phone", "address", "city", "state", "zip_code"])
    def test_missing_shipping_field(self, db, verifier, publisher, field):
        shipping = dict(SHIPPING, **{field: ""})
        with pytest.raises(InvalidRequest) as exc:
            checkout(db, verifier, publisher, USER, request(shipping_info=ShippingInput(**shipping)))
        assert exc.value.extra["missing"] == [field]

    def test_empty_cart(self, db, verifier, publisher):
        with pytest.raises(EmptyCart):
            checkout(db, verifier, publisher, USER, request())
        assert verifier.calls == []

    def test_scenario_c_payment_not_successful(self, db, verifier, publisher, make_product, fill_cart):
        x = make_product(stock=10)
        fill_cart(USER, (x, 2))
        verifier.outcomes["ref-1"] = "failed"
        with pytest.raises(PaymentNotSuccessful):
            checkout(db, verifier, publisher, USER, request())
        assert db["order"].count_documents({}) == 0
        assert stock_of(db, x) == 10
        assert len(cart_items(db)) == 1

    def test_payment_verification_failure(self, db, verifier, publisher, make_product, fill_cart):
        x = make_product(stock=10)
        fill_cart(USER, (x, 2))
        verifier.outcomes["ref-1"] = PaymentVerificationFailed("Payment verification timed out")
        with pytest.raises(PaymentVerificationFailed):
            checkout(db, verifier, publisher, USER, request())
        assert stock_of(db, x) == 10
        assert db["order"].count_documents({}) == 0


class TestStockFailures:
    def test_scenario_b_insufficient_stock(self, db, verifier, publisher, make_product, fill_cart):
        x = make_product(name="Product X", stock=10)
        fill_cart(USER, (x, 2))
        ProductStore(db).set_stock(str(x["_id"]), 1)

        with pytest.raises(InsufficientStock) as exc:
            checkout(db, verifier, publisher, USER, request())

        assert exc.value.available == 1
        assert db["order"].count_documents({}) == 0
        assert stock_of(db, x) == 1
        assert cart_items(db)[0]["quantity"] == 2

    def test_earlier_lines_released_when_later_line_fails(self, db, verifier, publisher, make_product, fill_cart):
        a = make_product(name="A", stock=5)
        b = make_product(name="B", stock=10)
        fill_cart(USER, (a, 2), (b, 3))
        ProductStore(db).set_stock(str(b["_id"]), 2)

        with pytest.raises(InsufficientStock):
            checkout(db, verifier, publisher, USER, request())

        assert stock_of(db, a) == 5
        assert stock_of(db, b) == 2
        assert db["order"].count_documents({}) == 0

    def test_lost_race_on_conditional_decrement_releases_reservations(self, db, verifier, publisher,
                                                                      make_product, fill_cart, monkeypatch):
        a = make_product(name="A", stock=5)
        b = make_product(name="B", stock=1)
        fill_cart(USER, (a, 1), (b, 1))
        real_find = catalog.ProductStore.find

        def stale_find(self, product_id):
            product = real_find(self, product_id)
            if product and product["name"] == "B":
                # another checkout takes the last unit between our read and our write
                self.collection.update_one({"_id": product["_id"]}, {"$set": {"stock": 0}})
            return product

        monkeypatch.setattr(catalog.ProductStore, "find", stale_find)

        with pytest.raises(InsufficientStock):
            checkout(db, verifier, publisher, USER, request())

        assert stock_of(db, a) == 5
        assert stock_of(db, b) == 0

    def test_missing_product_is_unavailable(self, db, verifier, publisher, make_product, fill_cart):
        a = make_product(name="A", stock=5)
        gone = make_product(name="Gone", stock=5)
        fill_cart(USER, (a, 1), (gone, 1))
        ProductStore(db).delete(str(gone["_id"]))

        with pytest.raises(ProductUnavailable):
            checkout(db, verifier, publisher, USER, request())
        assert stock_of(db, a) == 5

    def test_product_deleted_before_decrement_is_unavailable(self, db, verifier, publisher,
                                                             make_product, fill_cart, monkeypatch):
        a = make_product(name="A", stock=5)
        b = make_product(name="B", stock=5)
        fill_cart(USER, (a, 1), (b, 1))
        real_find = catalog.ProductStore.find

        def find_then_delete(self, product_id):
            product = real_find(self, product_id)
            if product and product["name"] == "B":
                self.collection.delete_one({"_id": product["_id"]})
            return product

        monkeypatch.setattr(catalog.ProductStore, "find", find_then_delete)

        with pytest.raises(ProductUnavailable):
            checkout(db, verifier, publisher, USER, request())
        assert db["product"].find_one({"_id": a["_id"]})["stock"] == 5

    def test_inactive_product_is_unavailable(self, db, verifier, publisher, make_product, fill_cart):
        a = make_product(name="A", stock=5)
        fill_cart(USER, (a, 1))
        ProductStore(db).deactivate(str(a["_id"]))
        with pytest.raises(ProductUnavailable):
            checkout(db, verifier, publisher, USER, request())
        assert stock_of(db, a) == 5

    def test_persistence_error_releases_stock(self, db, verifier, publisher, make_product, fill_cart, monkeypatch):
        a = make_product(stock=5)
        fill_cart(USER, (a, 2))

        def broken_insert(self, order):
            raise PyMongoError("write concern timeout")

        monkeypatch.setattr(orders.OrderStore, "insert", broken_insert)

        with pytest.raises(PersistenceFailure):
            checkout(db, verifier, publisher, USER, request())
        assert stock_of(db, a) == 5
        assert len(cart_items(db)) == 1


class TestIdempotency:
    def test_same_reference_cannot_create_two_orders(self, db, verifier, publisher, make_product, fill_cart):
        x = make_product(stock=10)
        fill_cart(USER, (x, 1))
        first = checkout(db, verifier, publisher, USER, request("ref-dup"))
        fill_cart(USER, (x, 1))

        with pytest.raises(DuplicatePayment) as exc:
            checkout(db, verifier, publisher, USER, request("ref-dup"))

        assert exc.value.extra["order_id"] == first["order_id"]
        assert db["order"].count_documents({}) == 1
        assert stock_of(db, x) == 9

    def test_unique_index_backstops_race(self, db, verifier, publisher, make_product, fill_cart, monkeypatch):
        x = make_product(stock=10)
        fill_cart(USER, (x, 1))
        checkout(db, verifier, publisher, USER, request("ref-race"))
        fill_cart(USER, (x, 1))
        # the pre-check misses a concurrent order with the same reference
        real_lookup = orders.OrderStore.find_by_reference
        lookups = []

        def late_lookup(self, reference):
            lookups.append(reference)
            return None if len(lookups) == 1 else real_lookup(self, reference)

        monkeypatch.setattr(orders.OrderStore, "find_by_reference", late_lookup)

        with pytest.raises(DuplicatePayment):
            checkout(db, verifier, publisher, USER, request("ref-race"))
        assert stock_of(db, x) == 9

    def test_taken_order_id_is_not_reported_as_duplicate_payment(self, db, verifier, publisher,
                                                                 make_product, fill_cart):
        x = make_product(stock=10)
        fill_cart(USER, (x, 1))
        checkout(db, verifier, publisher, USER, request("ref-A", order_id="ORD-1-1111"))
        fill_cart(USER, (x, 1))

        with pytest.raises(InvalidRequest) as exc:
            checkout(db, verifier, publisher, USER, request("ref-B", order_id="ORD-1-1111"))

        assert exc.value.message == "Order id already in use"
        assert stock_of(db, x) == 9
        assert len(cart_items(db)) == 1
        # the payment is still usable once the caller drops the clashing id
        result = checkout(db, verifier, publisher, USER, request("ref-B"))
        assert result["order_id"] != "ORD-1-1111"
        assert stock_of(db, x) == 8
