"""Pytest fixtures for the store tests."""

from datetime import timedelta

import mongomock
import pytest

from database import create_document, ensure_indexes
from errors import InvalidSignature
from orders import OrderService
from products import ProductService
from schemas import Product, User
from utils import to_paise, utcnow


class FakeGateway:
    """Stands in for the Razorpay client; signatures equal to "good" verify."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.created = []
        self.refunds = []

    def create_order(self, amount, receipt, notes):
        gw_order = {"id": f"order_{len(self.created) + 1}", "amount": to_paise(amount), "currency": "INR"}
        self.created.append((gw_order, receipt, notes))
        return gw_order

    def verify_payment_signature(self, razorpay_order_id, razorpay_payment_id, razorpay_signature):
        if razorpay_signature != "good":
            raise InvalidSignature("payment")

    def verify_webhook_signature(self, body, signature):
        if signature != "good":
            raise InvalidSignature("webhook")

    def refund(self, payment_id, amount, notes):
        self.refunds.append((payment_id, amount, notes))
        return {"id": f"rfnd_{len(self.refunds)}", "status": "processed"}


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    client = mongomock.MongoClient()
    database = client["campus_store_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_product(db):
    def _make(name="Hoodie", price=100.0, stock=10, discount=0, category="apparel", variants=None):
        product = Product(
            name=name,
            description=f"Campus {name}",
            category=category,
            price=price,
            discount=discount,
            stock=stock,
            variants=variants or [],
        )
        return ProductService(db).create_product(product, actor_id="admin")

    return _make


@pytest.fixture
def make_user(db):
    def _make(name="Student", email=None, role="student"):
        email = email or f"{name.lower().replace(' ', '.')}@campus.edu"
        return create_document(db, "user", User(name=name, email=email, role=role))

    return _make


@pytest.fixture
def address():
    return {"street": "1 College Road", "city": "Pune", "state": "MH", "pincode": "411001"}


@pytest.fixture
def place_order(db, address):
    def _place(user_id, product, quantity=1, **kwargs):
        items = [{"product_id": str(product["_id"]), "quantity": quantity}]
        return OrderService(db).create_order(user_id, items, address, "razorpay", **kwargs)

    return _place


@pytest.fixture
def deliver(db):
    """Walk an order through confirmed -> processing -> delivered."""
    def _deliver(order):
        service = OrderService(db)
        oid = str(order["_id"])
        for status in ("confirmed", "processing", "delivered"):
            order = service.advance_status(oid, status)
        return order

    return _deliver


@pytest.fixture
def future():
    return utcnow() + timedelta(days=7)
