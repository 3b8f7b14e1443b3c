"""Pytest fixtures for the game store tests."""

from datetime import timedelta

import mongomock
import pytest

import addresses
import catalog
import coupons
import offers
import wallet
from database import utcnow
from errors import PaymentGatewayError
from money import to_minor_units
from payments import RazorpayGateway, sign
from schemas import Address, Brand, Coupon, Offer, Product


class FakeGateway(RazorpayGateway):
    """Gateway that issues sequential order ids and never touches the network."""

    def __init__(self, secret: str = "test_secret"):
        self.key_id = "rzp_test_key"
        self.key_secret = secret
        self.created = []
        self.fail = False

    def create_order(self, amount: float) -> dict:
        if self.fail:
            raise PaymentGatewayError("Payment gateway is unavailable, please try again.")
        order = {"id": f"order_test_{len(self.created) + 1}", "amount": to_minor_units(amount), "currency": "INR"}
        self.created.append(order)
        return order

    def signature_for(self, gateway_order_id: str, payment_id: str) -> str:
        return sign(self.key_secret, gateway_order_id, payment_id)


@pytest.fixture
def db():
    """A fresh in-memory MongoDB database."""
    return mongomock.MongoClient().db


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def user_id():
    return "user-1"


@pytest.fixture
def brand(db):
    return catalog.create_brand(db, Brand(name="Nova Games"))


@pytest.fixture
def make_product(db, brand):
    def _make(name="Starfall", price=1000.0, stock=10, brand_id=None):
        payload = Product(name=name, price=price, stock=stock, brand=str(brand_id or brand["_id"]))
        return catalog.create_product(db, payload)

    return _make


@pytest.fixture
def make_offer(db):
    def _make(kind, target_id, discount_type, value, start=None, end=None, name="Festive Offer"):
        now = utcnow()
        payload = Offer(
            name=name,
            target={"kind": kind, "id": str(target_id)},
            discount_type=discount_type,
            discount_value=value,
            start_date=start or now - timedelta(days=1),
            end_date=end or now + timedelta(days=10),
        )
        return offers.create_offer(db, payload)

    return _make


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE10", discount_type="percentage", value=10, min_order_amount=0,
              max_discount_amount=None, per_user_limit=1, usage_limit=100, start=None, end=None):
        now = utcnow()
        payload = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=value,
            min_order_amount=min_order_amount,
            max_discount_amount=max_discount_amount,
            usage_limit=usage_limit,
            per_user_limit=per_user_limit,
            start_date=start or now - timedelta(days=1),
            end_date=end or now + timedelta(days=10),
        )
        return coupons.create_coupon(db, payload)

    return _make


@pytest.fixture
def address(db, user_id):
    payload = Address(
        user_id=user_id,
        full_name="Asha Rao",
        phone="9800000000",
        address_line1="12 MG Road",
        city="Bengaluru",
        state="KA",
        postal_code="560001",
    )
    return addresses.create_address(db, payload)


@pytest.fixture
def fund(db):
    def _fund(user, amount):
        return wallet.credit(db, user, amount, note="Test top-up")

    return _fund


@pytest.fixture
def stock_of(db):
    """(stock, reserved_stock) of a product as currently stored."""

    def _stock_of(product):
        doc = db["product"].find_one({"_id": product["_id"]})
        return doc["stock"], doc.get("reserved_stock", 0)

    return _stock_of
