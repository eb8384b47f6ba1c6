"""Pytest fixtures for pizzeria tests."""

import os

# Settings are read at import time
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from shared.utils import create_access_token
from pizzeria.cart import CartService
from pizzeria.catalog import Catalog
from pizzeria.checkout import CheckoutService
from pizzeria.coupons import CouponLedger
from pizzeria.identity import IdentityContext
from pizzeria.models import ProductDB, CustomizationDB, CouponDB
from pizzeria.notifier import EventPublisher, Notifier
from pizzeria.order_status import OrderStatusMachine
from pizzeria.recommendations import PreferenceTracker


@pytest.fixture
def db():
    """A fresh in-memory database per test."""
    return AsyncMongoMockClient()["pizzeria_test"]


@pytest.fixture
def make_product(db):
    async def _make(name="Margherita", price=299, inventory=100, category="pizza", **fields):
        product = ProductDB(name=name, price=price, inventory=inventory, category=category, **fields)
        res = await db.products.insert_one(product.dict(by_alias=True, exclude={"id"}))
        return await db.products.find_one({"_id": res.inserted_id})

    return _make


@pytest.fixture
def make_customization(db):
    async def _make(name="Extra Cheese", type="cheese", price=40, **fields):
        customization = CustomizationDB(name=name, type=type, price=price, **fields)
        res = await db.customizations.insert_one(customization.dict(by_alias=True, exclude={"id"}))
        return await db.customizations.find_one({"_id": res.inserted_id})

    return _make


@pytest.fixture
def make_coupon(db):
    async def _make(code="SAVE20", type="percentage", value=20, **fields):
        now = datetime.utcnow()
        fields.setdefault("valid_from", now - timedelta(days=1))
        fields.setdefault("valid_until", now + timedelta(days=30))
        coupon = CouponDB(code=code, type=type, value=value, **fields)
        res = await db.coupons.insert_one(coupon.dict(by_alias=True, exclude={"id"}))
        return await db.coupons.find_one({"_id": res.inserted_id})

    return _make


@pytest.fixture
def guest():
    return IdentityContext.for_guest("guest-session-1")


@pytest.fixture
def customer():
    return IdentityContext.for_user("user-1")


@pytest.fixture
def admin():
    return IdentityContext.for_user("admin-1", role="admin")


@pytest.fixture
def events():
    """Everything published through the notifier, in order."""
    return []


@pytest.fixture
def notifier(events):
    publisher = EventPublisher()

    async def record(event, payload):
        events.append((event, payload))

    publisher.subscribe("order.created", record)
    publisher.subscribe("order.status_changed", record)
    return Notifier(publisher, webhook_url=None)


@pytest.fixture
def catalog(db):
    return Catalog(db)


@pytest.fixture
def carts(db, catalog):
    return CartService(db, catalog, tax_rate=0.10)


@pytest.fixture
def coupons(db):
    return CouponLedger(db)


@pytest.fixture
def checkout(db, catalog, carts, coupons, notifier):
    return CheckoutService(
        db,
        catalog=catalog,
        carts=carts,
        coupons=coupons,
        notifier=notifier,
        preferences=PreferenceTracker(db),
        tax_rate=0.10,
        delivery_fee=50,
        delivery_lead_minutes=45,
        carryout_lead_minutes=20,
        order_number_retries=3,
    )


@pytest.fixture
def machine(db, catalog, notifier):
    return OrderStatusMachine(db, catalog=catalog, notifier=notifier)


@pytest.fixture
def customer_info():
    return {"name": "Ada Lovelace", "email": "ada@example.com", "phone": "555-0100"}


@pytest.fixture
def address():
    return {"street": "1 Main St", "city": "Springfield", "zip_code": "12345"}


@pytest.fixture
def api_client(db):
    """Test client bound to the in-memory database; startup hooks are skipped."""
    from pizzeria.main import app

    app.mongodb = db
    return TestClient(app)


@pytest.fixture
def admin_headers():
    token = create_access_token({"sub": "admin-1", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers():
    token = create_access_token({"sub": "user-1", "role": "customer"})
    return {"Authorization": f"Bearer {token}"}
