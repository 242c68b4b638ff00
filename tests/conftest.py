"""Pytest fixtures for the marketplace tests."""

import itertools
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_token, hash_password
from config import Settings, get_settings
from database import as_datetime, create_document, ensure_indexes, get_db
from schemas import InventoryProduct, Listing, RentalItem, User

_password_hash = None


def password_hash() -> str:
    """bcrypt is slow on purpose; hash the shared test password once."""
    global _password_hash
    if _password_hash is None:
        _password_hash = hash_password("secret123")
    return _password_hash


@pytest.fixture
def settings():
    return Settings(commission_rate=0.1)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["agrolink_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db, settings):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db, settings):
    counter = itertools.count()

    def _make(role="BUYER", full_name=None):
        n = next(counter)
        doc = User(
            full_name=full_name or f"{role.title()} {n}",
            email=f"{role.lower()}{n}@example.com",
            password_hash=password_hash(),
            role=role,
        ).model_dump()
        create_document(db, "user", doc)
        token = create_token(db, settings, doc["_id"])
        doc["headers"] = {"Authorization": f"Bearer {token}"}
        return doc

    return _make


@pytest.fixture
def buyer(make_user):
    return make_user("BUYER")


@pytest.fixture
def farmer(make_user):
    return make_user("FARMER")


@pytest.fixture
def admin(make_user):
    return make_user("ADMIN")


@pytest.fixture
def driver(make_user):
    return make_user("DRIVER")


@pytest.fixture
def add_inventory(db, settings):
    def _add(stock_quantity=5, price=100.0, name="Urea 50kg", status="Available"):
        doc = InventoryProduct(
            name=name,
            category="fertilizers",
            stock_quantity=stock_quantity,
            price=price,
            status=status,
        ).model_dump()
        create_document(db, "inventory_product", doc)
        return doc

    return _add


@pytest.fixture
def add_listing(db, farmer):
    def _add(capacity_kg=10, price_per_kg=100.0, crop_name="Carrots", owner=None, **extra):
        fields = dict(
            farmer=(owner or farmer)["_id"],
            crop_name=crop_name,
            price_per_kg=price_per_kg,
            capacity_kg=capacity_kg,
            harvested_at=as_datetime(datetime.now(timezone.utc) - timedelta(days=1)),
        )
        fields.update(extra)
        doc = Listing(**fields).model_dump()
        create_document(db, "listing", doc)
        return doc

    return _add


@pytest.fixture
def add_rental(db):
    def _add(total_qty=5, rental_per_day=1000.0, product_name="Tiller"):
        doc = RentalItem(
            product_name=product_name,
            rental_per_day=rental_per_day,
            total_qty=total_qty,
        ).model_dump()
        create_document(db, "rental_item", doc)
        return doc

    return _add


ADDRESS = {
    "line1": "12 Temple Road",
    "city": "Kandy",
    "state": "Central",
    "postal_code": "20000",
}


def checkout(delivery_type="PICKUP", **extra):
    body = {
        "delivery_type": delivery_type,
        "contact_name": "Nimal Perera",
        "contact_phone": "0771234567",
        "contact_email": "nimal@example.com",
    }
    if delivery_type == "DELIVERY":
        body["delivery_address"] = ADDRESS
    body.update(extra)
    return body
