from datetime import datetime, timedelta, timezone

import fakeredis
import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from agromart import config
from agromart.cache import get_cache
from agromart.database import create_document, ensure_indexes, get_db
from agromart.main import app
from agromart.schemas import CheckoutRequest
from agromart.security import create_access_token, hash_password

PASSWORD = "Secret123"

SHIPPING_ADDRESS = {
    "full_name": "Ravi Kumar",
    "phone": "9876543210",
    "address_line": "12 Farm Road, Near Market",
    "city": "Pune",
    "state": "Maharashtra",
    "pincode": "411001",
}


@pytest.fixture
def db():
    database = mongomock.MongoClient()["agromart_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def cache():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def client(db, cache, tmp_path, monkeypatch):
    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path / "uploads"))
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_cache] = lambda: cache
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(email=None, is_admin=False, full_name="Test Farmer", password=PASSWORD):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        user_id = create_document(db, "users", {
            "full_name": full_name,
            "email": email,
            "password_hash": hash_password(password),
            "phone": None,
            "is_admin": is_admin,
            "is_active": True,
        })
        create_document(db, "carts", {"user_id": user_id, "items": [], "coupon": None})
        return db["users"].find_one({"_id": ObjectId(user_id)})

    return _make


@pytest.fixture
def user(make_user):
    return make_user(email="farmer@example.com")


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", is_admin=True, full_name="Admin User")


@pytest.fixture
def auth_header():
    def _header(user_doc):
        return {"Authorization": f"Bearer {create_access_token(user_doc)}"}

    return _header


@pytest.fixture
def category(db):
    category_id = create_document(db, "categories", {"name": "Seeds", "slug": "seeds", "description": None,
                                                     "icon": None})
    return db["categories"].find_one({"_id": ObjectId(category_id)})


@pytest.fixture
def make_product(db, category):
    counter = {"n": 0}

    def _make(name=None, price=500.0, stock=10, **extra):
        counter["n"] += 1
        name = name or f"Tomato Seeds {counter['n']}"
        product_id = create_document(db, "products", {
            "name": name,
            "slug": name.lower().replace(" ", "-"),
            "description": "High-yield hybrid seeds for every season.",
            "price": price,
            "original_price": None,
            "stock": stock,
            "images": [],
            "category_id": str(category["_id"]),
            "tags": [],
            "is_featured": False,
            "rating": 0.0,
            "review_count": 0,
            **extra,
        })
        return db["products"].find_one({"_id": ObjectId(product_id)})

    return _make


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE20", type="percentage", value=20, **extra):
        now = datetime.now(timezone.utc)
        doc = {
            "code": code,
            "description": None,
            "type": type,
            "value": value,
            "min_order_value": None,
            "max_discount": None,
            "usage_limit": None,
            "used_count": 0,
            "is_active": True,
            "valid_from": now - timedelta(days=1),
            "valid_until": now + timedelta(days=30),
        }
        doc.update(extra)
        coupon_id = create_document(db, "coupons", doc)
        return db["coupons"].find_one({"_id": ObjectId(coupon_id)})

    return _make


@pytest.fixture
def checkout_request():
    def _make(**extra):
        return CheckoutRequest(shipping_address=SHIPPING_ADDRESS, payment_method="card", **extra)

    return _make
