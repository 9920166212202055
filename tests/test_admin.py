import pytest

from agromart import orders
from agromart import cart as cart_service
from agromart.seed import seed_database

ADMIN_PATHS = [
    ("get", "/api/admin/users"),
    ("get", "/api/admin/orders"),
    ("get", "/api/admin/coupons"),
    ("get", "/api/admin/stats"),
    ("get", "/api/admin/analytics/dashboard"),
    ("get", "/api/admin/products/low-stock"),
    ("get", "/api/admin/reviews"),
    ("post", "/api/admin/seed"),
]


@pytest.mark.parametrize("method,path", ADMIN_PATHS)
def test_customer_is_refused_admin_routes(client, user, auth_header, method, path):
    res = getattr(client, method)(path, headers=auth_header(user))
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "ADMIN_ONLY"


@pytest.mark.parametrize("method,path", ADMIN_PATHS[:3])
def test_anonymous_is_refused_admin_routes(client, method, path):
    res = getattr(client, method)(path)
    assert res.status_code == 401
    assert res.json()["error"]["code"] == "NO_TOKEN"


def test_admin_lists_users_without_password_hash(client, user, admin, auth_header):
    res = client.get("/api/admin/users", headers=auth_header(admin))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["pagination"]["total"] == 2
    assert all("password_hash" not in u for u in data["items"])


def test_admin_searches_users(client, user, admin, auth_header):
    res = client.get("/api/admin/users", params={"q": "farmer@"}, headers=auth_header(admin))
    emails = [u["email"] for u in res.json()["data"]["items"]]
    assert emails == ["farmer@example.com"]


def test_admin_cannot_be_deleted(client, admin, make_user, auth_header):
    other_admin = make_user(is_admin=True)
    res = client.delete(f"/api/admin/users/{other_admin['_id']}", headers=auth_header(admin))
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "CANNOT_DELETE_ADMIN"


def test_user_with_orders_cannot_be_deleted(client, db, cache, user, admin, auth_header, make_product,
                                            checkout_request):
    cart_service.add_to_cart(db, str(user["_id"]), str(make_product()["_id"]), 1)
    orders.checkout(db, cache, str(user["_id"]), checkout_request())

    res = client.delete(f"/api/admin/users/{user['_id']}", headers=auth_header(admin))

    assert res.status_code == 400
    assert res.json()["error"]["code"] == "USER_HAS_ORDERS"


def test_delete_user_removes_their_cart(client, db, user, admin, auth_header):
    res = client.delete(f"/api/admin/users/{user['_id']}", headers=auth_header(admin))
    assert res.status_code == 200
    assert db["users"].find_one({"_id": user["_id"]}) is None
    assert db["carts"].count_documents({"user_id": str(user["_id"])}) == 0


def test_admin_cannot_drop_own_admin_flag(client, admin, auth_header):
    res = client.put(f"/api/admin/users/{admin['_id']}", json={"is_admin": False}, headers=auth_header(admin))
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "CANNOT_MODIFY_SELF"


def test_admin_updates_user(client, user, admin, auth_header):
    res = client.put(f"/api/admin/users/{user['_id']}", json={"is_active": False}, headers=auth_header(admin))
    assert res.status_code == 200
    assert res.json()["data"]["is_active"] is False


def test_disabled_user_token_stops_working(client, user, admin, auth_header):
    headers = auth_header(user)
    assert client.get("/api/cart", headers=headers).status_code == 200

    client.put(f"/api/admin/users/{user['_id']}", json={"is_active": False}, headers=auth_header(admin))

    res = client.get("/api/cart", headers=headers)
    assert res.status_code == 401
    assert res.json()["error"]["code"] == "ACCOUNT_DISABLED"


def test_edited_email_is_stored_lowercase(client, db, user, admin, auth_header):
    res = client.put(f"/api/admin/users/{user['_id']}", json={"email": "Ravi.Kumar@Example.com"},
                     headers=auth_header(admin))

    assert res.status_code == 200
    assert db["users"].find_one({"_id": user["_id"]})["email"] == "ravi.kumar@example.com"
    login = client.post("/api/auth/login", json={"email": "Ravi.Kumar@Example.com", "password": "Secret123"})
    assert login.status_code == 200


def test_seed_is_idempotent(db):
    first = seed_database(db)
    second = seed_database(db)

    assert first["products"] == 8
    assert first["coupons"] == 3
    assert first["users"] == 1
    assert all(count == 0 for count in second.values())
    assert db["coupons"].find_one({"code": "SAVE20"})["value"] == 20


def test_seed_endpoint_reports_status(client, admin, auth_header):
    first = client.post("/api/admin/seed", headers=auth_header(admin)).json()["data"]
    second = client.post("/api/admin/seed", headers=auth_header(admin)).json()["data"]
    assert first["status"] == "seeded"
    assert second["status"] == "already-seeded"


def test_dashboard_counts(client, db, cache, user, admin, auth_header, make_product, checkout_request):
    cart_service.add_to_cart(db, str(user["_id"]), str(make_product(stock=3)["_id"]), 1)
    orders.checkout(db, cache, str(user["_id"]), checkout_request())

    data = client.get("/api/admin/analytics/dashboard", headers=auth_header(admin)).json()["data"]

    assert data["total_orders"] == 1
    assert data["pending_orders"] == 1
    assert data["total_revenue"] == 0
    assert data["low_stock_products"] == 1
