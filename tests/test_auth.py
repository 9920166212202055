from agromart.security import create_access_token, decode_access_token

PASSWORD = "Secret123"

REGISTRATION = {"full_name": "Asha Patil", "email": "Asha@Example.com", "password": "Harvest2024"}


def test_register_returns_tokens_and_creates_cart(client, db):
    res = client.post("/api/auth/register", json=REGISTRATION)

    assert res.status_code == 201
    data = res.json()["data"]
    assert data["user"]["email"] == "asha@example.com"
    assert "password_hash" not in data["user"]
    assert data["access_token"] and data["refresh_token"]
    assert db["carts"].count_documents({"user_id": data["user"]["id"]}) == 1
    assert decode_access_token(data["access_token"]).user_id == data["user"]["id"]


def test_register_duplicate_email(client, user):
    res = client.post("/api/auth/register", json={**REGISTRATION, "email": "farmer@example.com"})
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "EMAIL_EXISTS"


def test_register_rejects_weak_password(client):
    res = client.post("/api/auth/register", json={**REGISTRATION, "password": "harvest2024"})
    assert res.status_code == 400
    assert res.json()["error"]["details"][0]["field"] == "password"


def test_login_with_valid_credentials(client, user):
    res = client.post("/api/auth/login", json={"email": "FARMER@example.com", "password": PASSWORD})
    assert res.status_code == 200
    assert res.json()["data"]["user"]["email"] == "farmer@example.com"


def test_login_with_wrong_password(client, user):
    res = client.post("/api/auth/login", json={"email": "farmer@example.com", "password": "Wrong1234"})
    assert res.status_code == 401
    assert res.json()["error"]["code"] == "INVALID_CREDENTIALS"


def test_login_disabled_account(client, db, user):
    db["users"].update_one({"_id": user["_id"]}, {"$set": {"is_active": False}})
    res = client.post("/api/auth/login", json={"email": "farmer@example.com", "password": PASSWORD})
    assert res.status_code == 401
    assert res.json()["error"]["code"] == "ACCOUNT_DISABLED"


def test_refresh_issues_new_pair(client, user):
    tokens = client.post("/api/auth/login", json={"email": "farmer@example.com", "password": PASSWORD}).json()
    res = client.post("/api/auth/refresh", json={"refresh_token": tokens["data"]["refresh_token"]})
    assert res.status_code == 200
    assert set(res.json()["data"]) == {"access_token", "refresh_token"}


def test_refresh_rejects_access_token(client, user):
    res = client.post("/api/auth/refresh", json={"refresh_token": create_access_token(user)})
    assert res.status_code == 401
    assert res.json()["error"]["code"] == "INVALID_TOKEN"


def test_access_route_rejects_garbage_token(client):
    res = client.get("/api/auth/profile", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    assert res.json()["error"]["code"] == "INVALID_TOKEN"


def test_profile_update(client, user, auth_header):
    res = client.put("/api/auth/profile", json={"full_name": "Ravi K", "phone": "9123456780"},
                     headers=auth_header(user))
    assert res.status_code == 200
    assert res.json()["data"]["full_name"] == "Ravi K"
    assert res.json()["data"]["phone"] == "9123456780"


def test_change_password(client, user, auth_header):
    headers = auth_header(user)
    wrong = client.post("/api/auth/change-password",
                        json={"current_password": "Nope12345", "new_password": "Greener2025"}, headers=headers)
    assert wrong.status_code == 400

    res = client.post("/api/auth/change-password",
                      json={"current_password": PASSWORD, "new_password": "Greener2025"}, headers=headers)
    assert res.status_code == 200

    login = client.post("/api/auth/login", json={"email": "farmer@example.com", "password": "Greener2025"})
    assert login.status_code == 200
