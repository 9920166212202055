HOME = {
    "full_name": "Ravi Kumar",
    "phone": "9876543210",
    "address_line": "12 Farm Road, Near Market",
    "city": "Pune",
    "state": "Maharashtra",
    "pincode": "411001",
}
FIELD = {**HOME, "address_line": "Survey 44, Village Khed", "city": "Khed"}


def test_first_address_becomes_default(client, user, auth_header):
    res = client.post("/api/users/addresses", json=HOME, headers=auth_header(user))
    assert res.status_code == 201
    assert res.json()["data"]["is_default"] is True
    assert res.json()["data"]["country"] == "India"


def test_single_default_per_user(client, db, user, auth_header):
    headers = auth_header(user)
    first = client.post("/api/users/addresses", json=HOME, headers=headers).json()["data"]
    second = client.post("/api/users/addresses", json={**FIELD, "is_default": True}, headers=headers).json()["data"]

    assert db["addresses"].count_documents({"user_id": str(user["_id"]), "is_default": True}) == 1
    default = client.get("/api/users/addresses/default", headers=headers).json()["data"]
    assert default["id"] == second["id"]

    client.put(f"/api/users/addresses/{first['id']}/default", headers=headers)
    listing = client.get("/api/users/addresses", headers=headers).json()["data"]
    assert [a["id"] for a in listing if a["is_default"]] == [first["id"]]


def test_deleting_default_promotes_another(client, user, auth_header):
    headers = auth_header(user)
    first = client.post("/api/users/addresses", json=HOME, headers=headers).json()["data"]
    second = client.post("/api/users/addresses", json=FIELD, headers=headers).json()["data"]

    assert client.delete(f"/api/users/addresses/{first['id']}", headers=headers).status_code == 200

    remaining = client.get(f"/api/users/addresses/{second['id']}", headers=headers).json()["data"]
    assert remaining["is_default"] is True


def test_update_address(client, user, auth_header):
    headers = auth_header(user)
    address = client.post("/api/users/addresses", json=HOME, headers=headers).json()["data"]
    res = client.put(f"/api/users/addresses/{address['id']}", json={"city": "Nashik"}, headers=headers)
    assert res.json()["data"]["city"] == "Nashik"


def test_other_users_address_is_not_found(client, user, make_user, auth_header):
    address = client.post("/api/users/addresses", json=HOME, headers=auth_header(user)).json()["data"]
    res = client.get(f"/api/users/addresses/{address['id']}", headers=auth_header(make_user()))
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "ADDRESS_NOT_FOUND"


def test_pincode_is_validated(client, user, auth_header):
    res = client.post("/api/users/addresses", json={**HOME, "pincode": "41100"}, headers=auth_header(user))
    assert res.status_code == 400
    assert res.json()["error"]["details"][0]["field"] == "pincode"


def test_no_default_address(client, user, auth_header):
    res = client.get("/api/users/addresses/default", headers=auth_header(user))
    assert res.status_code == 404
