import json

import pytest

from agromart import cart as cart_service
from agromart import config, orders, payments
from agromart.cache import idempotency_key
from agromart.errors import AppError
from agromart.rate_limit import general_limiter
from agromart.security import TokenPayload
from agromart.signature import build_signature_header, payment_signature

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(autouse=True)
def secrets(monkeypatch):
    monkeypatch.setattr(config, "PAYMENT_STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(config, "PAYMENT_SECRET", "paysecret_test")


@pytest.fixture
def pending_payment(db, cache, user, make_product, checkout_request):
    product = make_product(price=500.0, stock=10)
    cart_service.add_to_cart(db, str(user["_id"]), str(product["_id"]), 2)
    order = orders.checkout(db, cache, str(user["_id"]), checkout_request())
    token = TokenPayload(user_id=str(user["_id"]), email=user["email"])
    intent = payments.create_payment_intent(db, token, str(order["_id"]), order["total"])
    return {"order": order, "intent": intent, "product": product, "token": token}


def event_body(event_id, payment_id, event_type="payment_intent.succeeded"):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": {"id": payment_id}}})


def post_webhook(client, body, secret=WEBHOOK_SECRET):
    return client.post(
        "/api/payment/webhook",
        content=body,
        headers={"Stripe-Signature": build_signature_header(body, secret), "Content-Type": "application/json"},
    )


def test_create_intent_marks_order_processing(db, pending_payment):
    intent = pending_payment["intent"]
    order = db["orders"].find_one({"_id": pending_payment["order"]["_id"]})

    assert intent["payment_id"].startswith("pi_")
    assert intent["client_secret"].startswith(intent["payment_id"])
    assert intent["status"] == "pending"
    assert order["payment_status"] == "processing"


def test_create_intent_rejects_wrong_amount(db, pending_payment):
    order = pending_payment["order"]
    with pytest.raises(AppError) as exc:
        payments.create_payment_intent(db, pending_payment["token"], str(order["_id"]), order["total"] + 5)
    assert exc.value.code == "AMOUNT_MISMATCH"


def test_webhook_delivered_twice_is_processed_once(client, db, cache, pending_payment):
    body = event_body("evt_1", pending_payment["intent"]["payment_id"])

    first = post_webhook(client, body)
    second = post_webhook(client, body)

    assert first.status_code == 200
    assert first.json()["data"]["handled"] is True
    assert second.status_code == 200
    assert second.json() == {"success": True, "message": "Event already processed"}

    order = db["orders"].find_one({"_id": pending_payment["order"]["_id"]})
    assert order["status"] == "confirmed"
    assert order["payment_status"] == "paid"
    assert [e["status"] for e in order["tracking"]].count("confirmed") == 1
    assert cache.get(idempotency_key("evt_1")) == "processed"


def test_webhook_in_progress_returns_409(client, cache, pending_payment):
    cache.set(idempotency_key("evt_busy"), "processing")
    res = post_webhook(client, event_body("evt_busy", pending_payment["intent"]["payment_id"]))
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "WEBHOOK_IN_PROGRESS"


def test_webhook_missing_signature(client):
    res = client.post("/api/payment/webhook", content=event_body("evt_2", "pi_x"))
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "INVALID_SIGNATURE"


def test_webhook_bad_signature(client, cache):
    res = post_webhook(client, event_body("evt_3", "pi_x"), secret="whsec_wrong")
    assert res.status_code == 401
    assert res.json()["error"]["code"] == "INVALID_SIGNATURE"
    assert cache.get(idempotency_key("evt_3")) is None


def test_webhook_requires_event_fields(client):
    body = json.dumps({"type": "payment_intent.succeeded"})
    res = post_webhook(client, body)
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"


def test_failed_handler_releases_reservation(client, cache):
    res = post_webhook(client, event_body("evt_4", "pi_unknown"))
    assert res.status_code == 500
    assert cache.get(idempotency_key("evt_4")) is None


def test_unknown_event_type_is_acknowledged(client, cache):
    res = post_webhook(client, event_body("evt_5", "ch_1", "charge.refunded"))
    assert res.status_code == 200
    assert res.json()["data"]["handled"] is False
    assert cache.get(idempotency_key("evt_5")) == "processed"


def test_failure_event_cancels_pending_order_and_restores_stock(client, db, pending_payment):
    product_id = pending_payment["product"]["_id"]
    assert db["products"].find_one({"_id": product_id})["stock"] == 8

    res = post_webhook(client, event_body("evt_6", pending_payment["intent"]["payment_id"],
                                          "payment_intent.payment_failed"))

    assert res.status_code == 200
    order = db["orders"].find_one({"_id": pending_payment["order"]["_id"]})
    assert order["status"] == "cancelled"
    assert order["payment_status"] == "failed"
    assert db["products"].find_one({"_id": product_id})["stock"] == 10
    intent = db["payment_intents"].find_one({"payment_id": pending_payment["intent"]["payment_id"]})
    assert intent["status"] == "failed"


def test_verify_payment_with_valid_signature(client, user, auth_header, db, pending_payment):
    order_id = str(pending_payment["order"]["_id"])
    payment_id = pending_payment["intent"]["payment_id"]

    res = client.post("/api/payment/verify", json={
        "payment_id": payment_id, "order_id": order_id, "signature": payment_signature(order_id, payment_id),
    }, headers=auth_header(user))

    assert res.status_code == 200
    assert res.json()["data"]["verified"] is True
    assert res.json()["data"]["order"]["payment_status"] == "paid"


def test_verify_payment_with_bad_signature(client, user, auth_header, db, pending_payment):
    order_id = str(pending_payment["order"]["_id"])

    res = client.post("/api/payment/verify", json={
        "payment_id": pending_payment["intent"]["payment_id"], "order_id": order_id, "signature": "deadbeef",
    }, headers=auth_header(user))

    assert res.status_code == 400
    assert res.json()["error"]["code"] == "PAYMENT_FAILED"
    assert db["orders"].find_one({"_id": pending_payment["order"]["_id"]})["payment_status"] == "failed"


def test_simulate_success(client, user, auth_header, db, pending_payment):
    res = client.post("/api/payment/simulate-success",
                      json={"payment_id": pending_payment["intent"]["payment_id"]}, headers=auth_header(user))
    assert res.status_code == 200
    assert db["orders"].find_one({"_id": pending_payment["order"]["_id"]})["payment_status"] == "paid"


def test_simulation_is_hidden_in_production(client, user, auth_header, monkeypatch, pending_payment):
    monkeypatch.setattr(config, "IS_PRODUCTION", True)
    res = client.post("/api/payment/simulate-failure",
                      json={"payment_id": pending_payment["intent"]["payment_id"]}, headers=auth_header(user))
    assert res.status_code == 404


def test_payment_status(client, user, auth_header, pending_payment):
    order_id = str(pending_payment["order"]["_id"])
    res = client.get(f"/api/payment/status/{order_id}", headers=auth_header(user))
    data = res.json()["data"]
    assert data["payment_status"] == "processing"
    assert "client_secret" not in data["intents"][0]


def test_webhook_is_not_subject_to_general_limit(client, monkeypatch):
    monkeypatch.setattr(general_limiter, "max_requests", 2)
    statuses = [post_webhook(client, event_body(f"evt_burst_{i}", "ch_1", "charge.refunded")).status_code
                for i in range(5)]
    assert statuses == [200] * 5


def test_webhook_rejects_body_that_is_not_utf8(client):
    res = post_webhook(client, b"\xff\xfe{}")
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"


def test_webhook_rejects_non_object_data(client, cache):
    res = post_webhook(client, json.dumps({"id": "evt_7", "type": "payment_intent.succeeded", "data": "x"}))
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"
    assert cache.get(idempotency_key("evt_7")) is None


def test_payment_after_cancellation_is_flagged_for_refund(client, db, admin, auth_header, pending_payment):
    order_id = str(pending_payment["order"]["_id"])
    payment_id = pending_payment["intent"]["payment_id"]
    orders.cancel_order(db, order_id, pending_payment["token"])

    payments.handle_payment_success(db, payment_id)

    order = db["orders"].find_one({"_id": pending_payment["order"]["_id"]})
    assert order["status"] == "cancelled"
    assert order["payment_status"] == "refund_pending"
    assert db["products"].find_one({"_id": pending_payment["product"]["_id"]})["stock"] == 10

    res = client.post("/api/payment/refund", json={"order_id": order_id}, headers=auth_header(admin))

    assert res.status_code == 200
    assert res.json()["data"]["payment_status"] == "refunded"
    assert res.json()["data"]["status"] == "cancelled"
    assert db["payment_intents"].find_one({"payment_id": payment_id})["status"] == "refunded"
    assert db["products"].find_one({"_id": pending_payment["product"]["_id"]})["stock"] == 10


def test_refund_paid_order_over_http(client, db, user, admin, auth_header, pending_payment):
    order_id = str(pending_payment["order"]["_id"])
    payment_id = pending_payment["intent"]["payment_id"]
    payments.handle_payment_success(db, payment_id)

    forbidden = client.post("/api/payment/refund", json={"order_id": order_id}, headers=auth_header(user))
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "INSUFFICIENT_PERMISSIONS"

    res = client.post("/api/payment/refund", json={"order_id": order_id}, headers=auth_header(admin))

    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "refunded"
    assert data["payment_status"] == "refunded"
    assert data["refund_amount"] == pending_payment["order"]["total"]
    assert db["payment_intents"].find_one({"payment_id": payment_id})["status"] == "refunded"
    assert db["products"].find_one({"_id": pending_payment["product"]["_id"]})["stock"] == 10
