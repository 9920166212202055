"""
Payment intents, client-side verification and the provider webhook.

Webhook deliveries are deduplicated through the cache: the event id is
reserved with ``SET NX`` before any state changes, marked processed once the
handler finishes, and released again when the handler fails so that the
provider's retry is processed.
"""
import json
import logging
import secrets
from typing import Optional, Union

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from pymongo import DESCENDING

from agromart import config
from agromart.cache import (
    PROCESSED,
    PROCESSING,
    check_idempotency,
    get_cache,
    idempotency_key,
    mark_processed,
    release_idempotency,
    reserve_idempotency,
)
from agromart.database import get_db, serialize_doc, utcnow
from agromart.errors import AppError
from agromart.orders import add_tracking_entry, get_order, get_order_doc, refund_order, release_order_stock
from agromart.rate_limit import payment_limiter, payment_verify_limiter
from agromart.responses import ok
from agromart.schemas import PaymentIntentRequest, RefundRequest, SimulatePaymentRequest, VerifyPaymentRequest
from agromart.security import TokenPayload, authenticate, require_permission, require_self_or_admin
from agromart.signature import build_signature_header, verify_payment_signature, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment", tags=["payment"])
# Provider callbacks; mounted without the general limiter
webhook_router = APIRouter(prefix="/api/payment", tags=["payment"])

SUCCEEDED_EVENTS = {"payment_intent.succeeded"}
FAILED_EVENTS = {"payment_intent.payment_failed", "payment_intent.failed"}
AMOUNT_TOLERANCE = 0.01


def get_intent(db, payment_id: str) -> dict:
    intent = db["payment_intents"].find_one({"payment_id": payment_id})
    if not intent:
        raise AppError("Payment intent not found", 404, "PAYMENT_NOT_FOUND", {"payment_id": payment_id})
    return intent


def create_payment_intent(db, user: TokenPayload, order_id: str, amount: float) -> dict:
    order = get_order(db, order_id, user)
    if order.get("payment_status") == "paid":
        raise AppError("Order is already paid", 400, "ALREADY_PAID")
    if order["status"] in ("cancelled", "refunded"):
        raise AppError(f"Cannot pay for a {order['status']} order", 400, "INVALID_ORDER_STATE")
    if abs(amount - order["total"]) > AMOUNT_TOLERANCE:
        raise AppError(
            "Payment amount does not match order total",
            400,
            "AMOUNT_MISMATCH",
            {"amount": amount, "total": order["total"]},
        )

    payment_id = f"pi_{secrets.token_hex(12)}"
    intent = {
        "payment_id": payment_id,
        "client_secret": f"{payment_id}_secret_{secrets.token_hex(12)}",
        "order_id": order_id,
        "user_id": order["user_id"],
        "amount": order["total"],
        "currency": "inr",
        "status": "pending",
        "created_at": utcnow(),
        "updated_at": utcnow(),
    }
    db["payment_intents"].insert_one(intent)
    db["orders"].update_one(
        {"_id": order["_id"]}, {"$set": {"payment_status": "processing", "updated_at": utcnow()}}
    )
    logger.info("Created payment intent %s for order %s", payment_id, order_id)
    return {
        "payment_id": payment_id,
        "client_secret": intent["client_secret"],
        "amount": intent["amount"],
        "currency": intent["currency"],
        "status": intent["status"],
    }


def handle_payment_success(db, payment_id: str) -> dict:
    intent = get_intent(db, payment_id)
    order = get_order_doc(db, intent["order_id"])
    if intent["status"] == "succeeded" and order.get("payment_status") in ("paid", "refund_pending"):
        return order
    if intent["status"] == "refunded":
        return order

    now = utcnow()
    db["payment_intents"].update_one(
        {"_id": intent["_id"]}, {"$set": {"status": "succeeded", "updated_at": now}}
    )
    if order["status"] in ("cancelled", "refunded"):
        db["orders"].update_one(
            {"_id": order["_id"]}, {"$set": {"payment_status": "refund_pending", "updated_at": now}}
        )
        add_tracking_entry(db, order["_id"], order["status"], "Payment received for a closed order, refund pending")
        logger.warning("Payment %s captured on %s order %s; flagged for refund",
                       payment_id, order["status"], intent["order_id"])
        return get_order_doc(db, intent["order_id"])
    db["orders"].update_one(
        {"_id": order["_id"]}, {"$set": {"payment_status": "paid", "paid_at": now, "updated_at": now}}
    )
    confirmed = db["orders"].update_one(
        {"_id": order["_id"], "status": "pending"}, {"$set": {"status": "confirmed"}}
    )
    if confirmed.modified_count:
        add_tracking_entry(db, order["_id"], "confirmed", "Payment received, order confirmed")
    logger.info("Payment %s succeeded for order %s", payment_id, intent["order_id"])
    return get_order_doc(db, intent["order_id"])


def handle_payment_failure(db, payment_id: str, reason: Optional[str] = None) -> dict:
    intent = get_intent(db, payment_id)
    order = get_order_doc(db, intent["order_id"])
    if order.get("payment_status") in ("paid", "refund_pending", "refunded"):
        logger.warning("Ignoring failure for payment %s on paid order %s", payment_id, intent["order_id"])
        return order

    now = utcnow()
    db["payment_intents"].update_one(
        {"_id": intent["_id"]}, {"$set": {"status": "failed", "failure_reason": reason, "updated_at": now}}
    )
    db["orders"].update_one({"_id": order["_id"]}, {"$set": {"payment_status": "failed", "updated_at": now}})
    cancelled = db["orders"].update_one(
        {"_id": order["_id"], "status": "pending"},
        {"$set": {"status": "cancelled", "cancel_reason": reason or "Payment failed", "cancelled_at": now}},
    )
    if cancelled.modified_count:
        release_order_stock(db, order)
        add_tracking_entry(db, order["_id"], "cancelled", "Payment failed, order cancelled")
    logger.info("Payment %s failed for order %s", payment_id, intent["order_id"])
    return get_order_doc(db, intent["order_id"])


def verify_payment(db, user: TokenPayload, payment_id: str, order_id: str, signature: str) -> dict:
    intent = get_intent(db, payment_id)
    if intent["order_id"] != order_id:
        raise AppError("Payment does not match order", 400, "PAYMENT_MISMATCH")
    get_order(db, order_id, user)
    if not verify_payment_signature(order_id, payment_id, signature):
        handle_payment_failure(db, payment_id, "Signature verification failed")
        raise AppError("Payment verification failed", 400, "PAYMENT_FAILED")
    order = handle_payment_success(db, payment_id)
    return {"verified": True, "order": serialize_doc(order)}


def parse_event(payload: Union[str, bytes]) -> dict:
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        event = json.loads(payload)
    except ValueError:
        raise AppError("Webhook body must be valid UTF-8 JSON", 400, "VALIDATION_ERROR")
    if not isinstance(event, dict):
        raise AppError("Webhook event must be a JSON object", 400, "VALIDATION_ERROR")
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not event.get("id") or not event.get("type") or not isinstance(obj, dict) or not obj.get("id"):
        raise AppError("Webhook event must include id, type and data.object.id", 400, "VALIDATION_ERROR")
    return event


def dispatch_event(db, event: dict) -> bool:
    """Apply one event; returns False for event types that are acknowledged but ignored."""
    obj = event["data"]["object"]
    if event["type"] in SUCCEEDED_EVENTS:
        handle_payment_success(db, obj["id"])
    elif event["type"] in FAILED_EVENTS:
        error = obj.get("last_payment_error")
        reason = error.get("message") if isinstance(error, dict) else None
        handle_payment_failure(db, obj["id"], reason)
    else:
        logger.info("Ignoring webhook event %s of type %s", event["id"], event["type"])
        return False
    return True


def handle_webhook(db, cache, payload: Union[str, bytes], signature: Optional[str]) -> dict:
    if not signature:
        raise AppError("Missing webhook signature", 400, "INVALID_SIGNATURE")
    if not verify_webhook_signature(payload, signature, config.PAYMENT_STRIPE_WEBHOOK_SECRET):
        logger.warning("Rejected webhook with invalid signature")
        raise AppError("Invalid webhook signature", 401, "INVALID_SIGNATURE")

    event = parse_event(payload)
    key = idempotency_key(event["id"])
    if not reserve_idempotency(cache, key):
        state = check_idempotency(cache, key)
        if state == PROCESSED:
            logger.info("Webhook event %s already processed", event["id"])
            return {"success": True, "message": "Event already processed"}
        if state == PROCESSING or not reserve_idempotency(cache, key):
            raise AppError("Event is already being processed", 409, "WEBHOOK_IN_PROGRESS")

    try:
        handled = dispatch_event(db, event)
    except Exception as exc:
        release_idempotency(cache, key)
        logger.exception("Webhook event %s failed", event["id"])
        raise AppError("Webhook processing failed", 500, "WEBHOOK_PROCESSING_FAILED") from exc

    mark_processed(cache, key)
    return {
        "success": True,
        "message": "Webhook processed" if handled else "Event type ignored",
        "data": {"event_id": event["id"], "type": event["type"], "handled": handled},
    }


def payment_status(db, user: TokenPayload, order_id: str) -> dict:
    order = get_order(db, order_id, user)
    intents = db["payment_intents"].find({"order_id": order_id}).sort("created_at", DESCENDING)
    return {
        "order_id": order_id,
        "status": order["status"],
        "payment_status": order.get("payment_status"),
        "total": order["total"],
        "intents": [
            {k: v for k, v in serialize_doc(intent).items() if k != "client_secret"} for intent in intents
        ],
    }


def simulate_event(db, cache, user: TokenPayload, payment_id: str, event_type: str) -> dict:
    if config.IS_PRODUCTION:
        raise AppError("Route not found", 404, "ROUTE_NOT_FOUND")
    intent = get_intent(db, payment_id)
    require_self_or_admin(intent.get("user_id"), user)
    event = {
        "id": f"evt_sim_{secrets.token_hex(8)}",
        "type": event_type,
        "data": {"object": {"id": payment_id}},
    }
    payload = json.dumps(event)
    signature = build_signature_header(payload, config.PAYMENT_STRIPE_WEBHOOK_SECRET)
    return handle_webhook(db, cache, payload, signature)


# Payment Endpoints
@router.post("/create-intent", status_code=201, dependencies=[Depends(payment_limiter)])
def create_intent(payload: PaymentIntentRequest, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(create_payment_intent(db, user, payload.order_id, payload.amount), "Payment intent created")


@router.post("/verify", dependencies=[Depends(payment_verify_limiter)])
def verify(payload: VerifyPaymentRequest, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    result = verify_payment(db, user, payload.payment_id, payload.order_id, payload.signature)
    return ok(result, "Payment verified successfully")


@webhook_router.post("/webhook")
async def webhook(request: Request, stripe_signature: Optional[str] = Header(None), db=Depends(get_db),
                  cache=Depends(get_cache)):
    payload = await request.body()
    return await run_in_threadpool(handle_webhook, db, cache, payload, stripe_signature)


@router.get("/status/{order_id}")
def status(order_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(payment_status(db, user, order_id))


@router.post("/refund")
def refund(payload: RefundRequest, admin: TokenPayload = Depends(require_permission("orders:refund")),
           db=Depends(get_db)):
    order = refund_order(db, payload.order_id, payload.amount)
    logger.info("Admin %s refunded order %s", admin.user_id, payload.order_id)
    return ok(serialize_doc(order), "Refund processed")


@router.post("/simulate-success")
def simulate_success(payload: SimulatePaymentRequest, user: TokenPayload = Depends(authenticate),
                     db=Depends(get_db), cache=Depends(get_cache)):
    return simulate_event(db, cache, user, payload.payment_id, "payment_intent.succeeded")


@router.post("/simulate-failure")
def simulate_failure(payload: SimulatePaymentRequest, user: TokenPayload = Depends(authenticate),
                     db=Depends(get_db), cache=Depends(get_cache)):
    return simulate_event(db, cache, user, payload.payment_id, "payment_intent.payment_failed")
