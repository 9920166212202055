import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from pymongo import DESCENDING

from agromart import config
from agromart.cache import PROCESSING, get_cache, release_idempotency, reserve_idempotency
from agromart.cart import cart_lines, clear_cart, get_or_create_cart
from agromart.catalog import reserve_stock, restore_stock
from agromart.coupons import apply_coupon_usage, release_coupon_usage, validate_coupon
from agromart.database import get_db, serialize_doc, to_object_id, utcnow
from agromart.errors import AppError
from agromart.rate_limit import order_limiter
from agromart.responses import ok, pagination
from agromart.schemas import (
    CancelOrderRequest,
    CheckoutRequest,
    OrderStatus,
    OrderStatusUpdate,
    TrackingNote,
)
from agromart.security import TokenPayload, authenticate, require_admin, require_self_or_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["orders"])
admin_router = APIRouter(prefix="/api/admin/orders", tags=["admin-orders"], dependencies=[Depends(require_admin)])

FREE_SHIPPING_THRESHOLD = 5000
SHIPPING_FEE = 200
TAX_RATE = 0.18

ORDER_TRANSITIONS = {
    "pending": {"confirmed", "processing", "cancelled"},
    "confirmed": {"processing", "cancelled", "refunded"},
    "processing": {"shipped", "cancelled", "refunded"},
    "shipped": {"delivered"},
    "delivered": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
}

STATUS_DESCRIPTIONS = {
    "pending": "Order placed",
    "confirmed": "Payment received, order confirmed",
    "processing": "Order is being prepared",
    "shipped": "Order has been shipped",
    "delivered": "Order delivered",
    "cancelled": "Order cancelled",
    "refunded": "Order refunded",
}

COMPANY = {
    "name": "AgroMart",
    "address": "Agricultural Market Complex, India",
    "email": "support@agromart.com",
    "phone": "+91-1234567890",
    "website": "https://agromart.com",
}


def is_valid_transition(current: str, new: str) -> bool:
    return current == new or new in ORDER_TRANSITIONS.get(current, set())


def check_transition(current: str, new: str) -> None:
    if not is_valid_transition(current, new):
        raise AppError(
            f"Cannot change order status from {current} to {new}",
            400,
            "INVALID_STATUS_TRANSITION",
            {"from": current, "to": new, "allowed": sorted(ORDER_TRANSITIONS.get(current, set()))},
        )


def calculate_shipping(subtotal: float) -> float:
    return 0 if subtotal >= FREE_SHIPPING_THRESHOLD else SHIPPING_FEE


def calculate_tax(subtotal: float, discount: float) -> float:
    return round((subtotal - discount) * TAX_RATE, 2)


def order_totals(subtotal: float, discount: float = 0) -> dict:
    shipping = calculate_shipping(subtotal)
    tax = calculate_tax(subtotal, discount)
    return {
        "subtotal": round(subtotal, 2),
        "discount": round(discount, 2),
        "shipping": shipping,
        "tax": tax,
        "total": round(subtotal - discount + shipping + tax, 2),
    }


def tracking_entry(status: str, description: Optional[str] = None, location: Optional[str] = None) -> dict:
    return {
        "status": status,
        "description": description or STATUS_DESCRIPTIONS.get(status, status),
        "location": location,
        "created_at": utcnow(),
    }


def add_tracking_entry(db, order_id, status: str, description: Optional[str] = None,
                       location: Optional[str] = None) -> None:
    db["orders"].update_one(
        {"_id": order_id},
        {"$push": {"tracking": tracking_entry(status, description, location)}, "$set": {"updated_at": utcnow()}},
    )


def get_order_doc(db, order_id: str) -> dict:
    order = db["orders"].find_one({"_id": to_object_id(order_id, "order ID")})
    if not order:
        raise AppError("Order not found", 404, "ORDER_NOT_FOUND", {"order_id": order_id})
    return order


def get_order(db, order_id: str, user: TokenPayload) -> dict:
    order = get_order_doc(db, order_id)
    require_self_or_admin(order.get("user_id"), user)
    return order


def _resolve_address(db, user_id: str, payload: CheckoutRequest) -> dict:
    if payload.shipping_address:
        return payload.shipping_address.model_dump()
    address = db["addresses"].find_one(
        {"_id": to_object_id(payload.address_id, "address ID"), "user_id": user_id}
    )
    if not address:
        raise AppError("Address not found", 404, "ADDRESS_NOT_FOUND", {"address_id": payload.address_id})
    return {k: address.get(k) for k in ("full_name", "phone", "address_line", "city", "state", "pincode", "country")}


def _create_order(db, user_id: str, payload: CheckoutRequest) -> dict:
    cart = get_or_create_cart(db, user_id)
    lines = cart_lines(db, cart)
    if not lines:
        raise AppError("Cart is empty", 400, "EMPTY_CART")

    shipping_address = _resolve_address(db, user_id, payload)
    items = [
        {
            "product_id": line["product_id"],
            "name": line["name"],
            "image": line["image"],
            "price": line["price"],
            "quantity": line["quantity"],
            "line_total": line["line_total"],
        }
        for line in lines
    ]
    subtotal = sum(item["line_total"] for item in items)

    coupon = None
    discount = 0.0
    code = payload.coupon_code or (cart.get("coupon") or {}).get("code")
    if code:
        result = validate_coupon(db, code, subtotal)
        coupon = result["coupon"]
        discount = result["discount"]

    reserve_stock(db, items)
    if coupon and not apply_coupon_usage(db, coupon):
        restore_stock(db, items)
        raise AppError("This coupon has reached its usage limit", 400, "COUPON_LIMIT_REACHED",
                       {"code": coupon["code"]})
    now = utcnow()
    order = {
        "user_id": user_id,
        "items": items,
        "shipping_address": shipping_address,
        "payment_method": payload.payment_method,
        **order_totals(subtotal, discount),
        "coupon": {"code": coupon["code"], "discount": discount} if coupon else None,
        "status": "pending",
        "payment_status": "pending",
        "tracking": [tracking_entry("pending")],
        "created_at": now,
        "updated_at": now,
    }
    try:
        order["_id"] = db["orders"].insert_one(order).inserted_id
    except Exception:
        restore_stock(db, items)
        if coupon:
            release_coupon_usage(db, coupon["_id"])
        raise

    clear_cart(db, user_id)
    logger.info("Order %s placed by user %s (total %.2f)", order["_id"], user_id, order["total"])
    return order


def checkout(db, cache, user_id: str, payload: CheckoutRequest, idempotency_key: Optional[str] = None) -> dict:
    """Place an order from the user's cart; a repeated idempotency key returns the first order."""
    if not idempotency_key:
        return _create_order(db, user_id, payload)

    key = f"checkout:{user_id}:{idempotency_key}"
    if not reserve_idempotency(cache, key):
        existing = cache.get(key)
        if existing == PROCESSING:
            raise AppError("A checkout with this idempotency key is in progress", 409, "CHECKOUT_IN_PROGRESS")
        if existing:
            return get_order_doc(db, existing)
        if not reserve_idempotency(cache, key):
            raise AppError("A checkout with this idempotency key is in progress", 409, "CHECKOUT_IN_PROGRESS")
    try:
        order = _create_order(db, user_id, payload)
    except Exception:
        release_idempotency(cache, key)
        raise
    cache.set(key, str(order["_id"]), ex=config.IDEMPOTENCY_TTL_SECONDS)
    return order


def get_user_orders(db, user_id: str, page: int = 1, limit: int = 20, status: Optional[str] = None) -> dict:
    filt = {"user_id": user_id}
    if status:
        filt["status"] = status
    total = db["orders"].count_documents(filt)
    cursor = db["orders"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {"items": [serialize_doc(o) for o in cursor], "pagination": pagination(total, page, limit)}


def get_all_orders(db, page: int = 1, limit: int = 20, status: Optional[str] = None,
                   user_id: Optional[str] = None) -> dict:
    filt = {}
    if status:
        filt["status"] = status
    if user_id:
        filt["user_id"] = user_id
    total = db["orders"].count_documents(filt)
    cursor = db["orders"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {"items": [serialize_doc(o) for o in cursor], "pagination": pagination(total, page, limit)}


def release_order_stock(db, order: dict) -> None:
    if not order.get("stock_restored"):
        restore_stock(db, order["items"])
        db["orders"].update_one({"_id": order["_id"]}, {"$set": {"stock_restored": True}})


def cancel_order(db, order_id: str, user: TokenPayload, reason: Optional[str] = None) -> dict:
    order = get_order(db, order_id, user)
    if order["status"] == "cancelled":
        return order
    check_transition(order["status"], "cancelled")
    updates = {"status": "cancelled", "cancel_reason": reason, "cancelled_at": utcnow(), "updated_at": utcnow()}
    if order.get("payment_status") == "paid":
        updates["payment_status"] = "refunded"
    result = db["orders"].update_one({"_id": order["_id"], "status": order["status"]}, {"$set": updates})
    if result.modified_count == 0:
        raise AppError("Order status changed, please retry", 409, "CONCURRENT_UPDATE")
    release_order_stock(db, order)
    add_tracking_entry(db, order["_id"], "cancelled", reason or STATUS_DESCRIPTIONS["cancelled"])
    logger.info("Order %s cancelled", order_id)
    return get_order_doc(db, order_id)


def _refund_late_payment(db, order: dict) -> dict:
    now = utcnow()
    db["orders"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_status": "refunded", "refund_amount": order["total"], "refunded_at": now,
                  "updated_at": now}},
    )
    db["payment_intents"].update_many(
        {"order_id": str(order["_id"]), "status": "succeeded"},
        {"$set": {"status": "refunded", "refunded_at": now}},
    )
    add_tracking_entry(db, order["_id"], order["status"], f"Refund of {order['total']:.2f} issued")
    logger.info("Late payment on %s order %s refunded", order["status"], order["_id"])
    return get_order_doc(db, str(order["_id"]))


def refund_order(db, order_id: str, amount: Optional[float] = None) -> dict:
    order = get_order_doc(db, order_id)
    if order["status"] in ("cancelled", "refunded") and order.get("payment_status") == "refund_pending":
        return _refund_late_payment(db, order)
    check_transition(order["status"], "refunded")
    if order["status"] == "refunded":
        return order
    refund_amount = round(amount if amount is not None else order["total"], 2)
    if refund_amount > order["total"]:
        raise AppError(
            "Refund amount cannot exceed order total",
            400,
            "INVALID_REFUND_AMOUNT",
            {"amount": refund_amount, "total": order["total"]},
        )
    now = utcnow()
    db["orders"].update_one(
        {"_id": order["_id"]},
        {"$set": {"status": "refunded", "payment_status": "refunded", "refund_amount": refund_amount,
                  "refunded_at": now, "updated_at": now}},
    )
    db["payment_intents"].update_many(
        {"order_id": order_id, "status": "succeeded"},
        {"$set": {"status": "refunded", "refunded_at": now}},
    )
    release_order_stock(db, order)
    add_tracking_entry(db, order["_id"], "refunded", f"Refund of {refund_amount:.2f} issued")
    logger.info("Order %s refunded (%.2f)", order_id, refund_amount)
    return get_order_doc(db, order_id)


def update_order_status(db, order_id: str, status: OrderStatus, note: Optional[str] = None) -> dict:
    order = get_order_doc(db, order_id)
    check_transition(order["status"], status)
    if order["status"] == status:
        return order
    if status == "refunded":
        return refund_order(db, order_id)

    updates = {"status": status, "updated_at": utcnow()}
    if status == "delivered":
        updates["delivered_at"] = utcnow()
        if order.get("payment_method") == "cod":
            updates["payment_status"] = "paid"
    elif status == "shipped":
        updates["shipped_at"] = utcnow()
    result = db["orders"].update_one({"_id": order["_id"], "status": order["status"]}, {"$set": updates})
    if result.modified_count == 0:
        raise AppError("Order status changed, please retry", 409, "CONCURRENT_UPDATE")
    if status == "cancelled":
        release_order_stock(db, order)
    add_tracking_entry(db, order["_id"], status, note)
    logger.info("Order %s moved from %s to %s", order_id, order["status"], status)
    return get_order_doc(db, order_id)


def get_tracking(order: dict) -> dict:
    timeline = sorted(order.get("tracking", []), key=lambda entry: entry["created_at"])
    return serialize_doc({
        "order_id": str(order["_id"]),
        "status": order["status"],
        "payment_status": order.get("payment_status"),
        "timeline": timeline,
        "delivered_at": order.get("delivered_at"),
    })


def build_invoice(db, order: dict) -> dict:
    order_id = str(order["_id"])
    customer = db["users"].find_one({"_id": to_object_id(order["user_id"], "user ID")}) or {}
    return serialize_doc({
        "invoice_number": f"INV-{order_id[-8:].upper()}",
        "order_id": order_id,
        "date": order["created_at"],
        "status": order["status"],
        "payment_status": order.get("payment_status"),
        "payment_method": order.get("payment_method"),
        "company": COMPANY,
        "customer": {
            "name": customer.get("full_name"),
            "email": customer.get("email"),
            "phone": customer.get("phone"),
        },
        "shipping_address": order.get("shipping_address"),
        "items": [
            {
                "name": item["name"],
                "quantity": item["quantity"],
                "unit_price": item["price"],
                "total": item["line_total"],
            }
            for item in order["items"]
        ],
        "summary": {k: order.get(k) for k in ("subtotal", "discount", "shipping", "tax", "total")},
        "coupon": order.get("coupon"),
    })


# Order Endpoints
@router.post("/checkout", status_code=201, dependencies=[Depends(order_limiter)])
def place_order(
    payload: CheckoutRequest,
    idempotency_key: Optional[str] = Header(None, max_length=200),
    user: TokenPayload = Depends(authenticate),
    db=Depends(get_db),
    cache=Depends(get_cache),
):
    order = checkout(db, cache, user.user_id, payload, idempotency_key)
    return ok(serialize_doc(order), "Order placed successfully")


@router.get("/orders")
def my_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: TokenPayload = Depends(authenticate),
    db=Depends(get_db),
):
    return ok(get_user_orders(db, user.user_id, page, limit, status))


@router.get("/orders/{order_id}")
def order_detail(order_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(serialize_doc(get_order(db, order_id, user)))


@router.post("/orders/{order_id}/cancel")
def cancel(order_id: str, payload: Optional[CancelOrderRequest] = None, user: TokenPayload = Depends(authenticate),
           db=Depends(get_db)):
    reason = payload.reason if payload else None
    return ok(serialize_doc(cancel_order(db, order_id, user, reason)), "Order cancelled")


@router.get("/orders/{order_id}/tracking")
def tracking(order_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(get_tracking(get_order(db, order_id, user)))


@router.get("/orders/{order_id}/invoice")
def invoice(order_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(build_invoice(db, get_order(db, order_id, user)))


# Admin Endpoints
@admin_router.get("")
def list_orders(
    status: Optional[OrderStatus] = None,
    user_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_db),
):
    return ok(get_all_orders(db, page, limit, status, user_id))


@admin_router.get("/{order_id}")
def admin_order_detail(order_id: str, db=Depends(get_db)):
    return ok(serialize_doc(get_order_doc(db, order_id)))


@admin_router.patch("/{order_id}/status")
def change_status(order_id: str, payload: OrderStatusUpdate, db=Depends(get_db)):
    return ok(serialize_doc(update_order_status(db, order_id, payload.status, payload.note)), "Order status updated")


@admin_router.post("/{order_id}/tracking", status_code=201)
def add_note(order_id: str, payload: TrackingNote, db=Depends(get_db)):
    order = get_order_doc(db, order_id)
    add_tracking_entry(db, order["_id"], order["status"], payload.description, payload.location)
    return ok(get_tracking(get_order_doc(db, order_id)), "Tracking updated")
