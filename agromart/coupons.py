import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo import DESCENDING

from agromart.database import as_utc, create_document, get_db, serialize_doc, to_object_id, utcnow
from agromart.errors import AppError, not_found
from agromart.responses import ok, pagination
from agromart.schemas import Coupon, CouponUpdate, ValidateCouponRequest
from agromart.security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/coupons", tags=["coupons"])
admin_router = APIRouter(prefix="/api/admin/coupons", tags=["admin-coupons"], dependencies=[Depends(require_admin)])


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def calculate_discount(coupon: dict, order_total: float) -> float:
    if coupon["type"] == "percentage":
        discount = order_total * coupon["value"] / 100
        if coupon.get("max_discount"):
            discount = min(discount, coupon["max_discount"])
    else:
        discount = min(coupon["value"], order_total)
    return round(discount, 2)


def validate_coupon(db, code: str, order_total: float) -> dict:
    """Return ``{"coupon", "discount"}`` for a usable code or raise with the reason."""
    code = normalize_code(code)
    coupon = db["coupons"].find_one({"code": code})
    if not coupon:
        raise AppError("Invalid coupon code", 400, "INVALID_COUPON", {"code": code})
    if not coupon.get("is_active", True):
        raise AppError("This coupon is no longer active", 400, "INVALID_COUPON", {"code": code})

    now = utcnow()
    valid_from = as_utc(coupon.get("valid_from"))
    if valid_from and now < valid_from:
        raise AppError("This coupon is not yet valid", 400, "INVALID_COUPON", {"code": code})
    valid_until = as_utc(coupon.get("valid_until"))
    if valid_until and now > valid_until:
        raise AppError("This coupon has expired", 400, "COUPON_EXPIRED", {"code": code})

    usage_limit = coupon.get("usage_limit")
    if usage_limit and coupon.get("used_count", 0) >= usage_limit:
        raise AppError("This coupon has reached its usage limit", 400, "COUPON_LIMIT_REACHED", {"code": code})

    min_order = coupon.get("min_order_value")
    if min_order and order_total < min_order:
        raise AppError(
            f"Minimum order value of {min_order} required for this coupon",
            400,
            "MINIMUM_ORDER_NOT_MET",
            {"code": code, "min_order_value": min_order, "order_total": order_total},
        )

    return {"coupon": coupon, "discount": calculate_discount(coupon, order_total)}


def apply_coupon_usage(db, coupon: dict) -> bool:
    """Count one use; False when the usage limit was reached since validation."""
    filt = {"_id": coupon["_id"]}
    if coupon.get("usage_limit"):
        filt["$or"] = [{"used_count": {"$lt": coupon["usage_limit"]}}, {"used_count": {"$exists": False}}]
    result = db["coupons"].update_one(filt, {"$inc": {"used_count": 1}, "$set": {"updated_at": utcnow()}})
    return result.modified_count == 1


def release_coupon_usage(db, coupon_id) -> None:
    db["coupons"].update_one({"_id": coupon_id}, {"$inc": {"used_count": -1}, "$set": {"updated_at": utcnow()}})


def public_coupon(coupon: dict) -> dict:
    return {
        "code": coupon["code"],
        "description": coupon.get("description"),
        "type": coupon["type"],
        "value": coupon["value"],
        "min_order_value": coupon.get("min_order_value"),
        "max_discount": coupon.get("max_discount"),
        "valid_until": as_utc(coupon["valid_until"]).isoformat() if coupon.get("valid_until") else None,
    }


def coupon_stats(coupon: dict) -> dict:
    used = coupon.get("used_count", 0)
    limit = coupon.get("usage_limit")
    return {
        "code": coupon["code"],
        "used_count": used,
        "usage_limit": limit,
        "remaining_uses": max(limit - used, 0) if limit else None,
        "is_active": coupon.get("is_active", True),
    }


def get_coupon_doc(db, coupon_id: str) -> dict:
    coupon = db["coupons"].find_one({"_id": to_object_id(coupon_id, "coupon ID")})
    if not coupon:
        raise not_found("Coupon", coupon_id)
    return coupon


def create_coupon(db, payload: Coupon) -> dict:
    if db["coupons"].find_one({"code": payload.code}):
        raise AppError("Coupon code already exists", 409, "DUPLICATE_ENTRY", {"field": "code"})
    data = payload.model_dump()
    if data["valid_from"] is None:
        data["valid_from"] = utcnow()
    data["used_count"] = 0
    coupon_id = create_document(db, "coupons", data)
    logger.info("Created coupon %s", payload.code)
    return serialize_doc(get_coupon_doc(db, coupon_id))


def update_coupon(db, coupon_id: str, payload: CouponUpdate) -> dict:
    coupon = get_coupon_doc(db, coupon_id)
    updates = payload.model_dump(exclude_none=True)
    if "code" in updates:
        duplicate = db["coupons"].find_one({"code": updates["code"], "_id": {"$ne": coupon["_id"]}})
        if duplicate:
            raise AppError("Coupon code already exists", 409, "DUPLICATE_ENTRY", {"field": "code"})
    merged = {**coupon, **updates}
    if merged["type"] == "percentage" and merged["value"] > 100:
        raise AppError("Percentage must be between 0 and 100", 400, "VALIDATION_ERROR")
    valid_from, valid_until = as_utc(merged.get("valid_from")), as_utc(merged.get("valid_until"))
    if valid_from and valid_until and valid_from >= valid_until:
        raise AppError("Valid from date must be before valid until date", 400, "VALIDATION_ERROR")
    if updates:
        updates["updated_at"] = utcnow()
        db["coupons"].update_one({"_id": coupon["_id"]}, {"$set": updates})
    return serialize_doc(get_coupon_doc(db, coupon_id))


def toggle_coupon(db, coupon_id: str) -> dict:
    coupon = get_coupon_doc(db, coupon_id)
    db["coupons"].update_one(
        {"_id": coupon["_id"]}, {"$set": {"is_active": not coupon.get("is_active", True), "updated_at": utcnow()}}
    )
    return serialize_doc(get_coupon_doc(db, coupon_id))


# Coupon Endpoints
@router.get("/{code}")
def preview_coupon(code: str, db=Depends(get_db)):
    coupon = db["coupons"].find_one({"code": normalize_code(code), "is_active": True})
    if not coupon:
        raise AppError("Invalid coupon code", 404, "INVALID_COUPON", {"code": normalize_code(code)})
    return ok(public_coupon(coupon))


@router.post("/validate")
def check_coupon(payload: ValidateCouponRequest, db=Depends(get_db)):
    result = validate_coupon(db, payload.code, payload.order_total)
    return ok(
        {
            "coupon": public_coupon(result["coupon"]),
            "discount": result["discount"],
            "final_total": round(payload.order_total - result["discount"], 2),
        },
        "Coupon is valid",
    )


# Admin Endpoints
@admin_router.get("")
def list_coupons(
    active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_db),
):
    filt = {} if active is None else {"is_active": active}
    total = db["coupons"].count_documents(filt)
    cursor = db["coupons"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return ok({"items": [serialize_doc(c) for c in cursor], "pagination": pagination(total, page, limit)})


@admin_router.post("", status_code=201)
def add_coupon(payload: Coupon, db=Depends(get_db)):
    return ok(create_coupon(db, payload), "Coupon created")


@admin_router.get("/{coupon_id}")
def get_coupon(coupon_id: str, db=Depends(get_db)):
    return ok(serialize_doc(get_coupon_doc(db, coupon_id)))


@admin_router.put("/{coupon_id}")
def edit_coupon(coupon_id: str, payload: CouponUpdate, db=Depends(get_db)):
    return ok(update_coupon(db, coupon_id, payload), "Coupon updated")


@admin_router.patch("/{coupon_id}/toggle")
def switch_coupon(coupon_id: str, db=Depends(get_db)):
    return ok(toggle_coupon(db, coupon_id), "Coupon status updated")


@admin_router.get("/{coupon_id}/stats")
def get_coupon_stats(coupon_id: str, db=Depends(get_db)):
    return ok(coupon_stats(get_coupon_doc(db, coupon_id)))


@admin_router.delete("/{coupon_id}")
def remove_coupon(coupon_id: str, db=Depends(get_db)):
    coupon = get_coupon_doc(db, coupon_id)
    db["coupons"].delete_one({"_id": coupon["_id"]})
    return ok(message="Coupon deleted")
