import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo import DESCENDING

from agromart.auth import get_user, public_user
from agromart.catalog import low_stock_products
from agromart.database import as_utc, get_db, serialize_doc, utcnow
from agromart.errors import AppError
from agromart.responses import ok, pagination
from agromart.schemas import AdminUserUpdate
from agromart.security import TokenPayload, require_admin
from agromart.seed import seed_database

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])

REVENUE_STATUSES = ["confirmed", "processing", "shipped", "delivered"]


# Users

def list_users(db, q: Optional[str] = None, is_admin: Optional[bool] = None, page: int = 1,
               limit: int = 20) -> dict:
    filt = {}
    if q:
        pattern = re.escape(q)
        filt["$or"] = [
            {"full_name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    if is_admin is not None:
        filt["is_admin"] = is_admin
    total = db["users"].count_documents(filt)
    cursor = db["users"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {"items": [public_user(u) for u in cursor], "pagination": pagination(total, page, limit)}


def user_detail(db, user_id: str) -> dict:
    user = public_user(get_user(db, user_id))
    user["order_count"] = db["orders"].count_documents({"user_id": user_id})
    user["review_count"] = db["reviews"].count_documents({"user_id": user_id})
    return user


def update_user(db, user_id: str, payload: AdminUserUpdate, admin: TokenPayload) -> dict:
    user = get_user(db, user_id)
    updates = payload.model_dump(exclude_none=True)
    if "email" in updates:
        updates["email"] = updates["email"].lower()
        if db["users"].find_one({"email": updates["email"], "_id": {"$ne": user["_id"]}}):
            raise AppError("An account with this email already exists", 409, "EMAIL_EXISTS")
    if user_id == admin.user_id and updates.get("is_admin") is False:
        raise AppError("You cannot remove your own admin access", 400, "CANNOT_MODIFY_SELF")
    if updates:
        updates["updated_at"] = utcnow()
        db["users"].update_one({"_id": user["_id"]}, {"$set": updates})
    return user_detail(db, user_id)


def delete_user(db, user_id: str) -> None:
    user = get_user(db, user_id)
    if user.get("is_admin"):
        raise AppError("Admin users cannot be deleted", 400, "CANNOT_DELETE_ADMIN")
    orders = db["orders"].count_documents({"user_id": user_id})
    if orders:
        raise AppError(f"Cannot delete user with {orders} orders", 400, "USER_HAS_ORDERS", {"orders": orders})
    db["users"].delete_one({"_id": user["_id"]})
    for collection in ("carts", "addresses", "wishlist"):
        db[collection].delete_many({"user_id": user_id})
    logger.info("Deleted user %s", user_id)


def user_stats(db) -> dict:
    month_ago = utcnow() - timedelta(days=30)
    return {
        "total": db["users"].count_documents({}),
        "admins": db["users"].count_documents({"is_admin": True}),
        "active": db["users"].count_documents({"is_active": {"$ne": False}}),
        "new_last_30_days": db["users"].count_documents({"created_at": {"$gte": month_ago}}),
    }


# Analytics

def dashboard(db) -> dict:
    revenue = sum(o.get("total", 0) for o in db["orders"].find({"payment_status": "paid"}, {"total": 1}))
    recent = db["orders"].find().sort("created_at", DESCENDING).limit(5)
    return {
        "total_users": db["users"].count_documents({}),
        "total_products": db["products"].count_documents({}),
        "total_orders": db["orders"].count_documents({}),
        "total_revenue": round(revenue, 2),
        "pending_orders": db["orders"].count_documents({"status": "pending"}),
        "low_stock_products": len(low_stock_products(db)),
        "recent_orders": [serialize_doc(o) for o in recent],
    }


def sales_report(db, start: datetime, end: datetime) -> dict:
    """Daily order count and revenue between ``start`` and ``end``, inclusive."""
    start, end = as_utc(start), as_utc(end)
    if start > end:
        raise AppError("start_date must be before end_date", 400, "VALIDATION_ERROR")
    days = {}
    for order in db["orders"].find({"payment_status": "paid"}):
        created = as_utc(order["created_at"])
        if not start <= created <= end:
            continue
        key = created.date().isoformat()
        bucket = days.setdefault(key, {"date": key, "orders": 0, "revenue": 0.0})
        bucket["orders"] += 1
        bucket["revenue"] = round(bucket["revenue"] + order.get("total", 0), 2)
    report = [days[k] for k in sorted(days)]
    return {
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "days": report,
        "total_orders": sum(d["orders"] for d in report),
        "total_revenue": round(sum(d["revenue"] for d in report), 2),
    }


def top_products(db, limit: int = 10) -> list:
    sold = {}
    for order in db["orders"].find({"status": {"$in": REVENUE_STATUSES}}, {"items": 1}):
        for item in order.get("items", []):
            entry = sold.setdefault(item["product_id"], {"product_id": item["product_id"], "name": item["name"],
                                                         "quantity_sold": 0, "revenue": 0.0})
            entry["quantity_sold"] += item["quantity"]
            entry["revenue"] = round(entry["revenue"] + item["line_total"], 2)
    return sorted(sold.values(), key=lambda e: e["quantity_sold"], reverse=True)[:limit]


# Admin Endpoints
@router.get("/users")
def users(
    q: Optional[str] = Query(None, max_length=100),
    is_admin: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_db),
):
    return ok(list_users(db, q, is_admin, page, limit))


@router.get("/users/stats")
def users_stats(db=Depends(get_db)):
    return ok(user_stats(db))


@router.get("/users/{user_id}")
def user_info(user_id: str, db=Depends(get_db)):
    return ok(user_detail(db, user_id))


@router.put("/users/{user_id}")
def edit_user(user_id: str, payload: AdminUserUpdate, admin: TokenPayload = Depends(require_admin),
              db=Depends(get_db)):
    return ok(update_user(db, user_id, payload, admin), "User updated")


@router.delete("/users/{user_id}")
def remove_user(user_id: str, db=Depends(get_db)):
    delete_user(db, user_id)
    return ok(message="User deleted")


@router.get("/stats")
def admin_stats(db=Depends(get_db)):
    users = db["users"].count_documents({})
    products = db["products"].count_documents({})
    orders = db["orders"].count_documents({})
    return ok({"users": users, "products": products, "orders": orders})


@router.get("/analytics/dashboard")
def analytics_dashboard(db=Depends(get_db)):
    return ok(dashboard(db))


@router.get("/analytics/sales")
def analytics_sales(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                    db=Depends(get_db)):
    end = end_date or utcnow()
    start = start_date or end - timedelta(days=30)
    return ok(sales_report(db, start, end))


@router.get("/analytics/products")
def analytics_products(limit: int = Query(10, ge=1, le=100), db=Depends(get_db)):
    return ok(top_products(db, limit))


# Seed demo data if empty
@router.post("/seed")
def seed_demo(db=Depends(get_db)):
    created = seed_database(db)
    status = "seeded" if any(created.values()) else "already-seeded"
    return ok({"status": status, "created": created})
