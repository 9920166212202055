import logging
from typing import List

from bson import ObjectId
from fastapi import APIRouter, Depends
from pymongo import ReturnDocument

from agromart.coupons import calculate_discount, validate_coupon
from agromart.database import get_db, to_object_id, utcnow
from agromart.errors import AppError
from agromart.rate_limit import cart_limiter
from agromart.responses import ok
from agromart.schemas import AddToCartRequest, ApplyCouponRequest, SyncCartRequest, UpdateCartItemRequest
from agromart.security import TokenPayload, authenticate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])

MAX_LINE_QUANTITY = 100
MAX_SYNC_QUANTITY = 50


def get_or_create_cart(db, user_id: str) -> dict:
    now = utcnow()
    return db["carts"].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {"items": [], "coupon": None, "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def _product(db, product_id: str) -> dict:
    product = db["products"].find_one({"_id": to_object_id(product_id, "product ID")})
    if not product:
        raise AppError("Product not found", 404, "PRODUCT_NOT_FOUND", {"product_id": product_id})
    return product


def _check_stock(product: dict, quantity: int) -> None:
    stock = product.get("stock", 0)
    if stock <= 0:
        raise AppError(f"{product['name']} is out of stock", 400, "OUT_OF_STOCK", {"product": product["name"]})
    if quantity > stock:
        raise AppError(
            f"Only {stock} units of {product['name']} available",
            400,
            "INSUFFICIENT_STOCK",
            {"product": product["name"], "requested": quantity, "available": stock},
        )


def _find_line(cart: dict, product_id: str):
    for item in cart.get("items", []):
        if item["product_id"] == product_id:
            return item
    return None


def cart_lines(db, cart: dict) -> List[dict]:
    """Join stored lines to current product data; lines whose product is gone are dropped."""
    ids = [ObjectId(item["product_id"]) for item in cart.get("items", []) if ObjectId.is_valid(item["product_id"])]
    products = {str(p["_id"]): p for p in db["products"].find({"_id": {"$in": ids}})}
    lines = []
    for item in cart.get("items", []):
        product = products.get(item["product_id"])
        if not product:
            continue
        lines.append({
            "product_id": item["product_id"],
            "name": product["name"],
            "slug": product.get("slug"),
            "image": (product.get("images") or [None])[0],
            "price": product["price"],
            "stock": product.get("stock", 0),
            "quantity": item["quantity"],
            "line_total": round(product["price"] * item["quantity"], 2),
        })
    return lines


def cart_totals(lines: List[dict], coupon: dict = None) -> dict:
    subtotal = round(sum(line["line_total"] for line in lines), 2)
    discount = 0.0
    if coupon and subtotal >= (coupon.get("min_order_value") or 0):
        discount = calculate_discount(coupon, subtotal)
    return {"subtotal": subtotal, "discount": discount, "total": round(subtotal - discount, 2)}


def get_cart(db, user_id: str) -> dict:
    cart = get_or_create_cart(db, user_id)
    lines = cart_lines(db, cart)
    coupon = cart.get("coupon")
    totals = cart_totals(lines, coupon)
    if coupon:
        coupon = {**coupon, "discount": totals["discount"]}
    return {
        "id": str(cart["_id"]),
        "items": lines,
        "item_count": sum(line["quantity"] for line in lines),
        "coupon": coupon,
        **totals,
    }


def add_to_cart(db, user_id: str, product_id: str, quantity: int) -> dict:
    product = _product(db, product_id)
    cart = get_or_create_cart(db, user_id)
    line = _find_line(cart, product_id)
    new_quantity = quantity + (line["quantity"] if line else 0)
    if new_quantity > MAX_LINE_QUANTITY:
        raise AppError(f"Maximum quantity per item is {MAX_LINE_QUANTITY}", 400, "VALIDATION_ERROR")
    _check_stock(product, new_quantity)

    if line:
        db["carts"].update_one(
            {"user_id": user_id, "items.product_id": product_id},
            {"$inc": {"items.$.quantity": quantity}, "$set": {"updated_at": utcnow()}},
        )
    else:
        db["carts"].update_one(
            {"user_id": user_id},
            {
                "$push": {"items": {"product_id": product_id, "quantity": quantity, "added_at": utcnow()}},
                "$set": {"updated_at": utcnow()},
            },
        )
    return get_cart(db, user_id)


def update_cart_item(db, user_id: str, product_id: str, quantity: int) -> dict:
    cart = get_or_create_cart(db, user_id)
    if not _find_line(cart, product_id):
        raise AppError("Item not found in cart", 404, "ITEM_NOT_IN_CART", {"product_id": product_id})
    if quantity == 0:
        return remove_from_cart(db, user_id, product_id)
    _check_stock(_product(db, product_id), quantity)
    db["carts"].update_one(
        {"user_id": user_id, "items.product_id": product_id},
        {"$set": {"items.$.quantity": quantity, "updated_at": utcnow()}},
    )
    return get_cart(db, user_id)


def remove_from_cart(db, user_id: str, product_id: str) -> dict:
    cart = get_or_create_cart(db, user_id)
    if not _find_line(cart, product_id):
        raise AppError("Item not found in cart", 404, "ITEM_NOT_IN_CART", {"product_id": product_id})
    db["carts"].update_one(
        {"user_id": user_id},
        {"$pull": {"items": {"product_id": product_id}}, "$set": {"updated_at": utcnow()}},
    )
    return get_cart(db, user_id)


def clear_cart(db, user_id: str) -> None:
    db["carts"].update_one(
        {"user_id": user_id},
        {"$set": {"items": [], "coupon": None, "updated_at": utcnow()}},
    )


def sync_cart(db, user_id: str, items: List[dict]) -> dict:
    """Merge a guest cart into the stored one, keeping the larger quantity per product."""
    cart = get_or_create_cart(db, user_id)
    merged = {item["product_id"]: dict(item) for item in cart.get("items", [])}
    for incoming in items:
        product_id = incoming["product_id"]
        if not ObjectId.is_valid(product_id):
            continue
        product = db["products"].find_one({"_id": ObjectId(product_id)})
        if not product or product.get("stock", 0) <= 0:
            logger.info("Skipping unavailable product %s during cart sync", product_id)
            continue
        current = merged.get(product_id, {}).get("quantity", 0)
        quantity = min(max(current, incoming["quantity"]), product["stock"], MAX_SYNC_QUANTITY)
        merged[product_id] = {
            "product_id": product_id,
            "quantity": quantity,
            "added_at": merged.get(product_id, {}).get("added_at", utcnow()),
        }
    db["carts"].update_one(
        {"user_id": user_id}, {"$set": {"items": list(merged.values()), "updated_at": utcnow()}}
    )
    return get_cart(db, user_id)


def apply_coupon(db, user_id: str, code: str) -> dict:
    cart = get_or_create_cart(db, user_id)
    lines = cart_lines(db, cart)
    if not lines:
        raise AppError("Cart is empty", 400, "EMPTY_CART")
    subtotal = cart_totals(lines)["subtotal"]
    result = validate_coupon(db, code, subtotal)
    coupon = result["coupon"]
    applied = {
        "code": coupon["code"],
        "type": coupon["type"],
        "value": coupon["value"],
        "max_discount": coupon.get("max_discount"),
        "min_order_value": coupon.get("min_order_value"),
        "discount": result["discount"],
    }
    db["carts"].update_one({"user_id": user_id}, {"$set": {"coupon": applied, "updated_at": utcnow()}})
    return get_cart(db, user_id)


def remove_coupon(db, user_id: str) -> dict:
    get_or_create_cart(db, user_id)
    db["carts"].update_one({"user_id": user_id}, {"$set": {"coupon": None, "updated_at": utcnow()}})
    return get_cart(db, user_id)


# Cart Endpoints
@router.get("")
def view_cart(user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(get_cart(db, user.user_id))


@router.post("/add", dependencies=[Depends(cart_limiter)])
def add_item(payload: AddToCartRequest, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(add_to_cart(db, user.user_id, payload.product_id, payload.quantity), "Item added to cart")


@router.post("/sync", dependencies=[Depends(cart_limiter)])
def sync_items(payload: SyncCartRequest, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    items = [item.model_dump() for item in payload.items]
    return ok(sync_cart(db, user.user_id, items), "Cart synced")


@router.put("/items/{product_id}", dependencies=[Depends(cart_limiter)])
def update_item(product_id: str, payload: UpdateCartItemRequest, user: TokenPayload = Depends(authenticate),
                db=Depends(get_db)):
    return ok(update_cart_item(db, user.user_id, product_id, payload.quantity), "Cart updated")


@router.delete("/items/{product_id}", dependencies=[Depends(cart_limiter)])
def remove_item(product_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(remove_from_cart(db, user.user_id, product_id), "Item removed from cart")


@router.delete("", dependencies=[Depends(cart_limiter)])
def empty_cart(user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    clear_cart(db, user.user_id)
    return ok(message="Cart cleared")


@router.post("/coupon", dependencies=[Depends(cart_limiter)])
def use_coupon(payload: ApplyCouponRequest, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(apply_coupon(db, user.user_id, payload.code), "Coupon applied")


@router.delete("/coupon", dependencies=[Depends(cart_limiter)])
def drop_coupon(user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(remove_coupon(db, user.user_id), "Coupon removed")
