import logging
from typing import List

from bson import ObjectId
from fastapi import APIRouter, Depends
from pymongo import DESCENDING

from agromart.cart import add_to_cart, get_cart
from agromart.catalog import get_product_doc, present_product
from agromart.database import as_utc, get_db, utcnow
from agromart.errors import AppError
from agromart.responses import ok
from agromart.schemas import MoveToCartRequest, WishlistItem
from agromart.security import TokenPayload, authenticate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/wishlist", tags=["wishlist"])


def get_wishlist(db, user_id: str) -> List[dict]:
    entries = list(db["wishlist"].find({"user_id": user_id}).sort("created_at", DESCENDING))
    ids = [ObjectId(e["product_id"]) for e in entries if ObjectId.is_valid(e["product_id"])]
    products = {str(p["_id"]): p for p in db["products"].find({"_id": {"$in": ids}})}
    items = []
    for entry in entries:
        product = products.get(entry["product_id"])
        if product:
            items.append({
                "product_id": entry["product_id"],
                "added_at": as_utc(entry["created_at"]).isoformat(),
                "product": present_product(db, product, with_category=False),
            })
    return items


def add_to_wishlist(db, user_id: str, product_id: str) -> None:
    product = get_product_doc(db, product_id)
    db["wishlist"].update_one(
        {"user_id": user_id, "product_id": str(product["_id"])},
        {"$setOnInsert": {"created_at": utcnow()}},
        upsert=True,
    )


def remove_from_wishlist(db, user_id: str, product_id: str) -> None:
    result = db["wishlist"].delete_one({"user_id": user_id, "product_id": product_id})
    if result.deleted_count == 0:
        raise AppError("Product not in wishlist", 404, "ITEM_NOT_IN_WISHLIST", {"product_id": product_id})


def move_to_cart(db, user_id: str, product_ids: List[str]) -> dict:
    """Move each product into the cart; products that cannot be added stay in the wishlist."""
    moved, failed = [], []
    for product_id in product_ids:
        if not db["wishlist"].find_one({"user_id": user_id, "product_id": product_id}):
            failed.append({"product_id": product_id, "reason": "Product not in wishlist"})
            continue
        try:
            add_to_cart(db, user_id, product_id, 1)
        except AppError as exc:
            failed.append({"product_id": product_id, "reason": exc.message})
            continue
        db["wishlist"].delete_one({"user_id": user_id, "product_id": product_id})
        moved.append(product_id)
    if failed:
        logger.info("Could not move %d wishlist items for user %s", len(failed), user_id)
    return {"moved": moved, "failed": failed, "cart": get_cart(db, user_id)}


# Wishlist Endpoints
@router.get("")
def wishlist(user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(get_wishlist(db, user.user_id))


@router.get("/count")
def count(user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok({"count": db["wishlist"].count_documents({"user_id": user.user_id})})


@router.get("/check/{product_id}")
def check(product_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    found = db["wishlist"].find_one({"user_id": user.user_id, "product_id": product_id})
    return ok({"in_wishlist": found is not None})


@router.post("", status_code=201)
def add(payload: WishlistItem, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    add_to_wishlist(db, user.user_id, payload.product_id)
    return ok(get_wishlist(db, user.user_id), "Added to wishlist")


@router.post("/move-to-cart")
def move(payload: MoveToCartRequest, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(move_to_cart(db, user.user_id, payload.product_ids))


@router.delete("")
def clear(user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    db["wishlist"].delete_many({"user_id": user.user_id})
    return ok(message="Wishlist cleared")


@router.delete("/{product_id}")
def remove(product_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    remove_from_wishlist(db, user.user_id, product_id)
    return ok(message="Removed from wishlist")
