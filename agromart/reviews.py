import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo import ASCENDING, DESCENDING

from agromart.catalog import get_product_doc
from agromart.database import create_document, get_db, serialize_doc, to_object_id, utcnow
from agromart.errors import AppError
from agromart.rate_limit import review_limiter
from agromart.responses import ok, pagination
from agromart.schemas import ReviewCreate, ReviewUpdate
from agromart.security import TokenPayload, authenticate, can, require_admin, require_ownership

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["reviews"])

SORTS = {
    "newest": [("created_at", DESCENDING)],
    "helpful": [("helpful_count", DESCENDING), ("created_at", DESCENDING)],
    "rating_high": [("rating", DESCENDING), ("created_at", DESCENDING)],
    "rating_low": [("rating", ASCENDING), ("created_at", DESCENDING)],
}


def present_review(doc: dict) -> dict:
    review = serialize_doc(doc)
    review.pop("helpful_by", None)
    return review


def get_review_doc(db, review_id: str) -> dict:
    review = db["reviews"].find_one({"_id": to_object_id(review_id, "review ID")})
    if not review:
        raise AppError("Review not found", 404, "REVIEW_NOT_FOUND", {"review_id": review_id})
    return review


def update_product_rating(db, product_id: str) -> None:
    ratings = [r["rating"] for r in db["reviews"].find({"product_id": product_id}, {"rating": 1})]
    average = round(sum(ratings) / len(ratings), 1) if ratings else 0.0
    db["products"].update_one(
        {"_id": to_object_id(product_id, "product ID")},
        {"$set": {"rating": average, "review_count": len(ratings), "updated_at": utcnow()}},
    )


def has_purchased(db, user_id: str, product_id: str) -> bool:
    return db["orders"].find_one(
        {"user_id": user_id, "status": "delivered", "items.product_id": product_id}
    ) is not None


def list_product_reviews(db, product_id: str, page: int = 1, limit: int = 10, sort: str = "newest",
                         rating: Optional[int] = None) -> dict:
    filt = {"product_id": product_id}
    if rating:
        filt["rating"] = rating
    total = db["reviews"].count_documents(filt)
    cursor = (
        db["reviews"].find(filt)
        .sort(SORTS.get(sort, SORTS["newest"]))
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {"items": [present_review(r) for r in cursor], "pagination": pagination(total, page, limit)}


def review_stats(db, product_id: str) -> dict:
    distribution = {str(star): 0 for star in range(1, 6)}
    ratings = []
    for review in db["reviews"].find({"product_id": product_id}, {"rating": 1}):
        ratings.append(review["rating"])
        distribution[str(review["rating"])] += 1
    return {
        "average": round(sum(ratings) / len(ratings), 1) if ratings else 0.0,
        "count": len(ratings),
        "distribution": distribution,
    }


def create_review(db, user: TokenPayload, product_id: str, payload: ReviewCreate) -> dict:
    product = get_product_doc(db, product_id)
    product_id = str(product["_id"])
    if db["reviews"].find_one({"user_id": user.user_id, "product_id": product_id}):
        raise AppError("You have already reviewed this product", 400, "REVIEW_NOT_ALLOWED")
    author = db["users"].find_one({"_id": to_object_id(user.user_id, "user ID")}, {"full_name": 1}) or {}
    data = payload.model_dump()
    data.update({
        "product_id": product_id,
        "user_id": user.user_id,
        "user_name": author.get("full_name"),
        "verified_purchase": has_purchased(db, user.user_id, product_id),
        "helpful_count": 0,
        "helpful_by": [],
    })
    review_id = create_document(db, "reviews", data)
    update_product_rating(db, product_id)
    logger.info("User %s reviewed product %s", user.user_id, product_id)
    return present_review(get_review_doc(db, review_id))


def update_review(db, user: TokenPayload, review_id: str, payload: ReviewUpdate) -> dict:
    review = get_review_doc(db, review_id)
    require_ownership(review["user_id"], user)
    updates = payload.model_dump(exclude_none=True)
    if updates:
        updates["updated_at"] = utcnow()
        db["reviews"].update_one({"_id": review["_id"]}, {"$set": updates})
        if "rating" in updates:
            update_product_rating(db, review["product_id"])
    return present_review(get_review_doc(db, review_id))


def delete_review(db, user: TokenPayload, review_id: str) -> None:
    review = get_review_doc(db, review_id)
    if not can(user, "reviews:moderate"):
        require_ownership(review["user_id"], user)
    db["reviews"].delete_one({"_id": review["_id"]})
    update_product_rating(db, review["product_id"])


def mark_helpful(db, user: TokenPayload, review_id: str) -> dict:
    review = get_review_doc(db, review_id)
    if review["user_id"] == user.user_id:
        raise AppError("You cannot mark your own review as helpful", 400, "REVIEW_NOT_ALLOWED")
    db["reviews"].update_one(
        {"_id": review["_id"], "helpful_by": {"$ne": user.user_id}},
        {"$addToSet": {"helpful_by": user.user_id}, "$inc": {"helpful_count": 1}},
    )
    return present_review(get_review_doc(db, review_id))


# Review Endpoints
@router.get("/products/{product_id}/reviews")
def product_reviews(
    product_id: str,
    sort: str = Query("newest", description="newest|helpful|rating_high|rating_low"),
    rating: Optional[int] = Query(None, ge=1, le=5),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db=Depends(get_db),
):
    product = get_product_doc(db, product_id)
    return ok(list_product_reviews(db, str(product["_id"]), page, limit, sort, rating))


@router.get("/products/{product_id}/reviews/stats")
def product_review_stats(product_id: str, db=Depends(get_db)):
    product = get_product_doc(db, product_id)
    return ok(review_stats(db, str(product["_id"])))


@router.post("/products/{product_id}/reviews", status_code=201, dependencies=[Depends(review_limiter)])
def add_review(product_id: str, payload: ReviewCreate, user: TokenPayload = Depends(authenticate),
               db=Depends(get_db)):
    return ok(create_review(db, user, product_id, payload), "Review submitted")


@router.put("/reviews/{review_id}")
def edit_review(review_id: str, payload: ReviewUpdate, user: TokenPayload = Depends(authenticate),
                db=Depends(get_db)):
    return ok(update_review(db, user, review_id, payload), "Review updated")


@router.delete("/reviews/{review_id}")
def remove_review(review_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    delete_review(db, user, review_id)
    return ok(message="Review deleted")


@router.post("/reviews/{review_id}/helpful")
def helpful(review_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(mark_helpful(db, user, review_id))


@router.get("/users/me/reviews")
def my_reviews(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
               user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    filt = {"user_id": user.user_id}
    total = db["reviews"].count_documents(filt)
    cursor = db["reviews"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return ok({"items": [present_review(r) for r in cursor], "pagination": pagination(total, page, limit)})


@router.get("/admin/reviews", dependencies=[Depends(require_admin)])
def all_reviews(
    product_id: Optional[str] = None,
    rating: Optional[int] = Query(None, ge=1, le=5),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_db),
):
    filt = {}
    if product_id:
        filt["product_id"] = product_id
    if rating:
        filt["rating"] = rating
    total = db["reviews"].count_documents(filt)
    cursor = db["reviews"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return ok({"items": [present_review(r) for r in cursor], "pagination": pagination(total, page, limit)})
