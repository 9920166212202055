import pytest

from agromart import reviews
from agromart.errors import AppError
from agromart.schemas import ReviewCreate, ReviewUpdate
from agromart.security import TokenPayload


def token_for(user_doc):
    return TokenPayload(user_id=str(user_doc["_id"]), email=user_doc["email"], is_admin=user_doc.get("is_admin", False))


def write_review(db, user_doc, product, rating, comment="Germinated well in clay soil"):
    return reviews.create_review(db, token_for(user_doc), str(product["_id"]),
                                 ReviewCreate(rating=rating, comment=comment))


def test_rating_is_recomputed_on_create_update_and_delete(db, make_user, make_product):
    product = make_product()
    first = write_review(db, make_user(), product, 5)
    author = make_user()
    second = write_review(db, author, product, 2)

    stored = db["products"].find_one({"_id": product["_id"]})
    assert (stored["rating"], stored["review_count"]) == (3.5, 2)

    reviews.update_review(db, token_for(author), second["id"], ReviewUpdate(rating=4))
    assert db["products"].find_one({"_id": product["_id"]})["rating"] == 4.5

    reviews.delete_review(db, token_for(author), second["id"])
    stored = db["products"].find_one({"_id": product["_id"]})
    assert (stored["rating"], stored["review_count"]) == (5.0, 1)
    assert first["verified_purchase"] is False


def test_one_review_per_product(db, user, make_product):
    product = make_product()
    write_review(db, user, product, 4)
    with pytest.raises(AppError) as exc:
        write_review(db, user, product, 3)
    assert exc.value.code == "REVIEW_NOT_ALLOWED"


def test_verified_purchase_after_delivery(db, user, make_product):
    product = make_product()
    db["orders"].insert_one({
        "user_id": str(user["_id"]), "status": "delivered",
        "items": [{"product_id": str(product["_id"]), "quantity": 1}],
    })
    review = write_review(db, user, product, 5)
    assert review["verified_purchase"] is True


def test_only_owner_can_edit(db, user, make_user, make_product):
    review = write_review(db, user, make_product(), 4)
    with pytest.raises(AppError) as exc:
        reviews.update_review(db, token_for(make_user()), review["id"], ReviewUpdate(rating=1))
    assert exc.value.code == "NOT_OWNER"


def test_admin_can_delete_any_review(db, user, admin, make_product):
    review = write_review(db, user, make_product(), 4)
    reviews.delete_review(db, token_for(admin), review["id"])
    assert db["reviews"].count_documents({}) == 0


def test_helpful_counts_once_per_user(db, user, make_user, make_product):
    review = write_review(db, user, make_product(), 4)
    voter = token_for(make_user())

    reviews.mark_helpful(db, voter, review["id"])
    result = reviews.mark_helpful(db, voter, review["id"])

    assert result["helpful_count"] == 1
    assert "helpful_by" not in result


def test_cannot_mark_own_review_helpful(db, user, make_product):
    review = write_review(db, user, make_product(), 4)
    with pytest.raises(AppError) as exc:
        reviews.mark_helpful(db, token_for(user), review["id"])
    assert exc.value.code == "REVIEW_NOT_ALLOWED"


def test_review_stats_distribution(db, make_user, make_product):
    product = make_product()
    for rating in (5, 5, 4, 1):
        write_review(db, make_user(), product, rating)

    stats = reviews.review_stats(db, str(product["_id"]))

    assert stats["count"] == 4
    assert stats["average"] == 3.8
    assert stats["distribution"] == {"1": 1, "2": 0, "3": 0, "4": 1, "5": 2}


def test_review_endpoints(client, user, auth_header, make_product):
    product = make_product()
    res = client.post(f"/api/products/{product['_id']}/reviews",
                      json={"rating": 4, "title": "Good seeds", "comment": "Most of them sprouted"},
                      headers=auth_header(user))
    assert res.status_code == 201

    listing = client.get(f"/api/products/{product['_id']}/reviews", params={"sort": "rating_high"})
    assert listing.json()["data"]["pagination"]["total"] == 1

    mine = client.get("/api/users/me/reviews", headers=auth_header(user))
    assert len(mine.json()["data"]["items"]) == 1


def test_review_rating_is_validated(client, user, auth_header, make_product):
    product = make_product()
    res = client.post(f"/api/products/{product['_id']}/reviews", json={"rating": 6, "comment": "Too good"},
                      headers=auth_header(user))
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"
