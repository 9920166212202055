import logging
import re
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pymongo import ASCENDING, DESCENDING

from agromart.database import create_document, get_db, serialize_doc, to_object_id, utcnow
from agromart.errors import AppError, not_found
from agromart.rate_limit import search_limiter
from agromart.responses import ok, pagination
from agromart.schemas import Category, CategoryUpdate, Product, ProductUpdate, StockUpdate
from agromart.security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["catalog"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin-catalog"], dependencies=[Depends(require_admin)])

OPEN_ORDER_STATUSES = ["pending", "confirmed", "processing", "shipped"]

SORTS = {
    "newest": [("created_at", DESCENDING)],
    "price_asc": [("price", ASCENDING)],
    "price_desc": [("price", DESCENDING)],
    "rating": [("rating", DESCENDING), ("review_count", DESCENDING)],
    "popular": [("review_count", DESCENDING), ("rating", DESCENDING)],
}


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "item"


# Categories

def find_category(db, id_or_slug: str) -> Optional[dict]:
    if ObjectId.is_valid(id_or_slug):
        category = db["categories"].find_one({"_id": ObjectId(id_or_slug)})
        if category:
            return category
    return db["categories"].find_one({"slug": id_or_slug})


def get_category(db, id_or_slug: str) -> dict:
    category = find_category(db, id_or_slug)
    if not category:
        raise AppError("Category not found", 404, "CATEGORY_NOT_FOUND", {"category_id": id_or_slug})
    return category


def list_categories(db) -> List[dict]:
    categories = []
    for doc in db["categories"].find().sort("name", ASCENDING):
        item = serialize_doc(doc)
        item["product_count"] = db["products"].count_documents({"category_id": item["id"]})
        categories.append(item)
    return categories


def create_category(db, payload: Category) -> dict:
    if db["categories"].find_one({"name": payload.name}):
        raise AppError("Category with this name already exists", 409, "DUPLICATE_ENTRY", {"field": "name"})
    data = payload.model_dump()
    data["slug"] = data.get("slug") or slugify(payload.name)
    category_id = create_document(db, "categories", data)
    return serialize_doc(db["categories"].find_one({"_id": ObjectId(category_id)}))


def update_category(db, category_id: str, payload: CategoryUpdate) -> dict:
    category = get_category(db, category_id)
    updates = payload.model_dump(exclude_none=True)
    if "name" in updates:
        duplicate = db["categories"].find_one({"name": updates["name"], "_id": {"$ne": category["_id"]}})
        if duplicate:
            raise AppError("Category with this name already exists", 409, "DUPLICATE_ENTRY", {"field": "name"})
        updates["slug"] = slugify(updates["name"])
    if updates:
        updates["updated_at"] = utcnow()
        db["categories"].update_one({"_id": category["_id"]}, {"$set": updates})
    return serialize_doc(db["categories"].find_one({"_id": category["_id"]}))


def delete_category(db, category_id: str) -> None:
    category = get_category(db, category_id)
    count = db["products"].count_documents({"category_id": str(category["_id"])})
    if count:
        raise AppError(f"Cannot delete category with {count} products", 400, "CATEGORY_IN_USE", {"products": count})
    db["categories"].delete_one({"_id": category["_id"]})


# Products

def find_product(db, id_or_slug: str) -> Optional[dict]:
    if ObjectId.is_valid(id_or_slug):
        product = db["products"].find_one({"_id": ObjectId(id_or_slug)})
        if product:
            return product
    return db["products"].find_one({"slug": id_or_slug})


def get_product_doc(db, id_or_slug: str) -> dict:
    product = find_product(db, id_or_slug)
    if not product:
        raise AppError("Product not found", 404, "PRODUCT_NOT_FOUND", {"product_id": id_or_slug})
    return product


def present_product(db, doc: dict, with_category: bool = True) -> dict:
    product = serialize_doc(doc)
    product["in_stock"] = product.get("stock", 0) > 0
    original = product.get("original_price")
    if original and original > product["price"]:
        product["discount_percent"] = round((original - product["price"]) / original * 100)
    if with_category and product.get("category_id") and ObjectId.is_valid(product["category_id"]):
        category = db["categories"].find_one({"_id": ObjectId(product["category_id"])}, {"name": 1, "slug": 1})
        product["category"] = serialize_doc(category) if category else None
    return product


def list_products(
    db,
    category: Optional[str] = None,
    q: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    min_rating: Optional[float] = None,
    in_stock: Optional[bool] = None,
    featured: Optional[bool] = None,
    sort: str = "newest",
    page: int = 1,
    limit: int = 12,
) -> dict:
    filt = {}
    if category:
        cat = find_category(db, category)
        filt["category_id"] = str(cat["_id"]) if cat else "__missing__"
    if q:
        pattern = re.escape(q)
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        filt["price"] = price_filter
    if min_rating is not None:
        filt["rating"] = {"$gte": min_rating}
    if in_stock is not None:
        filt["stock"] = {"$gt": 0} if in_stock else {"$lte": 0}
    if featured is not None:
        filt["is_featured"] = featured

    total = db["products"].count_documents(filt)
    cursor = (
        db["products"].find(filt)
        .sort(SORTS.get(sort, SORTS["newest"]))
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = [present_product(db, doc) for doc in cursor]
    return {"items": items, "pagination": pagination(total, page, limit)}


def related_products(db, product: dict, limit: int = 4) -> List[dict]:
    cursor = db["products"].find(
        {"category_id": product.get("category_id"), "_id": {"$ne": product["_id"]}}
    ).sort("rating", DESCENDING).limit(limit)
    return [present_product(db, doc, with_category=False) for doc in cursor]


def featured_products(db, limit: int = 8) -> List[dict]:
    cursor = db["products"].find({"is_featured": True, "stock": {"$gt": 0}}).sort("rating", DESCENDING).limit(limit)
    return [present_product(db, doc) for doc in cursor]


def create_product(db, payload: Product) -> dict:
    if db["products"].find_one({"slug": payload.slug}):
        raise AppError("Product with this slug already exists", 409, "DUPLICATE_ENTRY", {"field": "slug"})
    get_category(db, payload.category_id)
    product_id = create_document(db, "products", payload)
    logger.info("Created product %s (%s)", product_id, payload.slug)
    return present_product(db, db["products"].find_one({"_id": ObjectId(product_id)}))


def update_product(db, product_id: str, payload: ProductUpdate) -> dict:
    product = db["products"].find_one({"_id": to_object_id(product_id, "product ID")})
    if not product:
        raise not_found("Product", product_id)
    updates = payload.model_dump(exclude_none=True)
    if "slug" in updates:
        duplicate = db["products"].find_one({"slug": updates["slug"], "_id": {"$ne": product["_id"]}})
        if duplicate:
            raise AppError("Product with this slug already exists", 409, "DUPLICATE_ENTRY", {"field": "slug"})
    if "category_id" in updates:
        get_category(db, updates["category_id"])
    price = updates.get("price", product.get("price"))
    original = updates.get("original_price", product.get("original_price"))
    if original is not None and original < price:
        raise AppError("Original price must be greater than or equal to sale price", 400, "VALIDATION_ERROR")
    if updates:
        updates["updated_at"] = utcnow()
        db["products"].update_one({"_id": product["_id"]}, {"$set": updates})
    return present_product(db, db["products"].find_one({"_id": product["_id"]}))


def delete_product(db, product_id: str) -> None:
    oid = to_object_id(product_id, "product ID")
    if not db["products"].find_one({"_id": oid}):
        raise not_found("Product", product_id)
    open_orders = db["orders"].count_documents(
        {"items.product_id": product_id, "status": {"$in": OPEN_ORDER_STATUSES}}
    )
    if open_orders:
        raise AppError(
            f"Cannot delete product with {open_orders} open orders", 400, "PRODUCT_IN_USE", {"orders": open_orders}
        )
    db["products"].delete_one({"_id": oid})
    db["carts"].update_many({}, {"$pull": {"items": {"product_id": product_id}}})
    db["wishlist"].delete_many({"product_id": product_id})


def set_stock(db, product_id: str, stock: int) -> dict:
    oid = to_object_id(product_id, "product ID")
    result = db["products"].update_one({"_id": oid}, {"$set": {"stock": stock, "updated_at": utcnow()}})
    if result.matched_count == 0:
        raise not_found("Product", product_id)
    return present_product(db, db["products"].find_one({"_id": oid}))


def low_stock_products(db, threshold: int = 10) -> List[dict]:
    cursor = db["products"].find({"stock": {"$lte": threshold, "$gt": 0}}).sort("stock", ASCENDING)
    return [present_product(db, doc, with_category=False) for doc in cursor]


def out_of_stock_products(db) -> List[dict]:
    return [present_product(db, doc, with_category=False) for doc in db["products"].find({"stock": {"$lte": 0}})]


# Stock bookkeeping for checkout, cancellation and refunds

def reserve_stock(db, items: List[dict]) -> None:
    """Decrement stock for every line or for none of them."""
    reserved = []
    for item in items:
        oid = to_object_id(item["product_id"], "product ID")
        result = db["products"].update_one(
            {"_id": oid, "stock": {"$gte": item["quantity"]}},
            {"$inc": {"stock": -item["quantity"]}},
        )
        if result.matched_count == 0:
            restore_stock(db, reserved)
            product = db["products"].find_one({"_id": oid})
            if not product:
                raise AppError(f"Product not found: {item['product_id']}", 404, "PRODUCT_NOT_FOUND")
            available = product.get("stock", 0)
            if available <= 0:
                raise AppError(f"{product['name']} is out of stock", 400, "OUT_OF_STOCK",
                               {"product": product["name"], "available": 0})
            raise AppError(
                f"Insufficient stock for {product['name']}. Requested: {item['quantity']}, Available: {available}",
                400,
                "INSUFFICIENT_STOCK",
                {"product": product["name"], "requested": item["quantity"], "available": available},
            )
        reserved.append(item)


def restore_stock(db, items: List[dict]) -> None:
    for item in items:
        db["products"].update_one(
            {"_id": to_object_id(item["product_id"], "product ID")},
            {"$inc": {"stock": item["quantity"]}},
        )


# Storefront Endpoints
@router.get("/products")
def get_products(
    category: Optional[str] = None,
    q: Optional[str] = Query(None, max_length=200),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    min_rating: Optional[float] = Query(None, ge=0, le=5),
    in_stock: Optional[bool] = None,
    featured: Optional[bool] = None,
    sort: str = Query("newest", description="newest|price_asc|price_desc|rating|popular"),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db=Depends(get_db),
):
    return ok(list_products(db, category, q, min_price, max_price, min_rating, in_stock, featured, sort, page, limit))


@router.get("/products/featured")
def get_featured(limit: int = Query(8, ge=1, le=50), db=Depends(get_db)):
    return ok(featured_products(db, limit))


@router.get("/products/search", dependencies=[Depends(search_limiter)])
def search(q: str = Query(..., min_length=1, max_length=200), page: int = Query(1, ge=1),
           limit: int = Query(20, ge=1, le=50), db=Depends(get_db)):
    return ok(list_products(db, q=q, page=page, limit=limit))


@router.get("/products/{id_or_slug}")
def get_product(id_or_slug: str, db=Depends(get_db)):
    product = get_product_doc(db, id_or_slug)
    data = present_product(db, product)
    data["related"] = related_products(db, product)
    return ok(data)


@router.get("/categories")
def get_categories(db=Depends(get_db)):
    return ok(list_categories(db))


@router.get("/categories/{id_or_slug}")
def get_category_detail(id_or_slug: str, db=Depends(get_db)):
    category = serialize_doc(get_category(db, id_or_slug))
    category["product_count"] = db["products"].count_documents({"category_id": category["id"]})
    return ok(category)


@router.get("/categories/{id_or_slug}/products")
def get_category_products(id_or_slug: str, page: int = Query(1, ge=1), limit: int = Query(12, ge=1, le=100),
                          sort: str = "newest", db=Depends(get_db)):
    category = get_category(db, id_or_slug)
    return ok(list_products(db, category=str(category["_id"]), sort=sort, page=page, limit=limit))


# Admin Endpoints
@admin_router.post("/products", status_code=201)
def admin_create_product(payload: Product, db=Depends(get_db)):
    return ok(create_product(db, payload), "Product created")


@admin_router.put("/products/{product_id}")
def admin_update_product(product_id: str, payload: ProductUpdate, db=Depends(get_db)):
    return ok(update_product(db, product_id, payload), "Product updated")


@admin_router.delete("/products/{product_id}")
def admin_delete_product(product_id: str, db=Depends(get_db)):
    delete_product(db, product_id)
    return ok(message="Product deleted")


@admin_router.patch("/products/{product_id}/stock")
def admin_update_stock(product_id: str, payload: StockUpdate, db=Depends(get_db)):
    return ok(set_stock(db, product_id, payload.stock), "Stock updated")


@admin_router.get("/products/low-stock")
def admin_low_stock(threshold: int = Query(10, ge=1), db=Depends(get_db)):
    return ok(low_stock_products(db, threshold))


@admin_router.get("/products/out-of-stock")
def admin_out_of_stock(db=Depends(get_db)):
    return ok(out_of_stock_products(db))


@admin_router.post("/categories", status_code=201)
def admin_create_category(payload: Category, db=Depends(get_db)):
    return ok(create_category(db, payload), "Category created")


@admin_router.put("/categories/{category_id}")
def admin_update_category(category_id: str, payload: CategoryUpdate, db=Depends(get_db)):
    return ok(update_category(db, category_id, payload), "Category updated")


@admin_router.delete("/categories/{category_id}")
def admin_delete_category(category_id: str, db=Depends(get_db)):
    delete_category(db, category_id)
    return ok(message="Category deleted")
