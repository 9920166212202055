"""
Demo data for a fresh AgroMart database.

Run ``python -m agromart.seed`` or call ``POST /api/admin/seed``. Records that
already exist (matched by email, name, slug or code) are left alone, so the
seed can be applied repeatedly.
"""
import logging
from datetime import timedelta

from agromart import config
from agromart.database import create_document, ensure_indexes, utcnow
from agromart.schemas import Category, Product, User
from agromart.security import hash_password

logger = logging.getLogger(__name__)

CATEGORIES = [
    {"name": "Seeds", "slug": "seeds", "description": "High-quality seeds for farming", "icon": "🌾"},
    {"name": "Fertilizers", "slug": "fertilizers", "description": "Organic and chemical fertilizers", "icon": "🌱"},
    {"name": "Tools", "slug": "tools", "description": "Farm tools and equipment", "icon": "🛠️"},
    {"name": "Pesticides", "slug": "pesticides", "description": "Crop protection solutions", "icon": "🦟"},
]

PRODUCTS = [
    {
        "name": "Premium Tomato Seeds",
        "slug": "premium-tomato-seeds",
        "category": "Seeds",
        "price": 199.0,
        "original_price": 249.0,
        "stock": 150,
        "description": "High-yield hybrid tomato seeds suitable for all seasons.",
        "images": ["/images/products/tomato.jpg"],
        "is_featured": True,
    },
    {
        "name": "Organic Fertilizer 5kg",
        "slug": "organic-fertilizer-5kg",
        "category": "Fertilizers",
        "price": 499.0,
        "original_price": 599.0,
        "stock": 89,
        "description": "Slow release organic fertilizer for healthy plant growth.",
        "images": ["/images/products/fertilizer.jpg"],
        "is_featured": True,
    },
    {
        "name": "Garden Trowel Set",
        "slug": "garden-trowel-set",
        "category": "Tools",
        "price": 299.0,
        "original_price": 399.0,
        "stock": 45,
        "description": "Durable stainless steel garden trowel set of 3 pieces.",
        "images": ["/images/products/trowel.jpg"],
    },
    {
        "name": "Cabbage Seeds - Hybrid",
        "slug": "cabbage-seeds-hybrid",
        "category": "Seeds",
        "price": 149.0,
        "original_price": 199.0,
        "stock": 200,
        "description": "Premium hybrid cabbage seeds with high germination rate.",
        "images": ["/images/products/cabbage.jpg"],
    },
    {
        "name": "NPK Fertilizer 10kg",
        "slug": "npk-fertilizer-10kg",
        "category": "Fertilizers",
        "price": 899.0,
        "original_price": 1099.0,
        "stock": 120,
        "description": "Balanced NPK fertilizer (19:19:19) for all crops.",
        "images": ["/images/products/npk.jpg"],
        "is_featured": True,
    },
    {
        "name": "Pruning Shears",
        "slug": "pruning-shears",
        "category": "Tools",
        "price": 399.0,
        "original_price": 499.0,
        "stock": 67,
        "description": "Professional pruning shears with ergonomic handle.",
        "images": ["/images/products/shears.jpg"],
    },
    {
        "name": "Carrot Seeds - Nantes",
        "slug": "carrot-seeds-nantes",
        "category": "Seeds",
        "price": 129.0,
        "original_price": 179.0,
        "stock": 180,
        "description": "Sweet Nantes variety carrot seeds, perfect for home gardens.",
        "images": ["/images/products/carrot.jpg"],
    },
    {
        "name": "Bio Pesticide 500ml",
        "slug": "bio-pesticide-500ml",
        "category": "Pesticides",
        "price": 349.0,
        "original_price": 449.0,
        "stock": 95,
        "description": "Organic bio pesticide safe for plants and environment.",
        "images": ["/images/products/pesticide.jpg"],
    },
]

COUPONS = [
    {"code": "SAVE20", "description": "20% off your order", "type": "percentage", "value": 20},
    {"code": "FLAT100", "description": "Flat 100 off on orders above 500", "type": "fixed", "value": 100,
     "min_order_value": 500},
    {"code": "WELCOME10", "description": "10% off for new customers, up to 200", "type": "percentage", "value": 10,
     "max_discount": 200},
]

BLOG_POSTS = [
    {
        "title": "Complete Guide to Organic Farming in 2025",
        "slug": "organic-farming-guide-2025",
        "excerpt": "Learn everything you need to know about sustainable organic farming practices.",
        "content": "<h2>Introduction to Organic Farming</h2><p>Organic farming is a method of crop production...</p>",
        "author": "Dr. Rajesh Kumar",
        "category": "Farming Tips",
        "tags": ["organic", "sustainable", "farming"],
        "published": True,
        "featured": True,
    },
    {
        "title": "Top 10 Seeds for Monsoon Season",
        "slug": "top-10-seeds-monsoon-season",
        "excerpt": "Discover the best seeds to plant during the monsoon season for maximum yield.",
        "content": "<h2>Best Seeds for Monsoon</h2><p>The monsoon season provides ideal conditions...</p>",
        "author": "Priya Sharma",
        "category": "Seeds & Plants",
        "tags": ["seeds", "monsoon", "planting"],
        "published": True,
        "featured": True,
    },
]


def seed_database(db) -> dict:
    created = {"users": 0, "categories": 0, "products": 0, "coupons": 0, "blog_posts": 0}

    if not db["users"].find_one({"email": config.SEED_ADMIN_EMAIL}):
        admin = User(
            full_name="Admin User",
            email=config.SEED_ADMIN_EMAIL,
            password_hash=hash_password(config.SEED_ADMIN_PASSWORD),
            is_admin=True,
        )
        admin_id = create_document(db, "users", admin)
        create_document(db, "carts", {"user_id": admin_id, "items": [], "coupon": None})
        created["users"] += 1

    category_ids = {}
    for c in CATEGORIES:
        existing = db["categories"].find_one({"name": c["name"]})
        if existing:
            category_ids[c["name"]] = str(existing["_id"])
            continue
        category_ids[c["name"]] = create_document(db, "categories", Category(**c))
        created["categories"] += 1

    for p in PRODUCTS:
        if db["products"].find_one({"slug": p["slug"]}):
            continue
        data = {k: v for k, v in p.items() if k != "category"}
        create_document(db, "products", Product(**data, category_id=category_ids[p["category"]]))
        created["products"] += 1

    now = utcnow()
    for c in COUPONS:
        if db["coupons"].find_one({"code": c["code"]}):
            continue
        coupon = {
            "min_order_value": None,
            "max_discount": None,
            "usage_limit": None,
            **c,
            "used_count": 0,
            "is_active": True,
            "valid_from": now,
            "valid_until": now + timedelta(days=365),
        }
        create_document(db, "coupons", coupon)
        created["coupons"] += 1

    for post in BLOG_POSTS:
        if db["blog_posts"].find_one({"slug": post["slug"]}):
            continue
        create_document(db, "blog_posts", {**post, "views": 0, "published_at": now})
        created["blog_posts"] += 1

    logger.info("Seed complete: %s", created)
    return created


if __name__ == "__main__":
    from agromart.database import db

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ensure_indexes(db)
    print(seed_database(db))
