import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo import DESCENDING, ReturnDocument

from agromart.catalog import slugify
from agromart.database import create_document, get_db, serialize_doc, to_object_id, utcnow
from agromart.errors import AppError
from agromart.responses import ok, pagination
from agromart.schemas import BlogPost, BlogPostUpdate
from agromart.security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/blog", tags=["blog"])
admin_router = APIRouter(prefix="/api/blog/admin", tags=["admin-blog"], dependencies=[Depends(require_admin)])


def _unique_slug(db, base: str) -> str:
    slug, n = base, 1
    while db["blog_posts"].find_one({"slug": slug}):
        n += 1
        slug = f"{base}-{n}"
    return slug


def get_post_doc(db, post_id: str) -> dict:
    post = db["blog_posts"].find_one({"_id": to_object_id(post_id, "post ID")})
    if not post:
        raise AppError("Blog post not found", 404, "POST_NOT_FOUND", {"post_id": post_id})
    return post


def list_posts(db, page: int = 1, limit: int = 10, category: Optional[str] = None, tag: Optional[str] = None,
               q: Optional[str] = None, published: Optional[bool] = True) -> dict:
    filt = {} if published is None else {"published": published}
    if category:
        filt["category"] = category
    if tag:
        filt["tags"] = tag
    if q:
        pattern = re.escape(q)
        filt["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"excerpt": {"$regex": pattern, "$options": "i"}},
            {"content": {"$regex": pattern, "$options": "i"}},
        ]
    total = db["blog_posts"].count_documents(filt)
    cursor = db["blog_posts"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {"items": [serialize_doc(p) for p in cursor], "pagination": pagination(total, page, limit)}


def blog_categories(db) -> list:
    counts = {}
    for post in db["blog_posts"].find({"published": True, "category": {"$ne": None}}, {"category": 1}):
        counts[post["category"]] = counts.get(post["category"], 0) + 1
    return [{"name": name, "count": count} for name, count in sorted(counts.items())]


def get_post_by_slug(db, slug: str) -> dict:
    post = db["blog_posts"].find_one_and_update(
        {"slug": slug, "published": True},
        {"$inc": {"views": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not post:
        raise AppError("Blog post not found", 404, "POST_NOT_FOUND", {"slug": slug})
    return post


def create_post(db, payload: BlogPost) -> dict:
    data = payload.model_dump()
    if data["slug"]:
        if db["blog_posts"].find_one({"slug": data["slug"]}):
            raise AppError("A post with this slug already exists", 409, "DUPLICATE_ENTRY", {"field": "slug"})
    else:
        data["slug"] = _unique_slug(db, slugify(payload.title))
    data["views"] = 0
    data["published_at"] = utcnow() if payload.published else None
    post_id = create_document(db, "blog_posts", data)
    logger.info("Created blog post %s (%s)", post_id, data["slug"])
    return get_post_doc(db, post_id)


def update_post(db, post_id: str, payload: BlogPostUpdate) -> dict:
    post = get_post_doc(db, post_id)
    updates = payload.model_dump(exclude_none=True)
    if "slug" in updates and db["blog_posts"].find_one({"slug": updates["slug"], "_id": {"$ne": post["_id"]}}):
        raise AppError("A post with this slug already exists", 409, "DUPLICATE_ENTRY", {"field": "slug"})
    if updates.get("published") and not post.get("published_at"):
        updates["published_at"] = utcnow()
    if updates:
        updates["updated_at"] = utcnow()
        db["blog_posts"].update_one({"_id": post["_id"]}, {"$set": updates})
    return get_post_doc(db, post_id)


# Blog Endpoints
@router.get("")
def posts(
    category: Optional[str] = None,
    tag: Optional[str] = None,
    q: Optional[str] = Query(None, max_length=200),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db=Depends(get_db),
):
    return ok(list_posts(db, page, limit, category, tag, q))


@router.get("/featured")
def featured(limit: int = Query(3, ge=1, le=20), db=Depends(get_db)):
    cursor = db["blog_posts"].find({"published": True, "featured": True}).sort("created_at", DESCENDING).limit(limit)
    return ok([serialize_doc(p) for p in cursor])


@router.get("/categories")
def categories(db=Depends(get_db)):
    return ok(blog_categories(db))


@router.get("/slug/{slug}")
def post_by_slug(slug: str, db=Depends(get_db)):
    return ok(serialize_doc(get_post_by_slug(db, slug)))


# Admin Endpoints
@admin_router.get("")
def admin_posts(
    published: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_db),
):
    return ok(list_posts(db, page, limit, published=published))


@admin_router.post("", status_code=201)
def add_post(payload: BlogPost, db=Depends(get_db)):
    return ok(serialize_doc(create_post(db, payload)), "Post created")


@admin_router.get("/{post_id}")
def admin_post(post_id: str, db=Depends(get_db)):
    return ok(serialize_doc(get_post_doc(db, post_id)))


@admin_router.put("/{post_id}")
def edit_post(post_id: str, payload: BlogPostUpdate, db=Depends(get_db)):
    return ok(serialize_doc(update_post(db, post_id, payload)), "Post updated")


@admin_router.delete("/{post_id}")
def delete_post(post_id: str, db=Depends(get_db)):
    post = get_post_doc(db, post_id)
    db["blog_posts"].delete_one({"_id": post["_id"]})
    return ok(message="Post deleted")
