"""
MongoDB access for the AgroMart API.

Each collection holds plain documents; request validation happens in
``schemas``. Foreign references (``user_id``, ``product_id`` ...) are stored
as hex strings, only ``_id`` is an ObjectId.
"""
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from agromart import config
from agromart.errors import AppError

client = MongoClient(config.DATABASE_URL)
db = client[config.DATABASE_NAME]


def get_db():
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes; make them comparable with aware ones."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_object_id(id_str: str, label: str = "ID") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise AppError(f"Invalid {label} format", 400, "INVALID_ID")


def create_document(db, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return _serialize_value(doc)


def ensure_indexes(db) -> None:
    db["users"].create_index("email", unique=True)
    db["products"].create_index("slug", unique=True)
    db["products"].create_index("category_id")
    db["categories"].create_index("name", unique=True)
    db["coupons"].create_index("code", unique=True)
    db["blog_posts"].create_index("slug", unique=True)
    db["carts"].create_index("user_id", unique=True)
    db["orders"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["payment_intents"].create_index("payment_id", unique=True)
    db["reviews"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    db["wishlist"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    db["subscribers"].create_index("email", unique=True)
    db["addresses"].create_index("user_id")
    db["tickets"].create_index("user_id")
