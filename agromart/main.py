import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from agromart import __version__, config
from agromart import addresses, admin, auth, blog, cart, catalog, coupons, orders, payments, reviews, support, uploads
from agromart import wishlist
from agromart.cache import get_cache
from agromart.database import ensure_indexes, get_db
from agromart.errors import register_error_handlers
from agromart.rate_limit import general_limiter
from agromart.responses import ok

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("agromart")

COLLECTIONS = [
    "users", "categories", "products", "carts", "orders", "payment_intents", "coupons", "reviews",
    "tickets", "contact_messages", "subscribers", "blog_posts", "addresses", "wishlist",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.validate_settings()
    try:
        ensure_indexes(get_db())
    except PyMongoError as exc:
        logger.error("Could not create database indexes: %s", exc)
    logger.info("AgroMart API %s started (%s)", __version__, config.ENVIRONMENT)
    yield


app = FastAPI(title="AgroMart API", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if config.FRONTEND_URL == "*" else config.FRONTEND_URL.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR, check_dir=False), name="uploads")

for module in (auth, catalog, cart, coupons, orders, payments, reviews, support, blog, addresses, wishlist,
               uploads, admin):
    app.include_router(module.router, dependencies=[Depends(general_limiter)])
    if hasattr(module, "admin_router"):
        app.include_router(module.admin_router)

app.include_router(payments.webhook_router)


@app.get("/")
def root():
    return {"status": "ok", "service": "agromart-api", "version": __version__}


@app.get("/api")
def api_info():
    return ok({
        "name": "AgroMart API",
        "version": __version__,
        "endpoints": {
            "auth": "/api/auth",
            "products": "/api/products",
            "categories": "/api/categories",
            "cart": "/api/cart",
            "checkout": "/api/checkout",
            "orders": "/api/orders",
            "payment": "/api/payment",
            "coupons": "/api/coupons",
            "support": "/api/support",
            "blog": "/api/blog",
            "addresses": "/api/users/addresses",
            "wishlist": "/api/wishlist",
            "upload": "/api/upload",
            "admin": "/api/admin",
        },
    })


@app.get("/api/health")
def health():
    return {"status": "ok", "environment": config.ENVIRONMENT}


@app.get("/schema")
def schema_overview():
    return {"collections": COLLECTIONS}


# Simple health
@app.get("/test")
def test_database(db=Depends(get_db), cache=Depends(get_cache)):
    status = {
        "backend": "running",
        "database": "not-configured",
        "cache": "not-configured",
    }
    try:
        status["collections"] = sorted(db.list_collection_names())
        status["database"] = "connected"
    except PyMongoError as exc:
        logger.warning("Database check failed: %s", exc)
        status["database"] = "error"
    try:
        cache.ping()
        status["cache"] = "connected"
    except RedisError as exc:
        logger.warning("Cache check failed: %s", exc)
        status["cache"] = "error"
    return status


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
