import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
IS_PRODUCTION = ENVIRONMENT == "production"

PORT = int(os.getenv("PORT", 8000))
FRONTEND_URL = os.getenv("FRONTEND_URL", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "agromart")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "devrefreshsecret")
JWT_ALGO = "HS256"
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", 7))
JWT_REFRESH_EXPIRES_DAYS = int(os.getenv("JWT_REFRESH_EXPIRES_DAYS", 30))

PAYMENT_STRIPE_WEBHOOK_SECRET = os.getenv("PAYMENT_STRIPE_WEBHOOK_SECRET", "whsec_dev")
PAYMENT_SECRET = os.getenv("PAYMENT_SECRET", "paysecret_dev")
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", 300))
IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", 86400))

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))

RATE_LIMIT_ENABLED = _flag("RATE_LIMIT_ENABLED", "true")
# Number of reverse proxies in front of the app whose X-Forwarded-For entries are trusted
TRUST_PROXY_HOPS = int(os.getenv("TRUST_PROXY_HOPS", 0))

SEED_ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@agromart.com")
SEED_ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "Admin@1234")


def validate_settings() -> None:
    """Refuse to start a production server on development secrets."""
    if not IS_PRODUCTION:
        return
    missing = [name for name in ("JWT_SECRET", "JWT_REFRESH_SECRET") if not os.getenv(name)]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
