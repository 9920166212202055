import logging
from typing import Optional

from fastapi import Depends, Request

from agromart import config
from agromart.cache import get_cache
from agromart.errors import AppError
from agromart.security import TokenPayload, optional_user

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Peer address, or the X-Forwarded-For hop added by the last trusted proxy."""
    peer = request.client.host if request.client else "unknown"
    hops = config.TRUST_PROXY_HOPS
    forwarded = request.headers.get("x-forwarded-for")
    if not hops or not forwarded:
        return peer
    chain = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
    if not chain:
        return peer
    return chain[-hops] if len(chain) >= hops else chain[0]


class RateLimiter:
    """Fixed-window request counter keyed by user id, or client IP when anonymous."""

    def __init__(self, name: str, max_requests: int, window_seconds: int, message: Optional[str] = None,
                 skip_admins: bool = True):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.message = message or "Too many requests. Please try again later."
        self.skip_admins = skip_admins

    def identity(self, request: Request, user: Optional[TokenPayload]) -> str:
        if user:
            return f"user:{user.user_id}"
        return f"ip:{client_ip(request)}"

    def hit(self, cache, identity: str) -> None:
        key = f"ratelimit:{self.name}:{identity}"
        pipe = cache.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        current, ttl = pipe.execute()
        # -1 means no expiry: first hit, or a lost EXPIRE
        if ttl is None or ttl < 0:
            cache.expire(key, self.window_seconds)
            ttl = self.window_seconds
        if current > self.max_requests:
            logger.warning("Rate limit %s exceeded for %s", self.name, identity)
            raise AppError(self.message, 429, "RATE_LIMIT_EXCEEDED", {"retry_after": ttl})

    def __call__(self, request: Request, cache=Depends(get_cache),
                 user: Optional[TokenPayload] = Depends(optional_user)) -> None:
        if not config.RATE_LIMIT_ENABLED:
            return
        if self.skip_admins and user and user.is_admin:
            return
        self.hit(cache, self.identity(request, user))


MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR

general_limiter = RateLimiter("general", 100, 15 * MINUTE)
login_limiter = RateLimiter("login", 5, 15 * MINUTE, "Too many login attempts. Please try again later.",
                            skip_admins=False)
register_limiter = RateLimiter("register", 3, HOUR, skip_admins=False)
refresh_limiter = RateLimiter("refresh", 10, 15 * MINUTE, skip_admins=False)
payment_limiter = RateLimiter("payment", 10, HOUR)
payment_verify_limiter = RateLimiter("payment_verify", 20, HOUR)
contact_limiter = RateLimiter("contact", 3, HOUR, skip_admins=False)
newsletter_limiter = RateLimiter("newsletter", 2, HOUR, skip_admins=False)
ticket_limiter = RateLimiter("ticket", 5, DAY)
upload_limiter = RateLimiter("upload", 20, HOUR)
review_limiter = RateLimiter("review", 5, DAY)
search_limiter = RateLimiter("search", 50, 15 * MINUTE)
order_limiter = RateLimiter("order", 10, HOUR)
cart_limiter = RateLimiter("cart", 100, 15 * MINUTE)
