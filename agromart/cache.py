"""Redis-backed key-value store for webhook idempotency and request counters."""
from typing import Optional

import redis

from agromart import config

cache = redis.Redis.from_url(config.REDIS_URL, decode_responses=True)

PROCESSING = "processing"
PROCESSED = "processed"

# A reservation that outlives this is treated as abandoned.
RESERVATION_TTL_SECONDS = 300


def get_cache():
    return cache


def idempotency_key(event_id: str) -> str:
    return f"webhook:{event_id}"


def check_idempotency(cache, key: str) -> Optional[str]:
    return cache.get(key)


def reserve_idempotency(cache, key: str, ttl: int = RESERVATION_TTL_SECONDS) -> bool:
    """Atomically claim ``key``; False means another delivery already holds it."""
    return bool(cache.set(key, PROCESSING, nx=True, ex=ttl))


def mark_processed(cache, key: str, ttl: Optional[int] = None) -> None:
    cache.set(key, PROCESSED, ex=ttl or config.IDEMPOTENCY_TTL_SECONDS)


def release_idempotency(cache, key: str) -> None:
    cache.delete(key)
