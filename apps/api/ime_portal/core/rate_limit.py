"""Rate limiting configuration for the portal API."""

import logging
import os

import redis
from slowapi import Limiter
from slowapi.util import get_remote_address

from ime_portal.core.config import settings

logger = logging.getLogger(__name__)

# Redis shares counters across workers; in-memory when unset or unreachable
REDIS_URL = os.getenv("REDIS_URL", "")
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)

# Booking creation reaches the external scheduler; keep it tighter
BOOKING_CREATE_LIMIT = f"{settings.RATE_LIMIT_BOOKING_CREATE}/minute"
WEBHOOK_LIMIT = f"{settings.RATE_LIMIT_WEBHOOK}/minute"


def resolve_storage_uri(redis_url: str, testing: bool = IS_TESTING) -> str:
    """redis_url when it answers a ping, else in-memory storage."""
    if testing or not redis_url:
        return "memory://"
    try:
        redis.from_url(redis_url, socket_connect_timeout=1).ping()
    except (redis.RedisError, ValueError) as e:
        logger.warning("Redis unavailable for rate limiting, using in-memory: %s", e)
        return "memory://"
    return redis_url


limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=resolve_storage_uri(REDIS_URL),
    default_limits=DEFAULT_LIMITS,
    enabled=not IS_TESTING,
)
