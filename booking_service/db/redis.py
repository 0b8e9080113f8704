# booking_service/db/redis.py
from typing import Optional

import redis

from booking_service.core.config import settings


def get_redis_client() -> Optional[redis.Redis]:
    """
    Creates and returns a new Redis client instance, or None when no Redis URL
    is configured for this environment.
    """
    if not settings.REDIS_URL:
        return None
    return redis.from_url(settings.REDIS_URL, decode_responses=True)
