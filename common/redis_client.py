"""
Redis client utilities for rate limiting and event deduplication
"""
import logging
import redis
from typing import Dict, Any, Optional
from datetime import datetime
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    # Rate Limiting
    def check_rate_limit(self, subject: str, endpoint: str, max_requests: int, window_seconds: int) -> Dict[str, Any]:
        """Fixed-window counter per subject/endpoint"""
        now = int(datetime.now().timestamp())
        window_start = now // window_seconds * window_seconds
        reset_time = window_start + window_seconds
        key = f"rate_limit:{subject}:{endpoint}:{window_start}"
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, window_seconds)
            count = pipe.execute()[0]
        except redis.RedisError as e:
            # Fail open - allow request if Redis is down
            logger.warning(f"Rate limit check failed, allowing request: {e}")
            return {"allowed": True, "count": 0, "remaining": max_requests, "reset_time": 0, "retry_after": 0}

        allowed = count <= max_requests
        return {
            "allowed": allowed,
            "count": count,
            "remaining": max(0, max_requests - count),
            "reset_time": reset_time,
            "retry_after": 0 if allowed else reset_time - now,
        }

    # Deduplication
    def mark_once(self, key: str, ttl_seconds: int) -> bool:
        """True the first time key is seen within ttl_seconds.

        Fails open: when Redis is unreachable every key counts as new, so
        callers need their own idempotent write behind this check.
        """
        try:
            return bool(self.client.set(f"seen:{key}", 1, nx=True, ex=ttl_seconds))
        except redis.RedisError as e:
            logger.warning(f"Dedup check failed for {key}, treating as new: {e}")
            return True

    def forget(self, key: str) -> None:
        try:
            self.client.delete(f"seen:{key}")
        except redis.RedisError as e:
            logger.warning(f"Could not clear dedup key {key}: {e}")

redis_client = RedisClient()
