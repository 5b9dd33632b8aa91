import json
import logging
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)


def _default(o: Any) -> Any:
    if hasattr(o, "model_dump"):
        return o.model_dump(mode="json")
    return str(o)


class RedisService:
    """
    Optional JSON cache. Every failure degrades to a cache miss so that
    a Redis outage never fails a query.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self.client = None
        if self.redis_url:
            try:
                self.client = redis.from_url(self.redis_url, decode_responses=True)
                # Test connection
                self.client.ping()
                logger.info("Connected to Redis for caching.")
            except redis.RedisError as e:
                logger.warning(f"Failed to connect to Redis: {e}. Caching disabled.")
                self.client = None
        else:
            logger.info("REDIS_URL not set. Caching disabled.")

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get(self, key: str) -> Optional[Any]:
        if not self.client:
            return None
        try:
            data = self.client.get(key)
            if data:
                return json.loads(data)
            return None
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Redis get error: {e}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: int = 60):
        if not self.client:
            return
        try:
            # Pydantic models (and lists of them) serialise through their JSON mode
            serialized = json.dumps(value, default=_default)
            self.client.setex(key, ttl_seconds, serialized)
        except (redis.RedisError, TypeError) as e:
            logger.warning(f"Redis set error: {e}")

    def delete_pattern(self, pattern: str):
        if not self.client:
            return
        try:
            keys = list(self.client.scan_iter(match=pattern))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Redis delete error: {e}")
