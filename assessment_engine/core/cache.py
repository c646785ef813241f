"""
Key-value storage for exam session snapshots.

Redis is the production store; the in-memory store backs tests and
single-process deployments.
"""
import json
import logging
import time
from typing import Any, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

from .config import settings

logger = logging.getLogger(__name__)


def make_key(*args) -> str:
    """Generate cache key from arguments."""
    return ":".join(str(arg) for arg in args)


def session_key(student_id: str) -> str:
    return make_key("exam-session", student_id)


class KeyValueStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any: ...

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool: ...

    async def delete(self, *keys: str) -> int: ...


class RedisStore:
    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self.redis: Optional[redis.Redis] = None

    async def connect(self):
        """Initialize Redis connection pool."""
        self.redis = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.REDIS_POOL_SIZE,
        )

    async def disconnect(self):
        """Close Redis connection."""
        if self.redis:
            await self.redis.close()

    async def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache. Connection errors propagate; a miss is not an outage."""
        try:
            value = await self.redis.get(key)
        except Exception as e:
            logger.error(f"Cache get error: {e}")
            raise
        if value is None:
            return default
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        """Set value in cache with optional expiration."""
        try:
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            return bool(await self.redis.set(key, value, ex=expire or settings.SESSION_TTL))
        except Exception as e:
            logger.error(f"Cache set error: {e}")
            return False

    async def delete(self, *keys: str) -> int:
        """Delete keys from cache."""
        try:
            return await self.redis.delete(*keys)
        except Exception as e:
            logger.error(f"Cache delete error: {e}")
            return 0


class InMemoryStore:
    """Process-local store with the same contract as RedisStore."""

    def __init__(self, clock=time.monotonic):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._clock = clock

    async def get(self, key: str, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return default
        return json.loads(value)

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        ttl = expire or settings.SESSION_TTL
        self._data[key] = (json.dumps(value), self._clock() + ttl if ttl else None)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed
