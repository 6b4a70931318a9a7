import redis
import json
import logging
from typing import Any, Optional
from examguard.core.config import settings

logger = logging.getLogger(__name__)


class CacheManager:
    """Redis-backed JSON cache; every failure degrades to a cache miss"""

    def __init__(self, redis_url: Optional[str] = None, enabled: Optional[bool] = None):
        self.redis_url = redis_url or getattr(settings, 'redis_url', 'redis://localhost:6379/0')
        self.default_ttl = getattr(settings, 'cache_default_ttl', 300)
        self.enabled = settings.cache_enabled if enabled is None else enabled
        self._sync_client = None

    @property
    def sync_client(self) -> redis.Redis:
        """Get synchronous Redis client"""
        if self._sync_client is None:
            self._sync_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True
            )
        return self._sync_client

    def _serialize_value(self, value: Any) -> str:
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache serialization error: {e}")
            return json.dumps(str(value))

    def _deserialize_value(self, value: str) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Cache deserialization error: {e}, value: {value}")
            return value

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            value = self.sync_client.get(key)
            return self._deserialize_value(value) if value else None
        except Exception as e:
            logger.warning(f"Cache get error for key '{key}': {e}")
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.enabled:
            return False
        try:
            ttl = ttl or self.default_ttl
            serialized = self._serialize_value(value)
            return bool(self.sync_client.setex(key, ttl, serialized))
        except Exception as e:
            logger.warning(f"Cache set error for key '{key}': {e}")
            return False

    def delete(self, key: str) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(self.sync_client.delete(key))
        except Exception as e:
            logger.warning(f"Cache delete error for key '{key}': {e}")
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching pattern"""
        if not self.enabled:
            return 0
        try:
            keys = self.sync_client.keys(pattern)
            if keys:
                return self.sync_client.delete(*keys)
            return 0
        except Exception as e:
            logger.warning(f"Cache delete pattern error: {e}")
            return 0

    def health_check(self) -> bool:
        """Check Redis connection health"""
        if not self.enabled:
            return False
        try:
            return bool(self.sync_client.ping())
        except Exception:
            return False

    def close(self):
        if self._sync_client is not None:
            self._sync_client.close()
            self._sync_client = None


cache = CacheManager()
