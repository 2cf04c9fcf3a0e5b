"""
Key-value stores behind the range cache.

Both stores hold opaque bytes with a per-key TTL. Connection failures raise
StoreUnavailable so the cache can fall back to computing directly.
"""
import fnmatch
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import redis

logger = logging.getLogger("cache.store")


class StoreUnavailable(Exception):
    """The backing key-value store cannot be reached."""


class KeyValueStore(ABC):
    """get / set-with-TTL contract over an external cache."""

    name = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value, or None if absent or expired."""

    @abstractmethod
    def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        """Store value under key for ttl_seconds. Returns True on success."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    def delete_pattern(self, pattern: str) -> int:
        """Remove all keys matching a glob pattern. Returns the count removed."""

    @abstractmethod
    def ping(self) -> bool:
        """True if the store is reachable."""


class InMemoryStore(KeyValueStore):
    """
    Process-local store with lazy TTL expiry.

    Thread-safe; expired entries are dropped on access or by cleanup().
    """

    name = "memory"

    def __init__(self):
        self._data: Dict[str, Tuple[bytes, float]] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if time.monotonic() >= expires_at:
                del self._data[key]
                return None
            return value

    def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        with self._lock:
            self._data[key] = (value, time.monotonic() + ttl_seconds)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            to_delete = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
            for key in to_delete:
                del self._data[key]
        return len(to_delete)

    def ping(self) -> bool:
        return True

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until key expires, or None if absent."""
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            return max(0.0, item[1] - time.monotonic())

    def keys(self, pattern: str = "*") -> list:
        """Live keys matching a glob pattern."""
        now = time.monotonic()
        with self._lock:
            return sorted(
                k for k, (_, expires_at) in self._data.items()
                if expires_at > now and fnmatch.fnmatchcase(k, pattern)
            )

    def cleanup(self) -> int:
        """
        Remove all expired entries.

        Returns the number of entries removed.
        """
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._data.items() if expires_at <= now]
            for key in expired:
                del self._data[key]
        return len(expired)


class RedisStore(KeyValueStore):
    """
    Redis-backed store using SETEX for TTLs.

    Any redis error is reported as StoreUnavailable; the client reconnects on
    the next command once the server is back.
    """

    name = "redis"

    def __init__(
        self,
        url: str,
        socket_timeout: float = 5.0,
        client: Optional[redis.Redis] = None,
    ):
        self.url = url
        self._client = client or redis.Redis.from_url(
            url,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
            retry_on_timeout=True,
            health_check_interval=30,
        )

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET failed for {key}: {e}")
            raise StoreUnavailable(str(e)) from e

    def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        try:
            return bool(self._client.setex(key, ttl_seconds, value))
        except redis.RedisError as e:
            logger.warning(f"Redis SETEX failed for {key}: {e}")
            raise StoreUnavailable(str(e)) from e

    def delete(self, key: str) -> bool:
        try:
            return self._client.delete(key) > 0
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def delete_pattern(self, pattern: str) -> int:
        try:
            keys = list(self._client.scan_iter(match=pattern, count=500))
            if not keys:
                return 0
            return int(self._client.delete(*keys))
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis PING failed: {e}")
            return False


def create_store(redis_url: Optional[str] = None, socket_timeout: float = 5.0) -> KeyValueStore:
    """Redis store when a URL is configured, in-memory otherwise."""
    if redis_url:
        logger.info("Using Redis cache store")
        return RedisStore(redis_url, socket_timeout=socket_timeout)
    logger.info("No REDIS_URL configured, using in-memory cache store")
    return InMemoryStore()
