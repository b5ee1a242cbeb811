"""
Distributed Cache Module
========================

String key/value cache shared by every state formatter in the process (and,
with Redis, by every middleware replica).

Backends:
    - memory://            : In-process TTL cache (single replica, development, tests)
    - redis:// / rediss:// : Redis via redis-py (multi-replica deployments)

Expiry is owned by the cache: every write uses the backend's configured
default TTL. Callers never manage expiry themselves.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis
from redis.exceptions import RedisError

from ticketstate.state.exceptions import CacheUnavailableError, StateFormatConfigurationError

logger = logging.getLogger(__name__)


MEMORY_CACHE_URL = "memory://"

# Full expiry sweep once every this many writes
PRUNE_EVERY_WRITES = 256


class DistributedCache(Protocol):
    """Minimal string cache contract used by the state formatters."""

    def get_string(self, key: str) -> Optional[str]:
        ...

    def set_string(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


# ============================================================================
# In-memory TTL cache
# ============================================================================

class MemoryDistributedCache:
    """
    In-memory TTL cache for a single process.

    Thread-safe: the lock guards only the dict operation itself, never I/O.
    Expired entries are dropped lazily on read, and swept every
    PRUNE_EVERY_WRITES writes.
    """

    def __init__(self, default_ttl_seconds: int = 900, *, clock: Callable[[], float] = time.monotonic):
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be > 0")
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._writes = 0

    def _prune(self, now: float) -> None:
        """Drop entries whose expiry has passed."""
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    def get_string(self, key: str) -> Optional[str]:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if now >= expires_at:
                del self._entries[key]
                return None
            return value

    def set_string(self, key: str, value: str) -> None:
        with self._lock:
            now = self._clock()
            self._writes += 1
            if self._writes % PRUNE_EVERY_WRITES == 0:
                self._prune(now)
            self._entries[key] = (value, now + self._ttl_seconds)

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._entries)


# ============================================================================
# Redis cache
# ============================================================================

class RedisDistributedCache:
    """
    Redis-backed cache.

    Writes use `SET key value EX ttl`. Any Redis failure surfaces immediately
    as CacheUnavailableError; retry/backoff belongs to the redis client config.
    """

    def __init__(self, redis_client, default_ttl_seconds: int = 900):
        if redis_client is None:
            raise ValueError("Redis client is required")
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be > 0")
        self._redis = redis_client
        self._ttl_seconds = default_ttl_seconds

    def get_string(self, key: str) -> Optional[str]:
        try:
            value = self._redis.get(key)
        except RedisError as e:
            logger.error(f"Redis GET failed: {e}", extra={"exception_type": type(e).__name__})
            raise CacheUnavailableError(f"Cache read failed: {e}") from e
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set_string(self, key: str, value: str) -> None:
        try:
            self._redis.set(key, value, ex=self._ttl_seconds)
        except RedisError as e:
            logger.error(f"Redis SET failed: {e}", extra={"exception_type": type(e).__name__})
            raise CacheUnavailableError(f"Cache write failed: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self._redis.delete(key)
        except RedisError as e:
            logger.error(f"Redis DEL failed: {e}", extra={"exception_type": type(e).__name__})
            raise CacheUnavailableError(f"Cache delete failed: {e}") from e


# ============================================================================
# Factory
# ============================================================================

def create_cache(url: str, default_ttl_seconds: int = 900, socket_timeout: float = 2.0) -> DistributedCache:
    """
    Build a cache backend from a URL.

    Args:
        url: "memory://" or a redis URL ("redis://host:6379/0", "rediss://...")
        default_ttl_seconds: Expiry applied to every entry written
        socket_timeout: Redis connect and read timeout in seconds

    Returns:
        DistributedCache implementation

    Raises:
        StateFormatConfigurationError: If the URL scheme is not supported
    """
    if url == MEMORY_CACHE_URL:
        logger.info("Using in-memory state cache", extra={"ttl_seconds": default_ttl_seconds})
        return MemoryDistributedCache(default_ttl_seconds)

    if url.startswith(("redis://", "rediss://", "unix://")):
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        logger.info("Using Redis state cache", extra={"ttl_seconds": default_ttl_seconds})
        return RedisDistributedCache(client, default_ttl_seconds)

    raise StateFormatConfigurationError(f"Unsupported cache URL scheme: {url.split(':', 1)[0]}")
