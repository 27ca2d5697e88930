"""Defense state storage abstraction layer.

Provides pluggable backends for the expiring counter cache, the durable
option/user-field store and named locks.

Configuration:
    CACHE_BACKEND=memory (default) | redis
    DURABLE_BACKEND=memory (default) | sql | redis
    REDIS_URL=redis://localhost:6379/0 (required when a backend is redis)
"""

import logging
import time
from typing import Callable, Optional

from matchguard.core.config import Settings
from matchguard.storage.backend import CacheBackend, DurableStore, LockManager
from matchguard.storage.memory import InMemoryCache, InMemoryDurableStore, InMemoryLockManager

logger = logging.getLogger(__name__)

__all__ = [
    "CacheBackend",
    "DurableStore",
    "LockManager",
    "InMemoryCache",
    "InMemoryDurableStore",
    "InMemoryLockManager",
    "create_backends",
]


def _connect_redis(settings: Settings):
    """Return a live Redis client, or None when unavailable."""
    redis_url = settings.REDIS_URL.strip()
    if not redis_url:
        logger.warning("Redis backend selected but REDIS_URL not set, falling back to memory")
        return None
    try:
        from matchguard.storage.redis_backend import create_redis_client
        client = create_redis_client(redis_url)
        if client.ping():
            logger.info("Redis connected (%s)", redis_url.split("@")[-1])
            return client
        logger.warning("Redis ping failed, falling back to memory backend")
    except Exception as e:
        logger.warning("Failed to initialize Redis backend: %s, falling back to memory", e)
    return None


def create_backends(
    settings: Settings,
    clock: Callable[[], float] = time.time,
) -> tuple[CacheBackend, DurableStore, LockManager]:
    """Create cache, durable store and lock manager from configuration.

    Locks follow the cache: with a shared Redis cache, locks are
    distributed too; otherwise they are process-local.
    """
    redis_client: Optional[object] = None
    if "redis" in (settings.CACHE_BACKEND, settings.DURABLE_BACKEND):
        redis_client = _connect_redis(settings)

    cache: CacheBackend
    locks: LockManager
    if settings.CACHE_BACKEND == "redis" and redis_client is not None:
        from matchguard.storage.redis_backend import RedisCache
        from matchguard.storage.distributed_lock import RedisLockManager
        cache = RedisCache(redis_client, key_prefix=settings.REDIS_KEY_PREFIX)
        locks = RedisLockManager(redis_client, key_prefix=settings.REDIS_KEY_PREFIX)
    else:
        if settings.CACHE_BACKEND not in ("memory", "redis"):
            logger.warning("Unknown CACHE_BACKEND=%s, using memory", settings.CACHE_BACKEND)
        cache = InMemoryCache(clock=clock)
        locks = InMemoryLockManager()

    durable: DurableStore
    if settings.DURABLE_BACKEND == "redis" and redis_client is not None:
        from matchguard.storage.redis_backend import RedisDurableStore
        durable = RedisDurableStore(redis_client, key_prefix=settings.REDIS_KEY_PREFIX)
    elif settings.DURABLE_BACKEND == "sql":
        from matchguard.core.database import create_db_engine
        from matchguard.storage.sql_backend import SqlDurableStore
        durable = SqlDurableStore(create_db_engine(settings.DATABASE_URL))
        logger.info("Durable store: SQL (%s)", settings.DATABASE_URL.split("@")[-1])
    else:
        if settings.DURABLE_BACKEND not in ("memory", "redis"):
            logger.warning("Unknown DURABLE_BACKEND=%s, using memory", settings.DURABLE_BACKEND)
        durable = InMemoryDurableStore()

    return cache, durable, locks
