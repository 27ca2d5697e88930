"""Distributed lock implementation using Redis.

Provides a Redis-based lock that works across multiple process instances,
used to serialize read-modify-write sequences (ring-buffer appends, ban
escalation) keyed per identity.

Uses Redis SET NX with automatic expiry to prevent deadlocks.
Compatible with the `with` statement (same as threading.Lock).
"""

import logging
import time
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

# Default lock TTL; auto-releases if the holder crashes
_DEFAULT_LOCK_TTL_SECONDS = 10
# Retry interval when waiting to acquire lock
_RETRY_INTERVAL_SECONDS = 0.02
# Maximum time to wait for lock acquisition
_DEFAULT_ACQUIRE_TIMEOUT_SECONDS = 3

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLock:
    """Redis-based distributed lock compatible with `with`.

    Uses SET NX EX pattern for atomic lock acquisition with automatic expiry.
    Each lock instance has a unique token to ensure only the holder can release.

    Usage:
        lock = RedisLock(redis_client, "matchguard:lock:bruteforce:203.0.113.5")
        with lock:
            # critical section
    """

    def __init__(
        self,
        redis_client,
        key: str,
        ttl: int = _DEFAULT_LOCK_TTL_SECONDS,
        acquire_timeout: float = _DEFAULT_ACQUIRE_TIMEOUT_SECONDS,
    ):
        self._client = redis_client
        self._key = key
        self._ttl = ttl
        self._acquire_timeout = acquire_timeout
        self._token: Optional[str] = None

    def acquire(self) -> bool:
        """Attempt to acquire the lock within the timeout period.

        Returns:
            True if lock was acquired, False if timed out.
        """
        token = str(uuid.uuid4())
        deadline = time.monotonic() + self._acquire_timeout

        while time.monotonic() < deadline:
            acquired = self._client.set(self._key, token, nx=True, ex=self._ttl)
            if acquired:
                self._token = token
                return True
            time.sleep(_RETRY_INTERVAL_SECONDS)

        logger.warning(
            "Failed to acquire lock %s within %ss", self._key, self._acquire_timeout
        )
        return False

    def release(self) -> None:
        """Release the lock if we hold it (atomic check-and-delete)."""
        if self._token is None:
            return

        try:
            self._client.eval(_RELEASE_SCRIPT, 1, self._key, self._token)
        except Exception as e:
            logger.warning("Failed to release lock %s: %s", self._key, e)
        finally:
            self._token = None

    def __enter__(self):
        if not self.acquire():
            raise TimeoutError(
                f"Could not acquire lock {self._key} within {self._acquire_timeout}s"
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class RedisLockManager:
    """Factory for creating RedisLock instances with a consistent key prefix."""

    def __init__(self, redis_client, key_prefix: str = "matchguard:"):
        self._client = redis_client
        self._lock_prefix = f"{key_prefix}lock:"

    def get_lock(
        self,
        name: str,
        ttl: int = _DEFAULT_LOCK_TTL_SECONDS,
        acquire_timeout: float = _DEFAULT_ACQUIRE_TIMEOUT_SECONDS,
    ) -> RedisLock:
        """Create a distributed lock for the given name."""
        return RedisLock(
            self._client, f"{self._lock_prefix}{name}", ttl=ttl, acquire_timeout=acquire_timeout
        )
