"""Storage backend protocols for the login defense state.

Defines the abstract interfaces every backend must implement so the
counters, ban registry and session state can move between in-memory,
Redis and SQL storage without touching the services.

Values handed to a backend must be JSON-serializable (dicts, lists,
strings, numbers). Backends raise StorageUnavailableError when the
underlying store cannot be reached; the services decide whether that
fails open or closed.
"""

from typing import Any, ContextManager, Optional, Protocol


class CacheBackend(Protocol):
    """Expiring key/value store used for counters, lockouts and ring buffers.

    Implementations:
    - InMemoryCache: dict-based, clock-driven expiry (default)
    - RedisCache: Redis-backed, shared across instances
    """

    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if absent or expired."""
        ...

    def set(self, key: str, value: Any, ttl: int) -> None:
        """Store a value that expires after ttl seconds."""
        ...

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        ...

    def incr(self, key: str, ttl: int) -> int:
        """Atomically add one to an integer counter and reset its TTL."""
        ...

    def increment_below(self, key: str, limit: int, ttl: int) -> tuple[int, bool]:
        """Atomically increment unless the counter already reached limit.

        Returns (count, accepted). When rejected the counter and its TTL
        are left untouched.
        """
        ...

    def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in seconds, or None if the key is absent."""
        ...

    def ping(self) -> bool:
        """Health check."""
        ...


class DurableStore(Protocol):
    """Persistent option and per-user field storage.

    Implementations:
    - InMemoryDurableStore: process-local (tests, single-process dev)
    - SqlDurableStore: SQLAlchemy tables
    - RedisDurableStore: Redis hashes without expiry
    """

    def get_option(self, name: str, default: Any = None) -> Any:
        ...

    def update_option(self, name: str, value: Any) -> None:
        ...

    def delete_option(self, name: str) -> bool:
        ...

    def get_user_field(self, user_id: str, name: str, default: Any = None) -> Any:
        ...

    def update_user_field(self, user_id: str, name: str, value: Any) -> None:
        ...

    def delete_user_field(self, user_id: str, name: str) -> bool:
        ...


class LockManager(Protocol):
    """Factory for named mutual-exclusion locks."""

    def get_lock(self, name: str) -> ContextManager:
        """Return a lock usable as ``with manager.get_lock(name): ...``."""
        ...
