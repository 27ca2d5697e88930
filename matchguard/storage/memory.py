"""In-memory storage backends.

This is the default backend set: state lives in Python dicts guarded by
threading locks. Values are deep-copied on the way in and out so callers
never mutate stored entries by reference, matching the serialized
backends.
"""

import copy
import threading
import time
import weakref
from typing import Any, Callable, Optional


class InMemoryCache:
    """Dict-based expiring cache.

    Expiry is evaluated lazily against the injected clock, so tests can
    advance time without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[Any, float]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[tuple[Any, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            return copy.deepcopy(entry[0]) if entry else None

    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self._clock() + max(1, int(ttl)))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def incr(self, key: str, ttl: int) -> int:
        with self._lock:
            entry = self._live(key)
            count = int(entry[0]) + 1 if entry else 1
            self._data[key] = (count, self._clock() + max(1, int(ttl)))
            return count

    def increment_below(self, key: str, limit: int, ttl: int) -> tuple[int, bool]:
        with self._lock:
            entry = self._live(key)
            count = int(entry[0]) if entry else 0
            if count >= limit:
                return count, False
            count += 1
            self._data[key] = (count, self._clock() + max(1, int(ttl)))
            return count, True

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return max(0, int(round(entry[1] - self._clock())))

    def ping(self) -> bool:
        return True


class InMemoryDurableStore:
    """Process-local stand-in for the persistent option/user-field store."""

    def __init__(self) -> None:
        self._options: dict[str, Any] = {}
        self._user_fields: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def get_option(self, name: str, default: Any = None) -> Any:
        with self._lock:
            if name not in self._options:
                return default
            return copy.deepcopy(self._options[name])

    def update_option(self, name: str, value: Any) -> None:
        with self._lock:
            self._options[name] = copy.deepcopy(value)

    def delete_option(self, name: str) -> bool:
        with self._lock:
            return self._options.pop(name, None) is not None

    def get_user_field(self, user_id: str, name: str, default: Any = None) -> Any:
        with self._lock:
            fields = self._user_fields.get(str(user_id), {})
            if name not in fields:
                return default
            return copy.deepcopy(fields[name])

    def update_user_field(self, user_id: str, name: str, value: Any) -> None:
        with self._lock:
            self._user_fields.setdefault(str(user_id), {})[name] = copy.deepcopy(value)

    def delete_user_field(self, user_id: str, name: str) -> bool:
        with self._lock:
            fields = self._user_fields.get(str(user_id))
            if not fields or name not in fields:
                return False
            del fields[name]
            return True


class _NamedLock:
    """threading.Lock wrapper that can be held in a weak mapping."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        return self._lock.acquire(blocking, timeout)

    def release(self) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> bool:
        return self._lock.acquire()

    def __exit__(self, *exc) -> None:
        self._lock.release()


class InMemoryLockManager:
    """Per-name threading locks for single-process deployments.

    A name keeps its lock only while some caller references it, so one
    entry per client address does not accumulate once requests finish.
    """

    def __init__(self) -> None:
        self._locks = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def get_lock(self, name: str) -> _NamedLock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = _NamedLock()
                self._locks[name] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)
