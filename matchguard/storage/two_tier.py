"""Two-tier record storage: fast expiring cache in front of a durable store.

Records are written to both tiers. Reads go to the cache first; on a miss
the durable tier is consulted and, if the record is still live, the cache
is repaired with the record's *remaining* lifetime so that fallback reads
never extend it. Durable stores do not expire entries themselves, so a
record found dead on the durable tier is deleted as part of the read.
"""

import logging
import math
from typing import Any, Callable, Optional, Protocol

from matchguard.core.exceptions import StorageUnavailableError
from matchguard.storage.backend import CacheBackend, DurableStore, LockManager

logger = logging.getLogger(__name__)

Record = dict[str, Any]


class DurableTier(Protocol):
    """Keyed record access on top of a DurableStore."""

    def get(self, key: str) -> Optional[Record]:
        ...

    def put(self, key: str, record: Record) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...


class OptionMapTier:
    """All records kept in one option as ``{key: record}``.

    The whole map is rewritten on every change, so writers are serialized
    with a named lock.
    """

    def __init__(self, durable: DurableStore, option_name: str, locks: LockManager):
        self._durable = durable
        self._option_name = option_name
        self._locks = locks

    def records(self) -> dict[str, Record]:
        return dict(self._durable.get_option(self._option_name, {}) or {})

    def get(self, key: str) -> Optional[Record]:
        return self.records().get(key)

    def put(self, key: str, record: Record) -> None:
        with self._locks.get_lock(f"option:{self._option_name}"):
            records = self.records()
            records[key] = record
            self._durable.update_option(self._option_name, records)

    def delete(self, key: str) -> bool:
        with self._locks.get_lock(f"option:{self._option_name}"):
            records = self.records()
            if key not in records:
                return False
            del records[key]
            self._durable.update_option(self._option_name, records)
            return True


class UserFieldTier:
    """One record per user, stored in a named user field."""

    def __init__(self, durable: DurableStore, field_name: str):
        self._durable = durable
        self._field_name = field_name

    def get(self, key: str) -> Optional[Record]:
        return self._durable.get_user_field(key, self._field_name)

    def put(self, key: str, record: Record) -> None:
        self._durable.update_user_field(key, self._field_name, record)

    def delete(self, key: str) -> bool:
        return self._durable.delete_user_field(key, self._field_name)


class TwoTierStore:
    """Cache + durable storage with read-repair.

    Args:
        cache: fast expiring tier
        tier: durable tier
        cache_prefix: prefix for cache keys
        remaining: seconds a record has left to live at a given time
        purge_expired: when True, dead records are deleted and reads return
            None; when False they are returned as-is (the caller decides)
        clock: time source
    """

    def __init__(
        self,
        cache: CacheBackend,
        tier: DurableTier,
        cache_prefix: str,
        remaining: Callable[[Record, float], float],
        clock: Callable[[], float],
        purge_expired: bool = True,
    ):
        self._cache = cache
        self._tier = tier
        self._cache_prefix = cache_prefix
        self._remaining = remaining
        self._clock = clock
        self._purge_expired = purge_expired

    @property
    def tier(self) -> DurableTier:
        return self._tier

    def cache_key(self, key: str) -> str:
        return f"{self._cache_prefix}{key}"

    def _cache_set(self, key: str, record: Record, ttl: float) -> None:
        try:
            self._cache.set(self.cache_key(key), record, max(1, math.ceil(ttl)))
        except StorageUnavailableError:
            logger.warning(f"Cache write skipped for {self.cache_key(key)}; durable copy remains")

    def _cache_delete(self, key: str) -> None:
        try:
            self._cache.delete(self.cache_key(key))
        except StorageUnavailableError:
            logger.warning(f"Cache delete skipped for {self.cache_key(key)}")

    def write(self, key: str, record: Record, ttl: int) -> None:
        """Write both tiers. Durable failures propagate."""
        self._cache_set(key, record, ttl)
        self._tier.put(key, record)

    def read(self, key: str) -> Optional[Record]:
        """Read with cache-first lookup and read-repair.

        Raises:
            StorageUnavailableError: the durable tier could not be read
        """
        now = self._clock()
        try:
            cached = self._cache.get(self.cache_key(key))
        except StorageUnavailableError:
            cached = None

        if cached is not None:
            if self._remaining(cached, now) > 0 or not self._purge_expired:
                return cached
            self._cache_delete(key)

        record = self._tier.get(key)
        if record is None:
            return None

        left = self._remaining(record, now)
        if left > 0:
            self._cache_set(key, record, left)
            return record

        if not self._purge_expired:
            return record

        logger.info(f"Purging expired durable record {key}")
        self._tier.delete(key)
        return None

    def remove(self, key: str) -> None:
        self._cache_delete(key)
        self._tier.delete(key)
