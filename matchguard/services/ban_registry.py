"""Ban registry over the two-tier store.

Cache entries live under ``banned_ip_{ip}`` with the ban's remaining lifetime;
the durable copy is the ``banned_ips`` option, a map of ip -> ban record. The
durable copy is authoritative: a cache miss falls back to it and repairs the
cache with the remaining time, and a durable record found expired is deleted.
"""
import logging
from typing import Callable, Optional

from pydantic import ValidationError

from matchguard.core.client_ip import RequestContext
from matchguard.core.exceptions import StorageUnavailableError
from matchguard.schemas.security import BanRecord
from matchguard.storage.backend import CacheBackend, DurableStore, LockManager
from matchguard.storage.two_tier import OptionMapTier, Record, TwoTierStore

logger = logging.getLogger(__name__)

BAN_CACHE_PREFIX = "banned_ip_"
BAN_OPTION_NAME = "banned_ips"


def _ban_remaining(record: Record, now: float) -> float:
    try:
        return BanRecord.model_validate(record).remaining(now)
    except ValidationError:
        # Unreadable records count as expired and get purged
        return 0


class BanRegistry:
    def __init__(
        self,
        cache: CacheBackend,
        durable: DurableStore,
        locks: LockManager,
        clock: Callable[[], float],
    ):
        self._clock = clock
        self._tier = OptionMapTier(durable, BAN_OPTION_NAME, locks)
        self._store = TwoTierStore(
            cache,
            self._tier,
            cache_prefix=BAN_CACHE_PREFIX,
            remaining=_ban_remaining,
            clock=clock,
        )

    def ban(self, record: BanRecord) -> None:
        """Write a ban to both tiers.

        Raises:
            StorageUnavailableError: the durable copy could not be written
        """
        self._store.write(record.identity, record.model_dump(), record.duration)

    def remove(self, identity: str) -> None:
        self._store.remove(identity)

    def check(self, identity: str, ctx: Optional[RequestContext] = None) -> tuple[bool, Optional[BanRecord]]:
        """Return (banned, record).

        When the durable tier cannot be read the identity is reported banned
        only if it was already found banned earlier in the same request;
        otherwise the check fails open. The record is None in that case.
        """
        try:
            record = self._store.read(identity)
        except StorageUnavailableError:
            if ctx is not None and identity in ctx.confirmed_bans:
                logger.warning(f"Ban store unavailable; keeping confirmed ban for {identity}")
                return True, None
            logger.warning(f"Ban store unavailable; allowing {identity}")
            return False, None

        if record is None:
            return False, None

        ban = BanRecord.model_validate(record)
        if ctx is not None:
            ctx.confirmed_bans.add(identity)
        return True, ban

    def is_banned(self, identity: str, ctx: Optional[RequestContext] = None) -> bool:
        return self.check(identity, ctx)[0]

    def active_bans(self) -> list[BanRecord]:
        """Durable ban records that have not yet expired."""
        now = self._clock()
        bans = []
        for record in self._tier.records().values():
            try:
                ban = BanRecord.model_validate(record)
            except ValidationError:
                continue
            if ban.remaining(now) > 0:
                bans.append(ban)
        return sorted(bans, key=lambda b: b.started_at)
