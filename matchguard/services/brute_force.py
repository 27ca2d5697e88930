"""Brute-force login protection.

Per client identity the guard moves through three states:

    NORMAL     --(max_attempts failures in attempt_window)--> LOCKED_OUT
    LOCKED_OUT --(lockout_duration elapses)-------------------> NORMAL
    LOCKED_OUT --(max_lockouts lockouts within 24h)-----------> BANNED
    BANNED     --(ban_duration elapses or manual unban)-------> NORMAL
    any        --(manual ban)---------------------------------> BANNED

Cache keys:
    failed_attempts_{ip}   list of recent failed attempts (pruned on write)
    lockout_{ip}           active lockout, TTL = lockout duration
    lockout_count_{ip}     lockouts in the last 24h, TTL reset per lockout
    active_lockouts        index of ip -> lockout expiry, for statistics

Starting a lockout clears failed_attempts_{ip}. Once the lockout expires
the address needs a fresh max_attempts failures to be locked again. With
lockout_duration shorter than attempt_window, failures recorded before the
lockout would otherwise still sit inside the window and re-lock the
address on its first new failure.

Escalation runs under a per-identity lock, so concurrent failures from one
address cannot double-count a lockout or ban the address twice.
"""
import logging
import time
from math import ceil
from typing import Callable, Optional, TypeVar, Union

from pydantic import ValidationError

from matchguard.core.client_ip import (
    ClientIdentityResolver,
    RequestContext,
    mask_ip_for_logging,
    normalize_ip,
)
from matchguard.core.exceptions import (
    AppException,
    InvalidBanDurationError,
    InvalidIdentityError,
    PermanentBlockError,
    StorageUnavailableError,
    TemporaryBlockError,
)
from matchguard.schemas.security import (
    AttemptRecord,
    BanRecord,
    GuardState,
    GuardStatus,
    LockoutState,
    SecurityStats,
)
from matchguard.services.ban_registry import BanRegistry
from matchguard.services.event_sink import DAY, SecurityEventSink
from matchguard.services.notifier import AdminNotifier
from matchguard.storage.backend import CacheBackend, LockManager

logger = logging.getLogger(__name__)

AUTO_BAN_REASON = "Multiple lockouts due to failed login attempts"
MANUAL_BAN_REASON = "Manual ban"
LOCKOUT_INDEX_KEY = "active_lockouts"

T = TypeVar("T")


class BruteForceGuard:
    """Lockout and ban escalation for failed logins."""

    def __init__(
        self,
        cache: CacheBackend,
        bans: BanRegistry,
        events: SecurityEventSink,
        locks: LockManager,
        resolver: ClientIdentityResolver,
        notifier: Optional[AdminNotifier] = None,
        clock: Callable[[], float] = time.time,
        max_attempts: int = 5,
        attempt_window: int = 900,
        attempt_retention: int = 3600,
        lockout_duration: int = 1800,
        max_lockouts: int = 3,
        lockout_count_window: int = DAY,
        ban_duration: int = DAY,
    ):
        self._cache = cache
        self._bans = bans
        self._events = events
        self._locks = locks
        self._resolver = resolver
        self._notifier = notifier
        self._clock = clock
        self.max_attempts = max_attempts
        self.attempt_window = attempt_window
        self.attempt_retention = attempt_retention
        self.lockout_duration = lockout_duration
        self.max_lockouts = max_lockouts
        self.lockout_count_window = lockout_count_window
        self.ban_duration = ban_duration

    # --- Login flow hooks ---

    def on_login_failed(self, username: str, ctx: RequestContext) -> None:
        """Record a failed login and escalate to lockout or ban when due.

        The login-attempt log entry is written regardless of the outcome.
        """
        identity = self._resolver.resolve(ctx)
        now = self._clock()
        try:
            with self._locks.get_lock(f"bruteforce:{identity}"):
                recent = self._record_failed_attempt(identity, username, ctx.user_agent, now)
                logger.info(
                    f"Failed login for {mask_ip_for_logging(identity)}: "
                    f"{recent}/{self.max_attempts}"
                )
                if recent >= self.max_attempts and self._active_lockout(identity, now) is None:
                    lockout_count = self._lockout(identity, now)
                    if lockout_count >= self.max_lockouts and not self._bans.is_banned(identity, ctx):
                        self._ban(identity, now, ctx)
        except (StorageUnavailableError, TimeoutError) as e:
            logger.error(f"Could not record failed login for {mask_ip_for_logging(identity)}: {e}")

        self._events.log_login_attempt(identity, username, False, ctx.user_agent)

    def on_login_success(self, username: str, ctx: RequestContext) -> None:
        """Clear failed attempts. Lockout history and bans are left in place."""
        identity = self._resolver.resolve(ctx)
        try:
            self._cache.delete(f"failed_attempts_{identity}")
        except StorageUnavailableError:
            logger.warning(f"Could not clear failed attempts for {mask_ip_for_logging(identity)}")
        self._events.log_login_attempt(identity, username, True, ctx.user_agent)

    def check_login_attempt(
        self,
        candidate: Union[T, AppException],
        username: Optional[str],
        password: Optional[str],
        ctx: RequestContext,
    ) -> Union[T, AppException]:
        """Pre-authentication gate.

        Returns the candidate unchanged when credentials are empty, the
        candidate is already an error, or the identity is not blocked.
        Otherwise returns a PermanentBlockError (banned) or a
        TemporaryBlockError carrying the remaining lockout time.
        """
        if isinstance(candidate, AppException) or not username or not password:
            return candidate

        identity = self._resolver.resolve(ctx)
        if self._bans.is_banned(identity, ctx):
            logger.warning(f"Login refused for banned {mask_ip_for_logging(identity)}")
            return PermanentBlockError(identity)

        lockout = self._active_lockout(identity, self._clock())
        if lockout is not None:
            remaining = ceil(lockout.remaining(self._clock()))
            logger.warning(
                f"Login refused for locked out {mask_ip_for_logging(identity)}: {remaining}s left"
            )
            return TemporaryBlockError.locked_out(remaining)

        return candidate

    def check_ip_ban(self, ctx: RequestContext) -> Optional[PermanentBlockError]:
        """Request-time gate. Logs a blocked attempt when the caller is banned."""
        identity = self._resolver.resolve(ctx)
        banned, ban = self._bans.check(identity, ctx)
        if not banned:
            return None

        self._events.log_blocked_attempt(identity, ctx.user_agent, ctx.path)
        logger.warning(f"Blocked request from banned {mask_ip_for_logging(identity)} to {ctx.path}")
        error = PermanentBlockError(
            identity,
            message="Access Denied: Your IP address has been banned due to suspicious activity.",
        )
        if ban is not None:
            error.retry_after = max(1, ceil(ban.remaining(self._clock())))
        return error

    # --- Administration ---

    def manual_ban_ip(
        self,
        identity: str,
        reason: str = MANUAL_BAN_REASON,
        duration: Optional[int] = None,
    ) -> BanRecord:
        """Ban an address without consulting its lockout history.

        Raises:
            InvalidIdentityError: identity is not a syntactically valid IP
            InvalidBanDurationError: duration is zero or negative
            StorageUnavailableError: the durable ban could not be written
        """
        canonical = normalize_ip(identity)
        if canonical is None:
            raise InvalidIdentityError((identity or "").strip())
        if duration is not None and duration <= 0:
            raise InvalidBanDurationError(duration)
        identity = canonical

        ban = BanRecord(
            identity=identity,
            started_at=self._clock(),
            duration=self.ban_duration if duration is None else duration,
            reason=reason or MANUAL_BAN_REASON,
            manual=True,
        )
        self._bans.ban(ban)
        self._events.log_security_event(identity, "manual_ban", ban.model_dump())
        logger.warning(f"Manual ban of {identity} for {ban.duration}s: {ban.reason}")
        return ban

    def manual_unban_ip(self, identity: str) -> bool:
        """Lift a ban.

        Raises:
            InvalidIdentityError: identity is not a syntactically valid IP
        """
        canonical = normalize_ip(identity)
        if canonical is None:
            raise InvalidIdentityError((identity or "").strip())
        identity = canonical

        self._bans.remove(identity)
        self._events.log_security_event(identity, "manual_unban")
        logger.info(f"Manual unban of {identity}")
        return True

    def get_state(self, identity: str, ctx: Optional[RequestContext] = None) -> GuardStatus:
        now = self._clock()
        lockout_count = self._lockout_count(identity)

        banned, ban = self._bans.check(identity, ctx)
        if banned:
            retry_after = ceil(ban.remaining(now)) if ban is not None else None
            return GuardStatus(
                identity=identity,
                state=GuardState.BANNED,
                retry_after=retry_after,
                lockout_count=lockout_count,
            )

        lockout = self._active_lockout(identity, now)
        if lockout is not None:
            return GuardStatus(
                identity=identity,
                state=GuardState.LOCKED_OUT,
                retry_after=ceil(lockout.remaining(now)),
                lockout_count=lockout_count,
            )

        return GuardStatus(identity=identity, state=GuardState.NORMAL, lockout_count=lockout_count)

    def list_bans(self) -> list[BanRecord]:
        return self._bans.active_bans()

    def get_security_stats(self) -> SecurityStats:
        now = self._clock()
        cutoff = now - DAY
        attempts = self._events.recent_login_attempts()
        failed_24h = sum(
            1 for entry in attempts
            if not entry.get("success") and entry.get("timestamp", 0) > cutoff
        )
        return SecurityStats(
            total_login_attempts=len(attempts),
            failed_attempts_24h=failed_24h,
            blocked_attempts=len(self._events.recent_blocked_attempts()),
            security_events=len(self._events.recent_security_events()),
            banned_ips=len(self._bans.active_bans()),
            active_lockouts=self._count_active_lockouts(now),
        )

    # --- Internals ---

    def _record_failed_attempt(self, identity: str, username: str, user_agent: str, now: float) -> int:
        """Append an attempt and return how many fall inside the counting window."""
        key = f"failed_attempts_{identity}"
        attempts = self._cache.get(key) or []
        attempts.append(
            AttemptRecord(
                identity=identity, username=username or "", timestamp=now, user_agent=user_agent
            ).model_dump()
        )
        retention_cutoff = now - self.attempt_retention
        attempts = [a for a in attempts if a.get("timestamp", 0) > retention_cutoff]
        self._cache.set(key, attempts, self.attempt_retention)

        window_cutoff = now - self.attempt_window
        return sum(1 for a in attempts if a["timestamp"] > window_cutoff)

    def _active_lockout(self, identity: str, now: float) -> Optional[LockoutState]:
        try:
            data = self._cache.get(f"lockout_{identity}")
        except StorageUnavailableError:
            logger.warning(f"Lockout state unavailable for {mask_ip_for_logging(identity)}")
            return None
        if not data:
            return None
        try:
            lockout = LockoutState.model_validate(data)
        except ValidationError:
            return None
        return lockout if lockout.remaining(now) > 0 else None

    def _lockout_count(self, identity: str) -> int:
        try:
            value = self._cache.get(f"lockout_count_{identity}")
        except StorageUnavailableError:
            return 0
        return int(value) if value is not None else 0

    def _lockout(self, identity: str, now: float) -> int:
        """Start a lockout and return the updated 24h lockout count."""
        lockout = LockoutState(identity=identity, started_at=now, duration=self.lockout_duration)
        self._cache.set(f"lockout_{identity}", lockout.model_dump(), self.lockout_duration)
        self._cache.delete(f"failed_attempts_{identity}")
        count = self._cache.incr(f"lockout_count_{identity}", self.lockout_count_window)
        self._index_lockout(identity, lockout.expires_at, now)

        self._events.log_security_event(
            identity, "lockout", {**lockout.model_dump(), "lockout_count": count}
        )
        logger.warning(
            f"Locked out {mask_ip_for_logging(identity)} for {self.lockout_duration}s "
            f"(lockout #{count})"
        )
        return count

    def _ban(self, identity: str, now: float, ctx: RequestContext) -> None:
        ban = BanRecord(
            identity=identity,
            started_at=now,
            duration=self.ban_duration,
            reason=AUTO_BAN_REASON,
        )
        self._bans.ban(ban)
        ctx.confirmed_bans.add(identity)
        self._events.log_security_event(identity, "ban", ban.model_dump())
        logger.warning(f"Banned {mask_ip_for_logging(identity)} for {self.ban_duration}s")
        if self._notifier is not None:
            self._notifier.notify_ban(ban, ctx.user_agent)

    def _index_lockout(self, identity: str, expires_at: float, now: float) -> None:
        try:
            with self._locks.get_lock(LOCKOUT_INDEX_KEY):
                index = self._cache.get(LOCKOUT_INDEX_KEY) or {}
                index = {ip: exp for ip, exp in index.items() if exp > now}
                index[identity] = expires_at
                self._cache.set(LOCKOUT_INDEX_KEY, index, self.lockout_duration)
        except (StorageUnavailableError, TimeoutError) as e:
            logger.warning(f"Lockout index not updated: {e}")

    def _count_active_lockouts(self, now: float) -> int:
        try:
            index = self._cache.get(LOCKOUT_INDEX_KEY) or {}
        except StorageUnavailableError:
            return 0
        return sum(1 for exp in index.values() if exp > now)
