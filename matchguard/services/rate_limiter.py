"""Per-action request rate limiting.

Counters live in the shared expiring cache, keyed by action, optional user
and client identity:

    rate_limit_{action}[_user_{user_id}]_{identifier or client ip}

Each recorded attempt increments the counter and restarts its TTL at the
rule's window, so the window is fixed-and-reset-on-write rather than a true
sliding log: a caller that keeps hitting the action keeps the window open.
Actions without a rule are never throttled.
"""
import logging
import threading
import time
from math import ceil
from typing import Callable, Mapping, Optional

from matchguard.core.client_ip import ClientIdentityResolver, RequestContext
from matchguard.core.exceptions import InvalidRuleError, StorageUnavailableError
from matchguard.schemas.security import RateLimitInfo, RateLimitResult, RateLimitRule
from matchguard.storage.backend import CacheBackend

logger = logging.getLogger(__name__)

# action -> (limit, window_seconds)
DEFAULT_RULES: dict[str, tuple[int, int]] = {
    "message_send": (10, 300),
    "profile_view": (100, 3600),
    "search_request": (50, 3600),
    "like_action": (50, 3600),
    "profile_update": (5, 300),
    "photo_upload": (10, 3600),
    "registration": (3, 3600),  # IP-scoped
    "login_attempt": (5, 900),
}


class RuleTable:
    """Process-wide table of rate-limit rules.

    Readers see an immutable snapshot; writers replace the whole mapping
    under a lock, so concurrent reads never block.
    """

    def __init__(
        self,
        rules: Optional[Mapping[str, tuple[int, int]]] = None,
        overrides: Optional[Mapping[str, tuple[int, int]]] = None,
    ):
        merged = dict(DEFAULT_RULES if rules is None else rules)
        merged.update(overrides or {})
        self._rules: dict[str, RateLimitRule] = {}
        for action, (limit, window) in merged.items():
            if limit <= 0 or window <= 0:
                logger.warning(f"Skipping invalid rate limit rule {action}: {limit}/{window}s")
                continue
            self._rules[action] = RateLimitRule(limit=limit, window=window)
        self._write_lock = threading.Lock()

    def get(self, action: str) -> Optional[RateLimitRule]:
        return self._rules.get(action)

    def snapshot(self) -> dict[str, RateLimitRule]:
        return dict(self._rules)

    def update(self, action: str, limit: int, window: int) -> RateLimitRule:
        """Set the rule for an action, adding it if it does not exist.

        Raises:
            InvalidRuleError: limit or window is not positive
        """
        if limit <= 0 or window <= 0:
            raise InvalidRuleError(action, "Rate limit and window must be positive integers")
        rule = RateLimitRule(limit=limit, window=window)
        with self._write_lock:
            rules = dict(self._rules)
            rules[action] = rule
            self._rules = rules
        logger.info(f"Rate limit rule updated: {action} = {limit}/{window}s")
        return rule


class SlidingWindowRateLimiter:
    """Per-action counters over the expiring cache.

    Storage failures fail open: a counter that cannot be read is treated as
    zero and a write that cannot be made is logged and skipped.
    """

    def __init__(
        self,
        cache: CacheBackend,
        rules: RuleTable,
        resolver: ClientIdentityResolver,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = cache
        self._rules = rules
        self._resolver = resolver
        self._clock = clock

    @property
    def rules(self) -> RuleTable:
        return self._rules

    def _key(
        self,
        action: str,
        user_id: Optional[str],
        identifier: Optional[str],
        ctx: Optional[RequestContext],
    ) -> str:
        parts = ["rate_limit", action]
        if user_id:
            parts.append(f"user_{user_id}")
        parts.append(identifier or self._resolver.resolve(ctx))
        return "_".join(parts)

    def _count(self, key: str) -> int:
        try:
            value = self._cache.get(key)
        except StorageUnavailableError:
            logger.warning(f"Rate limit counter {key} unavailable, treating as empty")
            return 0
        return int(value) if value is not None else 0

    def is_rate_limited(
        self,
        action: str,
        user_id: Optional[str] = None,
        identifier: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> bool:
        rule = self._rules.get(action)
        if rule is None:
            return False
        return self._count(self._key(action, user_id, identifier, ctx)) >= rule.limit

    def record_attempt(
        self,
        action: str,
        user_id: Optional[str] = None,
        identifier: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> bool:
        """Count one attempt. Returns False for unknown actions or storage failure."""
        rule = self._rules.get(action)
        if rule is None:
            return False
        key = self._key(action, user_id, identifier, ctx)
        try:
            self._cache.incr(key, rule.window)
        except StorageUnavailableError:
            logger.warning(f"Failed to record rate limit attempt for {key}")
            return False
        return True

    def hit(
        self,
        action: str,
        user_id: Optional[str] = None,
        identifier: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> tuple[bool, int]:
        """Check and count in one atomic step.

        Returns (allowed, count). A rejected call leaves the counter and its
        TTL untouched.
        """
        rule = self._rules.get(action)
        if rule is None:
            return True, 0
        key = self._key(action, user_id, identifier, ctx)
        try:
            count, accepted = self._cache.increment_below(key, rule.limit, rule.window)
        except StorageUnavailableError:
            logger.warning(f"Rate limit check unavailable for {key}, allowing request")
            return True, 0
        return accepted, count

    def get_remaining_attempts(
        self,
        action: str,
        user_id: Optional[str] = None,
        identifier: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> int:
        rule = self._rules.get(action)
        if rule is None:
            return 0
        return max(0, rule.limit - self._count(self._key(action, user_id, identifier, ctx)))

    def get_time_until_reset(
        self,
        action: str,
        user_id: Optional[str] = None,
        identifier: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> int:
        """Seconds until the caller's counter expires.

        Uses the counter's TTL when it exists; otherwise the configured window.
        """
        rule = self._rules.get(action)
        if rule is None:
            return 0
        key = self._key(action, user_id, identifier, ctx)
        try:
            remaining = self._cache.ttl(key)
        except StorageUnavailableError:
            remaining = None
        if remaining is None or remaining <= 0:
            return rule.window
        return remaining

    def clear_rate_limit(
        self,
        action: str,
        user_id: Optional[str] = None,
        identifier: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> bool:
        key = self._key(action, user_id, identifier, ctx)
        try:
            cleared = self._cache.delete(key)
        except StorageUnavailableError:
            logger.warning(f"Failed to clear rate limit counter {key}")
            return False
        logger.info(f"Rate limit cleared for {key}")
        return cleared

    def get_rate_limit_info(
        self,
        action: str,
        user_id: Optional[str] = None,
        identifier: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[RateLimitInfo]:
        rule = self._rules.get(action)
        if rule is None:
            return None
        key = self._key(action, user_id, identifier, ctx)
        count = self._count(key)
        return RateLimitInfo(
            action=action,
            limit=rule.limit,
            window=rule.window,
            remaining_attempts=max(0, rule.limit - count),
            is_rate_limited=count >= rule.limit,
            time_until_reset=self.get_time_until_reset(action, user_id, identifier, ctx),
        )

    def update_rule(self, action: str, limit: int, window: int) -> RateLimitRule:
        return self._rules.update(action, limit, window)

    def get_rules(self) -> dict[str, RateLimitRule]:
        return self._rules.snapshot()

    def apply_rate_limit(
        self,
        action: str,
        user_id: Optional[str] = None,
        identifier: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> RateLimitResult:
        """Check and record an action, returning a structured result."""
        rule = self._rules.get(action)
        if rule is None:
            return RateLimitResult(success=True)

        allowed, count = self.hit(action, user_id, identifier, ctx)
        if not allowed:
            retry_after = self.get_time_until_reset(action, user_id, identifier, ctx)
            logger.info(f"Rate limit exceeded for {action} ({count}/{rule.limit})")
            return RateLimitResult(
                success=False,
                message=f"Rate limit exceeded. Please try again in {ceil(retry_after / 60)} minutes.",
                retry_after=retry_after,
            )

        return RateLimitResult(success=True, remaining_attempts=max(0, rule.limit - count))
