"""Service wiring.

Builds the login defense components once per process and hands them to the
API layer through ``app.state.services``. Every component shares the same
identity resolver, cache, durable store and lock manager.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from matchguard.core.client_ip import ClientIdentityResolver
from matchguard.core.config import Settings
from matchguard.services.ban_registry import BanRegistry
from matchguard.services.brute_force import BruteForceGuard
from matchguard.services.event_sink import SecurityEventSink
from matchguard.services.notifier import (
    AdminNotifier,
    LoggingNotificationSender,
    NotificationSender,
    SmtpNotificationSender,
)
from matchguard.services.rate_limiter import RuleTable, SlidingWindowRateLimiter
from matchguard.services.session_monitor import SessionIntegrityMonitor
from matchguard.services.session_tokens import SessionTokenRegistry
from matchguard.services.user_directory import UserDirectory
from matchguard.storage import create_backends
from matchguard.storage.backend import CacheBackend, DurableStore, LockManager

logger = logging.getLogger(__name__)


@dataclass
class SecurityServices:
    settings: Settings
    cache: CacheBackend
    durable: DurableStore
    locks: LockManager
    resolver: ClientIdentityResolver
    events: SecurityEventSink
    rate_limiter: SlidingWindowRateLimiter
    guard: BruteForceGuard
    tokens: SessionTokenRegistry
    monitor: SessionIntegrityMonitor
    users: UserDirectory
    executor: Optional[ThreadPoolExecutor] = None

    def shutdown(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=True)
            self.executor = None


def build_services(
    settings: Settings,
    clock: Callable[[], float] = time.time,
    cache: Optional[CacheBackend] = None,
    durable: Optional[DurableStore] = None,
    locks: Optional[LockManager] = None,
    sender: Optional[NotificationSender] = None,
    background_notifications: bool = True,
) -> SecurityServices:
    """Construct every component from settings.

    Storage and the notification sender can be passed in (tests); otherwise
    they are chosen from configuration.
    """
    if cache is None or durable is None or locks is None:
        default_cache, default_durable, default_locks = create_backends(settings, clock=clock)
        cache = cache or default_cache
        durable = durable or default_durable
        locks = locks or default_locks

    if sender is None:
        if settings.smtp_configured:
            sender = SmtpNotificationSender.from_settings(settings)
        else:
            sender = LoggingNotificationSender()

    executor = None
    if background_notifications:
        executor = ThreadPoolExecutor(
            max_workers=max(1, settings.NOTIFICATION_WORKERS),
            thread_name_prefix="admin-notify",
        )
    notifier = AdminNotifier(sender, settings.ADMIN_EMAIL, settings.SITE_NAME, executor=executor)

    resolver = ClientIdentityResolver(settings.CLIENT_IP_HEADERS)
    users = UserDirectory(durable, locks, clock=clock)
    events = SecurityEventSink(
        cache, locks, notifier=notifier, describe_user=users.describe, clock=clock
    )
    rate_limiter = SlidingWindowRateLimiter(
        cache,
        RuleTable(overrides=settings.rate_limit_overrides),
        resolver,
        clock=clock,
    )
    guard = BruteForceGuard(
        cache,
        BanRegistry(cache, durable, locks, clock),
        events,
        locks,
        resolver,
        notifier=notifier,
        clock=clock,
        max_attempts=settings.BRUTE_FORCE_MAX_ATTEMPTS,
        attempt_window=settings.BRUTE_FORCE_ATTEMPT_WINDOW,
        attempt_retention=settings.BRUTE_FORCE_ATTEMPT_RETENTION,
        lockout_duration=settings.LOCKOUT_DURATION,
        max_lockouts=settings.MAX_LOCKOUTS,
        lockout_count_window=settings.LOCKOUT_COUNT_WINDOW,
        ban_duration=settings.BAN_DURATION,
    )
    tokens = SessionTokenRegistry(cache, locks, clock=clock, lifetime=settings.MAX_SESSION_AGE)
    monitor = SessionIntegrityMonitor(
        cache,
        durable,
        tokens,
        events,
        resolver,
        clock=clock,
        session_timeout=settings.SESSION_TIMEOUT,
        max_session_age=settings.MAX_SESSION_AGE,
    )

    logger.info(
        f"Security services ready (cache={type(cache).__name__}, "
        f"durable={type(durable).__name__}, rules={len(rate_limiter.get_rules())})"
    )
    return SecurityServices(
        settings=settings,
        cache=cache,
        durable=durable,
        locks=locks,
        resolver=resolver,
        events=events,
        rate_limiter=rate_limiter,
        guard=guard,
        tokens=tokens,
        monitor=monitor,
        users=users,
        executor=executor,
    )
