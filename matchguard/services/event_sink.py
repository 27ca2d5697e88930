"""Bounded security logs.

Each stream is a capped list stored in the cache under one key; appends are
locked read-modify-write cycles so concurrent appenders to the same key never
drop each other's entries. The oldest entries are evicted once a stream
reaches its cap.

Streams:
    login_attempts            last 100, kept 1 day
    login_attempts_{user_id}  last 10, kept 1 day
    blocked_attempts          last 50, kept 1 day
    security_events           last 50, kept 1 week
    security_events_{user_id} last 20, kept 1 week

A failure to write a log entry is logged and swallowed.
"""
import logging
import time
from typing import Any, Callable, Optional

from pydantic import BaseModel

from matchguard.core.exceptions import StorageUnavailableError
from matchguard.schemas.security import (
    BlockedAttemptEntry,
    LoginAttemptEntry,
    SecurityEvent,
    Severity,
)
from matchguard.services.notifier import AdminNotifier
from matchguard.storage.backend import CacheBackend, LockManager

logger = logging.getLogger(__name__)

DAY = 86400
WEEK = 7 * DAY

LOGIN_ATTEMPTS_KEY = "login_attempts"
BLOCKED_ATTEMPTS_KEY = "blocked_attempts"
SECURITY_EVENTS_KEY = "security_events"

LOGIN_ATTEMPTS_CAP = 100
USER_LOGIN_ATTEMPTS_CAP = 10
BLOCKED_ATTEMPTS_CAP = 50
SECURITY_EVENTS_CAP = 50
USER_SECURITY_EVENTS_CAP = 20

HIGH_SEVERITY_EVENTS = frozenset({"concurrent_sessions", "user_agent_change"})


class SecurityEventSink:
    """Append-only ring buffers of login attempts, blocks and security events."""

    def __init__(
        self,
        cache: CacheBackend,
        locks: LockManager,
        notifier: Optional[AdminNotifier] = None,
        describe_user: Optional[Callable[[str], Optional[str]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = cache
        self._locks = locks
        self._notifier = notifier
        self._describe_user = describe_user
        self._clock = clock

    def _append(self, key: str, entry: BaseModel, cap: int, ttl: int) -> None:
        try:
            with self._locks.get_lock(f"log:{key}"):
                entries = self._cache.get(key) or []
                entries.append(entry.model_dump(mode="json"))
                self._cache.set(key, entries[-cap:], ttl)
        except (StorageUnavailableError, TimeoutError) as e:
            logger.error(f"Failed to append to security log {key}: {e}")

    def _read(self, key: str) -> list[dict[str, Any]]:
        try:
            return self._cache.get(key) or []
        except StorageUnavailableError:
            logger.warning(f"Security log {key} unavailable")
            return []

    def log_login_attempt(
        self,
        identity: str,
        username: Optional[str],
        success: bool,
        user_agent: str = "",
    ) -> None:
        entry = LoginAttemptEntry(
            timestamp=self._clock(),
            identity=identity,
            username=username,
            success=success,
            user_agent=user_agent,
        )
        self._append(LOGIN_ATTEMPTS_KEY, entry, LOGIN_ATTEMPTS_CAP, DAY)

    def log_user_login(self, user_id: str, identity: str, success: bool, user_agent: str = "") -> None:
        entry = LoginAttemptEntry(
            timestamp=self._clock(),
            identity=identity,
            user_id=user_id,
            success=success,
            user_agent=user_agent,
        )
        self._append(f"{LOGIN_ATTEMPTS_KEY}_{user_id}", entry, USER_LOGIN_ATTEMPTS_CAP, DAY)

    def log_blocked_attempt(self, identity: str, user_agent: str = "", request_path: str = "") -> None:
        entry = BlockedAttemptEntry(
            timestamp=self._clock(),
            identity=identity,
            user_agent=user_agent,
            request_path=request_path,
        )
        self._append(BLOCKED_ATTEMPTS_KEY, entry, BLOCKED_ATTEMPTS_CAP, DAY)

    def log_security_event(
        self,
        identity: str,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        """Identity-scoped event (lockout, ban, manual ban/unban)."""
        event = SecurityEvent(
            timestamp=self._clock(),
            event_type=event_type,
            identity=identity,
            data=data or {},
        )
        self._append(SECURITY_EVENTS_KEY, event, SECURITY_EVENTS_CAP, WEEK)

    def log_user_event(
        self,
        user_id: str,
        event_type: str,
        identity: str,
        user_agent: str = "",
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        """User-scoped session event. High-severity types notify administrators."""
        high = event_type in HIGH_SEVERITY_EVENTS
        event = SecurityEvent(
            timestamp=self._clock(),
            event_type=event_type,
            identity=identity,
            user_id=user_id,
            user_agent=user_agent,
            severity=Severity.HIGH if high else Severity.INFO,
            data=data or {},
        )
        self._append(f"{SECURITY_EVENTS_KEY}_{user_id}", event, USER_SECURITY_EVENTS_CAP, WEEK)

        if high:
            logger.warning(f"High-severity session event {event_type} for user {user_id}")
            self._notify_user_event(event)

    def _notify_user_event(self, event: SecurityEvent) -> None:
        if self._notifier is None:
            return
        label = event.user_id
        if self._describe_user is not None:
            try:
                label = self._describe_user(event.user_id)
            except StorageUnavailableError:
                logger.error(f"Alert for user {event.user_id} dropped: user lookup failed")
                return
            if label is None:
                logger.info(f"Skipping alert for unknown user {event.user_id}")
                return
        self._notifier.notify_security_event(
            label, event.event_type, event.identity, event.timestamp, event.data
        )

    def recent_login_attempts(self, user_id: Optional[str] = None) -> list[dict[str, Any]]:
        key = LOGIN_ATTEMPTS_KEY if user_id is None else f"{LOGIN_ATTEMPTS_KEY}_{user_id}"
        return self._read(key)

    def recent_blocked_attempts(self) -> list[dict[str, Any]]:
        return self._read(BLOCKED_ATTEMPTS_KEY)

    def recent_security_events(self, user_id: Optional[str] = None) -> list[dict[str, Any]]:
        key = SECURITY_EVENTS_KEY if user_id is None else f"{SECURITY_EVENTS_KEY}_{user_id}"
        return self._read(key)
