"""Session integrity checks for authenticated requests.

One SessionState per user (last login wins), stored in the cache under
``session_data_{user_id}`` and backed up in the ``_session_data`` user field.
Every authenticated request is validated against it:

- idle longer than session_timeout, or older than max_session_age: expired
- IP address changed: logged only, mobile clients roam
- user agent changed: invalid, high severity
- more than one live platform session for the user: invalid, high severity

An invalid session is deleted from both tiers and all of the user's platform
tokens are revoked, which forces a new login.
"""
import logging
import time
from math import ceil
from typing import Callable, Optional

from pydantic import ValidationError

from matchguard.core.client_ip import ClientIdentityResolver, RequestContext
from matchguard.core.exceptions import StorageUnavailableError
from matchguard.core.security import generate_session_token
from matchguard.schemas.security import SessionInfo, SessionState, SessionValidation
from matchguard.services.event_sink import SecurityEventSink
from matchguard.services.session_tokens import SessionTokenRegistry
from matchguard.storage.backend import CacheBackend, DurableStore
from matchguard.storage.two_tier import Record, TwoTierStore, UserFieldTier

logger = logging.getLogger(__name__)

SESSION_CACHE_PREFIX = "session_data_"
SESSION_FIELD = "_session_data"
LOGIN_COUNT_FIELD = "_login_count"
LAST_ACTIVITY_FIELD = "last_activity"


class SessionIntegrityMonitor:
    def __init__(
        self,
        cache: CacheBackend,
        durable: DurableStore,
        tokens: SessionTokenRegistry,
        events: SecurityEventSink,
        resolver: ClientIdentityResolver,
        clock: Callable[[], float] = time.time,
        session_timeout: int = 1800,
        max_session_age: int = 86400,
    ):
        self._durable = durable
        self._tokens = tokens
        self._events = events
        self._resolver = resolver
        self._clock = clock
        self.session_timeout = session_timeout
        self.max_session_age = max_session_age
        # Expired states are kept on read so validation can see and reject them
        self._store = TwoTierStore(
            cache,
            UserFieldTier(durable, SESSION_FIELD),
            cache_prefix=SESSION_CACHE_PREFIX,
            remaining=self._remaining,
            clock=clock,
            purge_expired=False,
        )

    def _remaining(self, record: Record, now: float) -> float:
        try:
            return record["login_time"] + self.max_session_age - now
        except (KeyError, TypeError):
            return 0

    def is_expired(self, state: SessionState, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        if now - state.last_activity > self.session_timeout:
            return True
        return now - state.login_time > self.max_session_age

    # --- Login / logout ---

    def on_login(self, user_id: str, ctx: RequestContext) -> SessionState:
        """Create the session state for a fresh login.

        Other platform sessions of the user are revoked; ``ctx.session_token``
        must hold the token issued for this login.
        """
        now = self._clock()
        identity = self._resolver.resolve(ctx)
        state = SessionState(
            user_id=user_id,
            login_time=now,
            last_activity=now,
            ip_address=identity,
            user_agent=ctx.user_agent,
            session_token=generate_session_token(),
            login_count=self._bump_login_count(user_id),
        )
        try:
            self._store.write(user_id, state.model_dump(), self.max_session_age)
        except StorageUnavailableError:
            logger.error(f"Session backup not written for user {user_id}")

        if ctx.session_token:
            self._tokens.destroy_others(user_id, ctx.session_token)

        self._events.log_user_login(user_id, identity, True, ctx.user_agent)
        logger.info(f"Session started for user {user_id} (login #{state.login_count})")
        return state

    def on_logout(self, user_id: str) -> None:
        """Delete the session state. Platform tokens are revoked by the caller."""
        try:
            self._store.remove(user_id)
        except StorageUnavailableError:
            logger.error(f"Failed to delete session state for user {user_id}")

    def _bump_login_count(self, user_id: str) -> int:
        try:
            count = int(self._durable.get_user_field(user_id, LOGIN_COUNT_FIELD, 0) or 0) + 1
            self._durable.update_user_field(user_id, LOGIN_COUNT_FIELD, count)
        except StorageUnavailableError:
            logger.warning(f"Login count unavailable for user {user_id}")
            return 1
        return count

    # --- Request validation ---

    def _load(self, user_id: str) -> Optional[SessionState]:
        try:
            record = self._store.read(user_id)
        except StorageUnavailableError:
            logger.warning(f"Session state unavailable for user {user_id}, deferring to token check")
            return None
        if record is None:
            return None
        try:
            return SessionState.model_validate(record)
        except ValidationError:
            logger.warning(f"Discarding malformed session state for user {user_id}")
            return None

    def validate_session(self, ctx: RequestContext) -> SessionValidation:
        if not ctx.user_id:
            return SessionValidation(valid=True)

        user_id = ctx.user_id
        state = self._load(user_id)
        if state is None:
            return SessionValidation(valid=True)

        now = self._clock()
        if self.is_expired(state, now):
            logger.info(f"Session expired for user {user_id}")
            self.invalidate_session(user_id)
            return SessionValidation(valid=False, reason="expired")

        identity = self._resolver.resolve(ctx)
        if state.ip_address != identity:
            self._events.log_user_event(
                user_id, "ip_change", identity, ctx.user_agent,
                {"old_ip": state.ip_address, "new_ip": identity},
            )

        if state.user_agent != ctx.user_agent:
            self._events.log_user_event(
                user_id, "user_agent_change", identity, ctx.user_agent,
                {"old_ua": state.user_agent, "new_ua": ctx.user_agent},
            )
            self.invalidate_session(user_id)
            return SessionValidation(valid=False, reason="user_agent_change")

        if self._tokens.count(user_id) > 1:
            self._events.log_user_event(
                user_id, "concurrent_sessions", identity, ctx.user_agent, {"ip": identity}
            )
            self.invalidate_session(user_id)
            return SessionValidation(valid=False, reason="concurrent_sessions")

        self._touch(state, now)
        return SessionValidation(valid=True)

    def _touch(self, state: SessionState, now: float) -> None:
        state.last_activity = max(state.last_activity, now)
        ttl = max(1, ceil(state.login_time + self.max_session_age - now))
        try:
            self._store.write(state.user_id, state.model_dump(), ttl)
            self._durable.update_user_field(state.user_id, LAST_ACTIVITY_FIELD, now)
        except StorageUnavailableError:
            logger.warning(f"Session activity not persisted for user {state.user_id}")

    def invalidate_session(self, user_id: str) -> None:
        """Delete the session state and revoke every platform token of the user."""
        try:
            self._store.remove(user_id)
        except StorageUnavailableError:
            logger.error(f"Failed to delete session state for user {user_id}")
        self._tokens.destroy_all(user_id)
        logger.warning(f"Session invalidated for user {user_id}")

    def get_session_info(self, user_id: str) -> Optional[SessionInfo]:
        state = self._load(user_id)
        if state is None:
            return None
        now = self._clock()
        return SessionInfo(
            user_id=state.user_id,
            login_time=state.login_time,
            last_activity=state.last_activity,
            ip_address=state.ip_address,
            login_count=state.login_count,
            session_age=int(now - state.login_time),
            time_since_activity=int(now - state.last_activity),
            is_expired=self.is_expired(state, now),
        )
