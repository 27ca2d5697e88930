"""Platform session tokens.

Each login gets an opaque random token (bound into the user's JWT as ``sid``).
Tokens are kept per user in the cache under ``session_tokens_{user_id}``,
stored by SHA-256 hash so a cache dump never exposes usable tokens.
"""
import logging
import time
from typing import Any, Callable

from matchguard.core.exceptions import StorageUnavailableError
from matchguard.core.security import generate_session_token, hash_token
from matchguard.storage.backend import CacheBackend, LockManager

logger = logging.getLogger(__name__)


class SessionTokenRegistry:
    """Create, verify and revoke a user's platform session tokens."""

    def __init__(
        self,
        cache: CacheBackend,
        locks: LockManager,
        clock: Callable[[], float] = time.time,
        lifetime: int = 86400,
    ):
        self._cache = cache
        self._locks = locks
        self._clock = clock
        self._lifetime = lifetime

    def _key(self, user_id: str) -> str:
        return f"session_tokens_{user_id}"

    def _live(self, user_id: str) -> dict[str, dict[str, Any]]:
        now = self._clock()
        sessions = self._cache.get(self._key(user_id)) or {}
        return {h: s for h, s in sessions.items() if s.get("expires_at", 0) > now}

    def _save(self, user_id: str, sessions: dict[str, dict[str, Any]]) -> None:
        if sessions:
            self._cache.set(self._key(user_id), sessions, self._lifetime)
        else:
            self._cache.delete(self._key(user_id))

    def create(self, user_id: str, ip_address: str = "", user_agent: str = "") -> str:
        """Issue a new token.

        Raises:
            StorageUnavailableError: the token could not be stored
        """
        token = generate_session_token()
        now = self._clock()
        with self._locks.get_lock(self._key(user_id)):
            sessions = self._live(user_id)
            sessions[hash_token(token)] = {
                "created_at": now,
                "expires_at": now + self._lifetime,
                "ip_address": ip_address,
                "user_agent": user_agent,
            }
            self._save(user_id, sessions)
        return token

    def verify(self, user_id: str, token: str) -> bool:
        try:
            return hash_token(token) in self._live(user_id)
        except StorageUnavailableError:
            logger.warning(f"Session token store unavailable for user {user_id}, accepting token")
            return True

    def count(self, user_id: str) -> int:
        try:
            return len(self._live(user_id))
        except StorageUnavailableError:
            logger.warning(f"Session token store unavailable for user {user_id}")
            return 0

    def destroy(self, user_id: str, token: str) -> None:
        self._update(user_id, lambda sessions: {
            h: s for h, s in sessions.items() if h != hash_token(token)
        })

    def destroy_others(self, user_id: str, keep_token: str) -> None:
        keep = hash_token(keep_token)
        self._update(user_id, lambda sessions: {
            h: s for h, s in sessions.items() if h == keep
        })

    def destroy_all(self, user_id: str) -> None:
        try:
            self._cache.delete(self._key(user_id))
        except StorageUnavailableError:
            logger.error(f"Failed to destroy sessions for user {user_id}")
        logger.info(f"All sessions destroyed for user {user_id}")

    def _update(self, user_id: str, change: Callable[[dict], dict]) -> None:
        try:
            with self._locks.get_lock(self._key(user_id)):
                self._save(user_id, change(self._live(user_id)))
        except (StorageUnavailableError, TimeoutError) as e:
            logger.error(f"Failed to update sessions for user {user_id}: {e}")
