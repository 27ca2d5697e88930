"""Minimal account directory backing the login endpoints.

Accounts are stored in the durable store as the ``users`` option, a map of
lowercased username -> account record with a bcrypt password hash.
"""
import logging
import time
import uuid
from typing import Any, Callable, Optional

from matchguard.core.exceptions import ConflictError
from matchguard.core.security import hash_password, verify_password
from matchguard.storage.backend import DurableStore, LockManager

logger = logging.getLogger(__name__)

USERS_OPTION = "users"


class UserDirectory:
    def __init__(
        self,
        durable: DurableStore,
        locks: LockManager,
        clock: Callable[[], float] = time.time,
    ):
        self._durable = durable
        self._locks = locks
        self._clock = clock

    def _users(self) -> dict[str, dict[str, Any]]:
        return dict(self._durable.get_option(USERS_OPTION, {}) or {})

    def register(self, username: str, email: str, password: str) -> dict[str, Any]:
        """Create an account.

        Raises:
            ConflictError: username or email already registered
        """
        key = username.strip().lower()
        with self._locks.get_lock(f"option:{USERS_OPTION}"):
            users = self._users()
            if key in users:
                raise ConflictError("Username already registered")
            if any(u["email"] == email.lower() for u in users.values()):
                raise ConflictError("Email already registered")

            user = {
                "id": str(uuid.uuid4()),
                "username": username.strip(),
                "email": email.lower(),
                "password_hash": hash_password(password),
                "created_at": self._clock(),
            }
            users[key] = user
            self._durable.update_option(USERS_OPTION, users)

        logger.info(f"Registered user {user['id']}")
        return user

    def authenticate(self, username: str, password: str) -> Optional[dict[str, Any]]:
        """Return the account when the password matches, else None."""
        user = self._users().get(username.strip().lower())
        if user is None or not verify_password(password, user["password_hash"]):
            return None
        return user

    def get(self, user_id: str) -> Optional[dict[str, Any]]:
        for user in self._users().values():
            if user["id"] == user_id:
                return user
        return None

    def describe(self, user_id: str) -> Optional[str]:
        """Display label for notifications, e.g. ``alice (alice@example.com)``."""
        user = self.get(user_id)
        if user is None:
            return None
        return f"{user['username']} ({user['email']})"
