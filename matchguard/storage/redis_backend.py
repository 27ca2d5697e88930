"""Redis storage backends for the login defense state.

Stores JSON-encoded values in Redis so counters, lockouts, bans and
sessions are shared by every service instance.

Requires:
- redis>=5.0
- REDIS_URL environment variable (e.g. redis://localhost:6379/0)

Key schema (prefix defaults to "matchguard:"):
    matchguard:cache:{key}        -> JSON value with EXPIRE
    matchguard:options            -> hash of option name -> JSON value
    matchguard:user:{user_id}     -> hash of field name -> JSON value
"""

import json
import logging
from typing import Any, Optional

from matchguard.core.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)

_KEY_PREFIX = "matchguard:"

# Atomic increment-and-compare: only increments while below the limit.
_INCREMENT_BELOW_SCRIPT = """
local current = tonumber(redis.call("get", KEYS[1]) or "0")
if current >= tonumber(ARGV[1]) then
    return {current, 0}
end
current = redis.call("incr", KEYS[1])
redis.call("expire", KEYS[1], ARGV[2])
return {current, 1}
"""


def create_redis_client(redis_url: str):
    """Create a Redis client with the service's connection defaults."""
    import redis as redis_lib
    return redis_lib.Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


class RedisCache:
    """Redis-backed expiring cache.

    Counters are stored as plain integers so INCR works on them; all
    other values are JSON blobs.
    """

    def __init__(self, client, key_prefix: str = _KEY_PREFIX):
        self._client = client
        self._key_prefix = f"{key_prefix}cache:"

    @property
    def client(self):
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        try:
            data = self._client.get(self._key(key))
        except Exception as e:
            logger.error(f"Redis GET failed for {key}: {e}")
            raise StorageUnavailableError("get", key) from e
        if data is None:
            return None
        return json.loads(data)

    def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            self._client.set(self._key(key), json.dumps(value), ex=max(1, int(ttl)))
        except Exception as e:
            logger.error(f"Redis SET failed for {key}: {e}")
            raise StorageUnavailableError("set", key) from e

    def delete(self, key: str) -> bool:
        try:
            return self._client.delete(self._key(key)) > 0
        except Exception as e:
            logger.error(f"Redis DELETE failed for {key}: {e}")
            raise StorageUnavailableError("delete", key) from e

    def incr(self, key: str, ttl: int) -> int:
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.incr(self._key(key))
            pipe.expire(self._key(key), max(1, int(ttl)))
            results = pipe.execute()
        except Exception as e:
            logger.error(f"Redis INCR failed for {key}: {e}")
            raise StorageUnavailableError("incr", key) from e
        return int(results[0])

    def increment_below(self, key: str, limit: int, ttl: int) -> tuple[int, bool]:
        try:
            count, accepted = self._client.eval(
                _INCREMENT_BELOW_SCRIPT, 1, self._key(key), int(limit), max(1, int(ttl))
            )
        except Exception as e:
            logger.error(f"Redis increment_below failed for {key}: {e}")
            raise StorageUnavailableError("increment_below", key) from e
        return int(count), bool(int(accepted))

    def ttl(self, key: str) -> Optional[int]:
        try:
            remaining = self._client.ttl(self._key(key))
        except Exception as e:
            logger.error(f"Redis TTL failed for {key}: {e}")
            raise StorageUnavailableError("ttl", key) from e
        # -2: key missing, -1: no expiry
        if remaining is None or remaining == -2:
            return None
        return max(0, int(remaining))

    def ping(self) -> bool:
        """Health check: verify Redis connectivity."""
        try:
            return bool(self._client.ping())
        except Exception:
            return False


class RedisDurableStore:
    """Redis hashes used as the durable option/user-field store.

    Keys written here never carry an EXPIRE; expiry of ban records is
    checked on read by the services.
    """

    def __init__(self, client, key_prefix: str = _KEY_PREFIX):
        self._client = client
        self._options_key = f"{key_prefix}options"
        self._user_prefix = f"{key_prefix}user:"

    def _user_key(self, user_id: str) -> str:
        return f"{self._user_prefix}{user_id}"

    def _hget(self, key: str, name: str, default: Any) -> Any:
        try:
            data = self._client.hget(key, name)
        except Exception as e:
            logger.error(f"Redis HGET failed for {key}/{name}: {e}")
            raise StorageUnavailableError("get", f"{key}/{name}") from e
        if data is None:
            return default
        return json.loads(data)

    def _hset(self, key: str, name: str, value: Any) -> None:
        try:
            self._client.hset(key, name, json.dumps(value))
        except Exception as e:
            logger.error(f"Redis HSET failed for {key}/{name}: {e}")
            raise StorageUnavailableError("update", f"{key}/{name}") from e

    def _hdel(self, key: str, name: str) -> bool:
        try:
            return self._client.hdel(key, name) > 0
        except Exception as e:
            logger.error(f"Redis HDEL failed for {key}/{name}: {e}")
            raise StorageUnavailableError("delete", f"{key}/{name}") from e

    def get_option(self, name: str, default: Any = None) -> Any:
        return self._hget(self._options_key, name, default)

    def update_option(self, name: str, value: Any) -> None:
        self._hset(self._options_key, name, value)

    def delete_option(self, name: str) -> bool:
        return self._hdel(self._options_key, name)

    def get_user_field(self, user_id: str, name: str, default: Any = None) -> Any:
        return self._hget(self._user_key(user_id), name, default)

    def update_user_field(self, user_id: str, name: str, value: Any) -> None:
        self._hset(self._user_key(user_id), name, value)

    def delete_user_field(self, user_id: str, name: str) -> bool:
        return self._hdel(self._user_key(user_id), name)
