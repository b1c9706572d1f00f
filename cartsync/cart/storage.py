"""
Browser-scoped local storage for the session token and cart snapshot.

Two backends share one small interface:
- MemoryStorage: per-process dict, used by tests and short-lived sessions
- RedisStorage: Upstash Redis, survives process restarts (like localStorage
  survives page reloads)
"""
import json
from typing import Any, Optional, Protocol

from cartsync.db import get_redis_sync, RedisKeys, TTL
from cartsync.logging import get_logger

logger = get_logger(__name__)


class LocalStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStorage:
    """Dict-backed storage."""

    def __init__(self, initial: Optional[dict] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        """Full data wipe (drops the session token too)."""
        self._data.clear()


class RedisStorage:
    """Upstash Redis storage, keys namespaced per browser."""

    def __init__(self, browser_id: str, redis=None, ttl: int = TTL.LOCAL_CART):
        self.browser_id = browser_id
        self.ttl = ttl
        self._redis = redis

    @property
    def redis(self):
        """Get Redis client (lazy initialization)."""
        if self._redis is None:
            self._redis = get_redis_sync()
        return self._redis

    def _key(self, key: str) -> str:
        return RedisKeys.browser_key(self.browser_id, key)

    def get(self, key: str) -> Optional[str]:
        return self.redis.get(self._key(key))

    def set(self, key: str, value: str) -> None:
        self.redis.set(self._key(key), value, ex=self.ttl)

    def delete(self, key: str) -> None:
        self.redis.delete(self._key(key))


def load_json(storage: LocalStorage, key: str) -> Optional[Any]:
    """Read a JSON value; corrupted data is dropped and treated as missing."""
    raw = storage.get(key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning("Corrupted local data under %s: %s", key, e)
        storage.delete(key)
        return None


def save_json(storage: LocalStorage, key: str, value: Any) -> None:
    storage.set(key, json.dumps(value))
