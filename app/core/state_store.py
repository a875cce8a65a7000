"""Short-lived, single-use storage for OAuth CSRF state tokens.

Redis is used when REDIS_URL is configured so that a state issued by one
worker can be consumed by another. Without Redis, states live in process
memory, which is only correct for single-process deployments.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "crm:oauth_state:"


class OAuthStateStore(ABC):
    """Key-value store with TTL and delete-on-read semantics."""

    @abstractmethod
    def put(self, state: str, data: dict, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    def pop(self, state: str) -> Optional[dict]:
        """Return and delete the entry, or None if missing/expired."""
        ...


class InMemoryStateStore(OAuthStateStore):
    def __init__(self):
        self._entries: dict[str, tuple[dict, float]] = {}
        self._lock = threading.Lock()

    def put(self, state: str, data: dict, ttl_seconds: int) -> None:
        with self._lock:
            self._purge_expired()
            self._entries[state] = (data, time.time() + ttl_seconds)

    def pop(self, state: str) -> Optional[dict]:
        with self._lock:
            entry = self._entries.pop(state, None)
            self._purge_expired()
        if entry is None:
            return None
        data, expires_at = entry
        if expires_at < time.time():
            return None
        return data

    def _purge_expired(self) -> None:
        now = time.time()
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at < now]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class RedisStateStore(OAuthStateStore):
    def __init__(self, client: redis.Redis):
        self._client = client

    def put(self, state: str, data: dict, ttl_seconds: int) -> None:
        self._client.set(f"{STATE_KEY_PREFIX}{state}", json.dumps(data), ex=ttl_seconds)

    def pop(self, state: str) -> Optional[dict]:
        raw = self._client.getdel(f"{STATE_KEY_PREFIX}{state}")
        if raw is None:
            return None
        return json.loads(raw)


_store: Optional[OAuthStateStore] = None


def get_state_store() -> OAuthStateStore:
    """Get the process-wide OAuth state store."""
    global _store
    if _store is None:
        if settings.REDIS_URL:
            _store = RedisStateStore(redis.Redis.from_url(settings.REDIS_URL, decode_responses=True))
            logger.info("OAuth state store: Redis")
        else:
            _store = InMemoryStateStore()
            logger.warning("OAuth state store: in-process memory (single worker only)")
    return _store
