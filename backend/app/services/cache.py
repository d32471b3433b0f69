"""Lightweight cache abstraction for unread notification counters."""

from __future__ import annotations

import threading
import time
from functools import lru_cache
from typing import Protocol

from redis import Redis

from app.config import get_settings


class CacheBackend(Protocol):
    """Protocol describing cache operations we rely on."""

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a key/value pair with a time-to-live in seconds."""

    def get(self, key: str) -> str | None:
        """Retrieve a cached value if it exists and has not expired."""

    def delete(self, key: str) -> None:
        """Remove a cached entry, ignoring missing values."""


class InMemoryCache:
    """Process-local cache used when no Redis URL is configured."""

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at: float | None = None
        if ttl_seconds > 0:
            expires_at = time.monotonic() + ttl_seconds
        with self._lock:
            self._store[key] = (value, expires_at)

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= time.monotonic():
                self._store.pop(key, None)
                return None
            return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


class RedisCache:
    """Thin Redis wrapper adhering to :class:`CacheBackend`."""

    def __init__(self, url: str) -> None:
        self._client = Redis.from_url(url, decode_responses=True)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._client.setex(key, ttl_seconds, value)
        else:
            self._client.set(key, value)

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def delete(self, key: str) -> None:
        self._client.delete(key)


@lru_cache(maxsize=1)
def get_cache() -> CacheBackend:
    """Return the configured cache backend: Redis when a URL is set, else in-process."""

    settings = get_settings()
    if settings.notification_cache_url:
        return RedisCache(settings.notification_cache_url)
    return InMemoryCache()
