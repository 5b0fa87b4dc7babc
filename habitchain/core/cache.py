"""
Key-value cache with TTLs.

RedisCache is used when REDIS_URL is configured; InMemoryCache otherwise and
in tests. Every Redis call is bounded by CACHE_TIMEOUT_SECONDS and any
failure surfaces as TransientStoreError, which callers treat as a miss.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from habitchain.core.errors import TransientStoreError


class Cache:
    backend = "abstract"

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        raise NotImplementedError

    def set_nx(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Set only if absent. Returns True when this caller set it."""
        raise NotImplementedError

    def delete(self, *keys: str) -> None:
        raise NotImplementedError

    def incr_window(self, key: str, window_seconds: int) -> int:
        """Increment a counter that expires `window_seconds` after its first hit."""
        raise NotImplementedError

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


class RedisCache(Cache):
    backend = "redis"

    def __init__(self, client: Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 1.0) -> "RedisCache":
        client = Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            decode_responses=True,
        )
        return cls(client)

    @property
    def client(self) -> Redis:
        return self._client

    def get(self, key: str) -> Optional[str]:
        try:
            return self._client.get(key)
        except RedisError as exc:
            raise TransientStoreError(f"Cache read failed: {exc}") from exc

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        try:
            self._client.setex(key, ttl_seconds, value)
        except RedisError as exc:
            raise TransientStoreError(f"Cache write failed: {exc}") from exc

    def set_nx(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            return bool(self._client.set(key, value, nx=True, ex=ttl_seconds))
        except RedisError as exc:
            raise TransientStoreError(f"Cache write failed: {exc}") from exc

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self._client.delete(*keys)
        except RedisError as exc:
            raise TransientStoreError(f"Cache delete failed: {exc}") from exc

    def incr_window(self, key: str, window_seconds: int) -> int:
        try:
            pipe = self._client.pipeline()
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            count, _ = pipe.execute()
            return int(count)
        except RedisError as exc:
            raise TransientStoreError(f"Cache write failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            return False

    def close(self) -> None:
        self._client.close()


class InMemoryCache(Cache):
    backend = "memory"

    def __init__(self, time_fn: Optional[Callable[[], float]] = None):
        self.time_fn = time_fn or time.monotonic
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self.time_fn() >= expires_at:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        with self._lock:
            self._entries[key] = (value, self.time_fn() + ttl_seconds)

    def set_nx(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (value, self.time_fn() + ttl_seconds)
            return True

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def incr_window(self, key: str, window_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._entries[key] = ("1", self.time_fn() + window_seconds)
                return 1
            value, expires_at = entry
            count = int(value) + 1
            self._entries[key] = (str(count), expires_at)
            return count

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def build_cache(redis_url: Optional[str] = None, settings_obj=None) -> Cache:
    from habitchain.core.config import settings as default_settings

    cfg = settings_obj or default_settings
    url = redis_url or cfg.REDIS_URL
    if url:
        return RedisCache.from_url(url, timeout_seconds=cfg.CACHE_TIMEOUT_SECONDS)
    return InMemoryCache()
