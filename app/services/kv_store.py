"""
Ephemeral key-value storage.

Redis is the shared backend. When it cannot be reached, FallbackKeyValueStore keeps
serving from a process-local map so OTP codes and verified offers keep working on
this instance; callers never see the difference. BestEffortCache is for data that
must not be served from a process-local copy (booking read cache): it simply misses.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)


class StoreUnavailable(RuntimeError):
    pass


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        raise NotImplementedError


class CacheHealth:
    """Tracks whether the backend is currently reachable.

    After a failure the backend is reported unhealthy for `retry_after` seconds so
    callers skip it instead of paying a socket timeout on every request. State changes
    are logged once per outage.
    """

    def __init__(self, name: str, retry_after: float, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.retry_after = retry_after
        self._clock = clock
        self._lock = threading.Lock()
        self._down_since: Optional[float] = None
        self._last_failure: Optional[float] = None

    def is_healthy(self) -> bool:
        with self._lock:
            if self._last_failure is None:
                return True
            return self._clock() - self._last_failure >= self.retry_after

    def record_success(self) -> None:
        with self._lock:
            if self._down_since is not None:
                logger.info("%s reachable again after %.0fs", self.name, self._clock() - self._down_since)
            self._down_since = None
            self._last_failure = None

    def record_failure(self, exc: BaseException) -> None:
        with self._lock:
            now = self._clock()
            if self._down_since is None:
                logger.warning("%s unavailable, operating in degraded mode: %s", self.name, exc)
                self._down_since = now
            self._last_failure = now


class RedisKeyValueStore(KeyValueStore):
    """JSON values in redis with SETEX. Every backend error surfaces as StoreUnavailable."""

    def __init__(self, client: "redis.Redis", health: Optional[CacheHealth] = None, prefix: str = "jt:"):
        self.client = client
        self.health = health or CacheHealth("redis", settings.CACHE_RETRY_AFTER_SECONDS)
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 1.0) -> "RedisKeyValueStore":
        client = redis.Redis.from_url(
            url,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
            decode_responses=True,
        )
        return cls(client)

    def _call(self, fn: Callable[[], Any]) -> Any:
        if not self.health.is_healthy():
            raise StoreUnavailable(f"{self.health.name} marked unhealthy")
        try:
            result = fn()
        except redis.RedisError as e:
            self.health.record_failure(e)
            raise StoreUnavailable(str(e)) from e
        self.health.record_success()
        return result

    def get(self, key: str) -> Optional[Any]:
        raw = self._call(lambda: self.client.get(self.prefix + key))
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int) -> None:
        data = json.dumps(value, default=str)
        self._call(lambda: self.client.setex(self.prefix + key, ttl, data))

    def delete(self, key: str) -> None:
        self._call(lambda: self.client.delete(self.prefix + key))


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local map with per-key expiry, checked lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if expires_at <= self._clock():
                del self._data[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int) -> None:
        # stored serialized so callers never share mutable state with the store
        raw = json.dumps(value, default=str)
        with self._lock:
            self._data[key] = (raw, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class FallbackKeyValueStore(KeyValueStore):
    """Primary store with a degraded local replica.

    Writes always land in the secondary and in the primary when it is reachable.
    Reads answer from the primary whenever it is reachable, a miss included; the
    secondary is only read while the primary is down. Other instances may have
    consumed or replaced a key in the primary that is still in our local copy.
    """

    def __init__(self, primary: KeyValueStore, secondary: KeyValueStore):
        self.primary = primary
        self.secondary = secondary

    def get(self, key: str) -> Optional[Any]:
        try:
            return self.primary.get(key)
        except StoreUnavailable:
            logger.debug("primary store down, reading %s from local fallback", key)
            return self.secondary.get(key)

    def set(self, key: str, value: Any, ttl: int) -> None:
        self.secondary.set(key, value, ttl)
        try:
            self.primary.set(key, value, ttl)
        except StoreUnavailable:
            logger.debug("primary store down, %s kept in local fallback only", key)

    def delete(self, key: str) -> None:
        self.secondary.delete(key)
        try:
            self.primary.delete(key)
        except StoreUnavailable:
            logger.debug("primary store down, %s removed from local fallback only", key)


class BestEffortCache(KeyValueStore):
    """Cache that never fails the caller: a down backend reads as a miss and drops writes."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def get(self, key: str) -> Optional[Any]:
        try:
            return self.store.get(key)
        except StoreUnavailable:
            return None

    def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            self.store.set(key, value, ttl)
        except StoreUnavailable:
            pass

    def delete(self, key: str) -> None:
        try:
            self.store.delete(key)
        except StoreUnavailable:
            # entry may survive the outage; bounded by its TTL
            logger.warning("could not invalidate cache key %s", key)


_redis_store: Optional[RedisKeyValueStore] = None
_ephemeral_store: Optional[FallbackKeyValueStore] = None


def get_redis_store() -> RedisKeyValueStore:
    global _redis_store
    if _redis_store is None:
        _redis_store = RedisKeyValueStore.from_url(settings.REDIS_URL, settings.REDIS_SOCKET_TIMEOUT)
    return _redis_store


def get_ephemeral_store() -> KeyValueStore:
    """Shared store for OTP codes, verified offers and other short-lived state."""
    global _ephemeral_store
    if _ephemeral_store is None:
        _ephemeral_store = FallbackKeyValueStore(get_redis_store(), InMemoryKeyValueStore())
    return _ephemeral_store


def get_booking_cache() -> KeyValueStore:
    return BestEffortCache(get_redis_store())
