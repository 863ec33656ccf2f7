"""Key/value counter stores with per-key expiry.

Rate limiters and short-lived caches take one of these as a constructor
argument, so the caller owns its lifetime and tests can hand in a fresh
in-memory store instead of sharing process-wide state.
"""

import threading
from collections.abc import Callable
from time import monotonic
from typing import Protocol

from redis import Redis

from app.infrastructure.observability.metrics import measure_redis


class TTLStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None: ...

    def incr(self, key: str) -> int: ...

    def expire(self, key: str, ttl_seconds: int) -> None: ...

    def ttl(self, key: str) -> int: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class InMemoryTTLStore:
    """Thread-safe dict store; expired keys are dropped lazily on access."""

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}

    def _evict_if_expired(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def get(self, key: str) -> str | None:
        with self._lock:
            self._evict_if_expired(key)
            return self._values.get(key)

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        with self._lock:
            self._values[key] = value
            if ttl_seconds is None:
                self._expires_at.pop(key, None)
            else:
                self._expires_at[key] = self._clock() + ttl_seconds

    def incr(self, key: str) -> int:
        with self._lock:
            self._evict_if_expired(key)
            current = int(self._values.get(key, "0")) + 1
            self._values[key] = str(current)
            return current

    def expire(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            self._evict_if_expired(key)
            if key in self._values:
                self._expires_at[key] = self._clock() + ttl_seconds

    def ttl(self, key: str) -> int:
        # Same sentinels as Redis TTL: -2 missing key, -1 no expiry.
        with self._lock:
            self._evict_if_expired(key)
            if key not in self._values:
                return -2
            expires_at = self._expires_at.get(key)
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at - self._clock())))

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
            self._expires_at.clear()


class RedisTTLStore:
    def __init__(self, redis_client: Redis, *, namespace: str = "") -> None:
        self._redis = redis_client
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    def get(self, key: str) -> str | None:
        with measure_redis("ttl_store_get"):
            value = self._redis.get(self._key(key))
        return None if value is None else str(value)

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        with measure_redis("ttl_store_set"):
            self._redis.set(self._key(key), value, ex=ttl_seconds)

    def incr(self, key: str) -> int:
        with measure_redis("ttl_store_incr"):
            return int(self._redis.incr(self._key(key)))

    def expire(self, key: str, ttl_seconds: int) -> None:
        with measure_redis("ttl_store_expire"):
            self._redis.expire(self._key(key), ttl_seconds)

    def ttl(self, key: str) -> int:
        with measure_redis("ttl_store_ttl"):
            return int(self._redis.ttl(self._key(key)))

    def delete(self, key: str) -> None:
        with measure_redis("ttl_store_delete"):
            self._redis.delete(self._key(key))

    def clear(self) -> None:
        if not self._namespace:
            raise ValueError("Refusing to clear a Redis store without a namespace")
        with measure_redis("ttl_store_clear"):
            keys = list(self._redis.scan_iter(match=f"{self._namespace}*"))
            if keys:
                self._redis.delete(*keys)
