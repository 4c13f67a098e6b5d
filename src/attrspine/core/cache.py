"""
Results cache with in-memory and Redis implementations.

A connector may be given a ``CacheBackend`` to remember the AttributeMap a
query produced, keyed by the query's ``cache_key``. A hit skips connection
acquisition and query execution entirely.

Manifesto:
    Attribute resolution repeats itself: the same principal logs in to many
    services within minutes. Caching the mapped result per query keeps that
    load off the directory and the database.

    - **Protocol-based:** CacheBackend defines the contract
    - **Tier-aware:** InMemoryCache per process, RedisCache shared
    - **TTL support:** Time-based expiration for all backends

Architecture:
    ::

        CacheBackend (Protocol)
        ├── InMemoryCache  — single-process, bounded LRU, lock-protected
        └── RedisCache     — distributed, namespaced, tagged JSON values

        API: get(key) → value | None
             set(key, value, ttl_seconds=None)
             delete(key)
             exists(key) → bool
             clear()

Examples:
    >>> from attrspine.core.cache import InMemoryCache
    >>> cache = InMemoryCache(max_size=1000, default_ttl_seconds=300)
    >>> cache.set("k", {"uid": ["alice"]})
    >>> cache.get("k")
    {'uid': ['alice']}

Guardrails:
    ❌ DON'T: Hand out the cached object itself
    ✅ DO: Copy on the way in and on the way out (the connector does this)

    ❌ DON'T: Cache without TTL in long-lived processes
    ✅ DO: Set ``results_cache_ttl`` on the connector config

Tags:
    cache, caching, redis, in-memory, ttl, attribute-spine
"""

from __future__ import annotations

import base64
import datetime as dt
import json
import threading
import time
import uuid
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Protocol

import redis


class CacheBackend(Protocol):
    """Protocol for cache backend implementations.

    Keys are strings, values are JSON-serializable.
    """

    def get(self, key: str) -> Any | None:
        """Cached value, or ``None`` if not found or expired."""
        ...

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """Store a value. ``ttl_seconds=None`` uses the default TTL."""
        ...

    def delete(self, key: str) -> None:
        """Remove a key. No-op if the key does not exist."""
        ...

    def exists(self, key: str) -> bool:
        ...

    def clear(self) -> None:
        """Remove all keys owned by this cache."""
        ...


# ------------------------------------------------------------------ #
# In-Memory Cache
# ------------------------------------------------------------------ #


class InMemoryCache:
    """Bounded in-memory cache with TTL support.

    Uses LRU eviction when ``max_size`` is reached. All operations hold an
    internal lock, so one instance can be shared by concurrent retrievals.

    Example:
        cache = InMemoryCache(max_size=500, default_ttl_seconds=300)
        cache.set("attrspine:myLDAP:3f2a...", {"mail": ["a@x.org"]}, ttl_seconds=60)
    """

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        default_ttl_seconds: int | None = 3600,
    ):
        self._store: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and time.monotonic() > expires_at:
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return value

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = (time.monotonic() + ttl) if ttl else None
        with self._lock:
            if key not in self._store and len(self._store) >= self._max_size:
                self._store.popitem(last=False)
            self._store[key] = (value, expires_at)
            self._store.move_to_end(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def size(self) -> int:
        """Return current number of cached keys (expired ones included until touched)."""
        with self._lock:
            return len(self._store)


# ------------------------------------------------------------------ #
# Redis Cache
# ------------------------------------------------------------------ #


class _AttributeEncoder(json.JSONEncoder):
    """JSON with tagged objects for the value types LDAP and SQL hand back."""

    def default(self, o: Any) -> Any:
        if isinstance(o, bytes):
            return {"__bytes__": base64.b64encode(o).decode("ascii")}
        if isinstance(o, dt.datetime):
            return {"__datetime__": o.isoformat()}
        if isinstance(o, dt.date):
            return {"__date__": o.isoformat()}
        if isinstance(o, dt.time):
            return {"__time__": o.isoformat()}
        if isinstance(o, Decimal):
            return {"__decimal__": str(o)}
        if isinstance(o, uuid.UUID):
            return {"__uuid__": str(o)}
        return super().default(o)


_DECODERS = {
    "__bytes__": base64.b64decode,
    "__datetime__": dt.datetime.fromisoformat,
    "__date__": dt.date.fromisoformat,
    "__time__": dt.time.fromisoformat,
    "__decimal__": Decimal,
    "__uuid__": uuid.UUID,
}


def _decode_tagged(obj: dict[str, Any]) -> Any:
    if len(obj) == 1:
        tag, payload = next(iter(obj.items()))
        decoder = _DECODERS.get(tag)
        if decoder is not None:
            return decoder(payload)
    return obj


class RedisCache:
    """Redis-backed distributed cache.

    Keys are stored under ``namespace`` so ``clear()`` removes only this
    cache's entries, never the whole Redis database. Values are JSON;
    bytes, dates and times, decimals and UUIDs are stored as tagged objects
    (``{"__bytes__": "<base64>"}``) and come back as the same type. Any
    other non-JSON value raises TypeError.

    Example:
        cache = RedisCache("redis://localhost:6379/0", default_ttl_seconds=600)
        cache.set("k", {"uid": ["alice"]})
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        namespace: str = "attrspine-cache",
        default_ttl_seconds: int | None = 3600,
        client: redis.Redis | None = None,
    ):
        self._client = client if client is not None else redis.from_url(url, decode_responses=False)
        self._namespace = namespace
        self._default_ttl = default_ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def get(self, key: str) -> Any | None:
        raw = self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw, object_hook=_decode_tagged)

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        serialized = json.dumps(value, cls=_AttributeEncoder)
        if ttl:
            self._client.setex(self._key(key), ttl, serialized)
        else:
            self._client.set(self._key(key), serialized)

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(self._key(key)))

    def clear(self) -> None:
        """Remove every key under this cache's namespace."""
        keys = list(self._client.scan_iter(match=f"{self._namespace}:*"))
        if keys:
            self._client.delete(*keys)


__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
]
