"""
Storage-service binding.

Resolves attributes from a key/value storage service where records are
addressed by a *context* (a namespace) and a *key*, both rendered from
templates. Two services are provided:

- ``InMemoryStorageService`` — process-local, lock-protected
- ``RedisStorageService``    — records are Redis strings under
  ``{namespace}:{context}:{key}``

Strategies:

- ``StorageLookupBuilder`` — renders context and key templates
- ``StorageLookup``        — the ExecutableQuery, cache key ``"{context}!{key}"``
- ``StorageProvider``      — leases lightweight sessions over one service
- ``JSONRecordMapper``     — record value is a JSON object of attributes
- ``CallableMapper``       — any ``Callable[[StorageRecord | None], Mapping]``
- ``storage_validator``    — acquire + ``ping``

Examples:
    >>> service = InMemoryStorageService()
    >>> service.create("attributes", "alice", '{"mail": ["a@x.org"]}')
    True
    >>> builder = StorageLookupBuilder("attributes", "{principal}")
    >>> builder.build(ResolutionContext(principal="alice")).cache_key
    'attributes!alice'

Tags:
    storage, key-value, redis, data-connector, attribute-spine
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import redis

from attrspine.connectors.templates import QueryTemplate
from attrspine.connectors.validators import ConnectionValidator
from attrspine.core.context import AttributeMap, ResolutionContext
from attrspine.core.errors import (
    ConfigurationError,
    ConnectionError,
    ExecutionError,
    MappingError,
    QueryConstructionError,
    TimeoutError,
)
from attrspine.core.logging import get_logger

logger = get_logger(__name__)

BACKEND = "storage"


# ------------------------------------------------------------------ #
# Records and services
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class StorageRecord:
    """A stored value with its version and optional expiration (epoch seconds)."""

    value: str
    version: int = 1
    expiration: float | None = None

    def expired(self, now: float | None = None) -> bool:
        return self.expiration is not None and (now or time.time()) >= self.expiration


class StorageService(Protocol):
    """Minimal read contract a storage service must satisfy."""

    def read(self, context: str, key: str) -> StorageRecord | None:
        ...

    def ping(self) -> bool:
        ...

    def close(self) -> None:
        ...


class InMemoryStorageService:
    """Process-local storage service. Expired records read as missing."""

    def __init__(self) -> None:
        self._contexts: dict[str, dict[str, StorageRecord]] = {}
        self._lock = threading.Lock()

    def create(self, context: str, key: str, value: str, *, expiration: float | None = None) -> bool:
        """Store a new record; False if a live record already exists."""
        with self._lock:
            records = self._contexts.setdefault(context, {})
            existing = records.get(key)
            if existing is not None and not existing.expired():
                return False
            records[key] = StorageRecord(value=value, expiration=expiration)
            return True

    def update(self, context: str, key: str, value: str, *, expiration: float | None = None) -> bool:
        """Replace a live record and bump its version; False if there is none."""
        with self._lock:
            existing = self._contexts.get(context, {}).get(key)
            if existing is None or existing.expired():
                return False
            self._contexts[context][key] = StorageRecord(
                value=value, version=existing.version + 1, expiration=expiration
            )
            return True

    def delete(self, context: str, key: str) -> bool:
        with self._lock:
            return self._contexts.get(context, {}).pop(key, None) is not None

    def read(self, context: str, key: str) -> StorageRecord | None:
        with self._lock:
            record = self._contexts.get(context, {}).get(key)
        if record is None or record.expired():
            return None
        return record

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


class RedisStorageService:
    """Storage service over Redis strings, one key per (context, key)."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        namespace: str = "attrspine-storage",
        socket_timeout: float | None = 5.0,
        client: redis.Redis | None = None,
    ):
        self._client = client if client is not None else redis.from_url(
            url, decode_responses=True, socket_timeout=socket_timeout
        )
        self._namespace = namespace

    def _key(self, context: str, key: str) -> str:
        return f"{self._namespace}:{context}:{key}"

    def create(self, context: str, key: str, value: str, *, expiration: float | None = None) -> bool:
        ttl = None if expiration is None else max(1, int(expiration - time.time()))
        return bool(self._client.set(self._key(context, key), value, nx=True, ex=ttl))

    def delete(self, context: str, key: str) -> bool:
        return bool(self._client.delete(self._key(context, key)))

    def read(self, context: str, key: str) -> StorageRecord | None:
        value = self._client.get(self._key(context, key))
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return StorageRecord(value=value)

    def ping(self) -> bool:
        return bool(self._client.ping())

    def close(self) -> None:
        self._client.close()


# ------------------------------------------------------------------ #
# Query
# ------------------------------------------------------------------ #


class StorageLease:
    """A leased session over a storage service."""

    def __init__(self, service: StorageService):
        self._service = service
        self.closed = False

    def read(self, context: str, key: str) -> StorageRecord | None:
        if self.closed:
            raise ConnectionError("Storage session already released")
        return self._service.read(context, key)

    def ping(self) -> bool:
        return self._service.ping()

    def close(self) -> None:
        self.closed = True


@dataclass(frozen=True)
class StorageLookup:
    """Read of one record, addressed by context and key."""

    context: str
    key: str

    @property
    def cache_key(self) -> str:
        return f"{self.context}!{self.key}"

    def execute(self, connection: StorageLease, *, timeout: float | None = None) -> StorageRecord | None:
        started = time.monotonic()
        try:
            record = connection.read(self.context, self.key)
        except redis.exceptions.TimeoutError as exc:
            raise TimeoutError(f"Storage read exceeded its deadline: {exc}", timeout=timeout, cause=exc) from exc
        except redis.exceptions.ConnectionError as exc:
            raise ConnectionError(f"Storage service unreachable: {exc}", cause=exc) from exc
        except redis.exceptions.RedisError as exc:
            raise ExecutionError(f"Storage read failed: {exc}", cause=exc) from exc

        elapsed = time.monotonic() - started
        if timeout and elapsed > timeout:
            raise TimeoutError(f"Storage read took {elapsed:.3f}s, limit {timeout}s", timeout=timeout)
        return record


class StorageLookupBuilder:
    """Render ``StorageLookup`` objects from context and key templates."""

    def __init__(self, context_template: str, key_template: str):
        self.context_template = QueryTemplate(context_template)
        self.key_template = QueryTemplate(key_template)

    def build(self, context: ResolutionContext) -> StorageLookup:
        storage_context = self.context_template.render(context)
        key = self.key_template.render(context)
        if not storage_context:
            raise QueryConstructionError(f"Context template {self.context_template.text!r} rendered empty")
        if not key:
            raise QueryConstructionError(f"Key template {self.key_template.text!r} rendered empty")
        return StorageLookup(context=storage_context, key=key)


# ------------------------------------------------------------------ #
# Provider
# ------------------------------------------------------------------ #


class StorageProvider:
    """
    ConnectionProvider leasing sessions over one storage service.

    Pass a service (owned by the caller) or a factory called by ``open()``
    (the service is then closed by ``close()``).
    """

    backend = BACKEND

    def __init__(
        self,
        service: StorageService | None = None,
        *,
        service_factory: Callable[[], StorageService] | None = None,
    ):
        if (service is None) == (service_factory is None):
            raise ConfigurationError("StorageProvider needs exactly one of service or service_factory")
        self._service = service
        self._service_factory = service_factory
        self._owns_service = service is None

    @property
    def service(self) -> StorageService | None:
        return self._service

    def open(self) -> None:
        if self._service is None:
            self._service = self._service_factory()
            logger.debug("storage.service.created", service=type(self._service).__name__)

    def acquire(self) -> StorageLease:
        if self._service is None:
            raise ConnectionError("Storage provider is not open")
        return StorageLease(self._service)

    def release(self, connection: StorageLease) -> None:
        connection.close()

    def close(self) -> None:
        if self._service is not None and self._owns_service:
            try:
                self._service.close()
            except redis.exceptions.RedisError as exc:
                logger.warning("storage.close_failed", error=str(exc))
            self._service = None


# ------------------------------------------------------------------ #
# Mappers
# ------------------------------------------------------------------ #


def normalize_attribute_map(mapping: Any, *, source: str) -> AttributeMap:
    """
    Validate a mapping of attribute id → values and return a fresh AttributeMap.

    String and bytes values count as one value; ``None`` entries are
    dropped; attributes left without values are omitted. Nested mappings,
    bare or inside a value list, raise MappingError.
    """
    if mapping is None:
        return {}
    if not isinstance(mapping, Mapping):
        raise MappingError(f"{source} produced {type(mapping).__name__}, expected a mapping")
    attributes: AttributeMap = {}
    for name, values in mapping.items():
        if not isinstance(name, str) or not name:
            raise MappingError(f"{source} produced invalid attribute id {name!r}")
        if values is None:
            continue
        if isinstance(values, (str, bytes)):
            values = [values]
        elif isinstance(values, (list, tuple)):
            values = [value for value in values if value is not None]
            if any(isinstance(value, Mapping) for value in values):
                raise MappingError(f"{source} produced a nested object in attribute {name!r}")
        else:
            raise MappingError(
                f"{source} produced {type(values).__name__} for attribute {name!r}, expected a sequence"
            )
        if values:
            attributes[name] = values
    return attributes


class JSONRecordMapper:
    """
    Decode a record whose value is a JSON object of attributes.

    Scalars are accepted as single values: ``{"uid": "alice"}`` maps to
    ``{"uid": ["alice"]}``. Nested objects have no attribute form and raise
    MappingError. A missing record maps to ``{}``.
    """

    def __init__(self, *, aliases: Mapping[str, str] | None = None):
        self.aliases = dict(aliases or {})

    def map(self, raw: StorageRecord | None) -> AttributeMap:
        if raw is None:
            return {}
        if not isinstance(raw, StorageRecord):
            raise MappingError(f"Expected StorageRecord, got {type(raw).__name__}")
        try:
            decoded = json.loads(raw.value)
        except json.JSONDecodeError as exc:
            raise MappingError(f"Storage record is not valid JSON: {exc}", cause=exc) from exc
        if not isinstance(decoded, dict):
            raise MappingError(f"Storage record holds {type(decoded).__name__}, expected a JSON object")
        scalars_wrapped = {
            name: value if isinstance(value, list) or value is None else [value] for name, value in decoded.items()
        }
        attributes = normalize_attribute_map(scalars_wrapped, source="JSON record")
        return {self.aliases.get(name, name): values for name, values in attributes.items()}


class CallableMapper:
    """Delegate mapping to a function; its output is validated and normalized."""

    def __init__(self, func: Callable[[Any], Any], *, name: str | None = None):
        self.func = func
        self.name = name or getattr(func, "__name__", "mapping function")

    def map(self, raw: Any) -> AttributeMap:
        try:
            produced = self.func(raw)
        except MappingError:
            raise
        except Exception as exc:
            raise MappingError(f"{self.name} failed: {exc}", cause=exc) from exc
        return normalize_attribute_map(produced, source=self.name)


# ------------------------------------------------------------------ #
# Validator
# ------------------------------------------------------------------ #


def _ping(lease: StorageLease) -> bool:
    return lease.ping()


def storage_validator(provider: StorageProvider) -> ConnectionValidator:
    """Default validator: acquire a session and ping the service."""
    return ConnectionValidator(provider, probe=_ping, name="storage ping")


__all__ = [
    "StorageRecord",
    "StorageService",
    "InMemoryStorageService",
    "RedisStorageService",
    "StorageLease",
    "StorageLookup",
    "StorageLookupBuilder",
    "StorageProvider",
    "JSONRecordMapper",
    "CallableMapper",
    "normalize_attribute_map",
    "storage_validator",
]
