"""
Factory functions that assemble data connectors from settings.

Manifesto:
    Wiring a connector means choosing five strategies and a policy. For the
    three reference backends that choice is always the same, so it lives
    here once, driven by :class:`~attrspine.core.settings.AttrSpineSettings`.
    Backend modules are imported lazily so that building a storage
    connector never loads ldap3 or SQLAlchemy.

Features:
    - ``create_ldap_connector()``    — pooled ldap3 provider, filter template
    - ``create_rdbms_connector()``   — SQLAlchemy engine, bound-parameter SQL
    - ``create_storage_connector()`` — ``memory://`` or ``redis://`` service
    - ``create_results_cache()``     — InMemory / Redis results cache or none
    - ``create_connector()``         — dispatch on a backend name

Examples:
    >>> from attrspine.factory import create_connector
    >>> with create_connector("storage") as connector:
    ...     connector.retrieve_attributes(ResolutionContext(principal="alice"))
    {}

Tags:
    factory-pattern, lazy-imports, configuration, attribute-spine
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from attrspine.connectors.config import ConnectorConfig
from attrspine.connectors.connector import DataConnector
from attrspine.core.cache import CacheBackend, InMemoryCache, RedisCache
from attrspine.core.errors import ConfigurationError
from attrspine.core.settings import get_settings

if TYPE_CHECKING:
    from attrspine.core.settings import AttrSpineSettings


class Backend(str, Enum):
    """Reference backends."""

    LDAP = "ldap"
    RDBMS = "rdbms"
    STORAGE = "storage"


def create_results_cache(settings: AttrSpineSettings, connector_id: str) -> CacheBackend | None:
    """Results cache for one connector, or ``None`` when caching is off.

    Caching is on when ``results_cache_ttl`` is set; ``redis_cache_url``
    selects Redis over the in-process cache.
    """
    if settings.results_cache_ttl is None:
        return None
    if settings.redis_cache_url:
        return RedisCache(
            settings.redis_cache_url,
            namespace=f"attrspine:{connector_id}",
            default_ttl_seconds=settings.results_cache_ttl,
        )
    return InMemoryCache(max_size=settings.results_cache_size, default_ttl_seconds=settings.results_cache_ttl)


def _connector_kwargs(settings: AttrSpineSettings, connector_id: str, config: ConnectorConfig | None) -> dict[str, Any]:
    return {
        "config": config or ConnectorConfig.from_settings(settings),
        "cache": create_results_cache(settings, connector_id),
    }


def create_ldap_connector(
    settings: AttrSpineSettings | None = None,
    *,
    connector_id: str | None = None,
    config: ConnectorConfig | None = None,
) -> DataConnector:
    """Directory connector from ``ATTRSPINE_LDAP_*`` settings."""
    from attrspine.backends.ldap import LDAPEntryMapper, LDAPProvider, LDAPSearchBuilder, ldap_validator

    settings = settings or get_settings()
    connector_id = connector_id or settings.connector_id or "ldap"
    if not settings.ldap_base_dn:
        raise ConfigurationError("ATTRSPINE_LDAP_BASE_DN is required for the ldap backend")

    password = settings.ldap_bind_password.get_secret_value() if settings.ldap_bind_password else None
    provider = LDAPProvider(
        settings.ldap_url,
        bind_dn=settings.ldap_bind_dn,
        password=password,
        use_starttls=settings.ldap_use_starttls,
        pool_size=settings.ldap_pool_size,
        acquire_timeout=settings.ldap_acquire_timeout,
        connect_timeout=settings.ldap_connect_timeout,
        receive_timeout=settings.query_timeout,
    )
    return DataConnector(
        connector_id,
        provider=provider,
        builder=LDAPSearchBuilder(
            settings.ldap_base_dn,
            settings.ldap_filter_template,
            attributes=settings.ldap_return_attributes or None,
        ),
        mapper=LDAPEntryMapper(lowercase_attribute_names=settings.ldap_lowercase_attribute_names),
        validator=ldap_validator(provider),
        **_connector_kwargs(settings, connector_id, config),
    )


def create_rdbms_connector(
    settings: AttrSpineSettings | None = None,
    *,
    connector_id: str | None = None,
    config: ConnectorConfig | None = None,
) -> DataConnector:
    """Relational connector from ``ATTRSPINE_DATABASE_*`` / ``ATTRSPINE_SQL_TEMPLATE``."""
    from attrspine.backends.rdbms import RdbmsProvider, RowSetMapper, SQLQueryBuilder, rdbms_validator

    settings = settings or get_settings()
    connector_id = connector_id or settings.connector_id or "rdbms"
    provider = RdbmsProvider.from_url(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
    )
    return DataConnector(
        connector_id,
        provider=provider,
        builder=SQLQueryBuilder(settings.sql_template),
        mapper=RowSetMapper(),
        validator=rdbms_validator(provider),
        **_connector_kwargs(settings, connector_id, config),
    )


def create_storage_service(url: str) -> Any:
    """``memory://`` or ``redis://host:port/db`` storage service."""
    from attrspine.backends.storage import InMemoryStorageService, RedisStorageService

    scheme = url.split("://", 1)[0].lower()
    match scheme:
        case "memory":
            return InMemoryStorageService()
        case "redis" | "rediss" | "unix":
            return RedisStorageService(url)
        case _:
            raise ConfigurationError(f"Unsupported storage URL {url!r}, expected memory:// or redis://")


def create_storage_connector(
    settings: AttrSpineSettings | None = None,
    *,
    connector_id: str | None = None,
    config: ConnectorConfig | None = None,
    service: Any = None,
) -> DataConnector:
    """Storage connector from ``ATTRSPINE_STORAGE_*`` settings, or around an existing *service*."""
    from attrspine.backends.storage import JSONRecordMapper, StorageLookupBuilder, StorageProvider, storage_validator

    settings = settings or get_settings()
    connector_id = connector_id or settings.connector_id or "storage"
    if service is not None:
        provider = StorageProvider(service)
    else:
        url = settings.storage_url
        provider = StorageProvider(service_factory=lambda: create_storage_service(url))
    return DataConnector(
        connector_id,
        provider=provider,
        builder=StorageLookupBuilder(settings.storage_context_template, settings.storage_key_template),
        mapper=JSONRecordMapper(),
        validator=storage_validator(provider),
        **_connector_kwargs(settings, connector_id, config),
    )


_FACTORIES = {
    Backend.LDAP: create_ldap_connector,
    Backend.RDBMS: create_rdbms_connector,
    Backend.STORAGE: create_storage_connector,
}


def create_connector(
    backend: Backend | str,
    settings: AttrSpineSettings | None = None,
    **kwargs: Any,
) -> DataConnector:
    """Create a connector for *backend* (``ldap``, ``rdbms`` or ``storage``)."""
    try:
        key = Backend(backend.lower() if isinstance(backend, str) else backend)
    except ValueError:
        raise ConfigurationError(
            f"Unknown backend {backend!r}, expected one of {[b.value for b in Backend]}"
        ) from None
    return _FACTORIES[key](settings, **kwargs)


__all__ = [
    "Backend",
    "create_connector",
    "create_ldap_connector",
    "create_rdbms_connector",
    "create_storage_connector",
    "create_storage_service",
    "create_results_cache",
]
