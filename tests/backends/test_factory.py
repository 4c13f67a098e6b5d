"""Tests for attrspine.factory (connectors assembled from settings)."""

from __future__ import annotations

import pytest
from ldap3.core.exceptions import LDAPCommunicationError
from sqlalchemy import create_engine, text

from attrspine.backends.ldap import LDAPProvider, LDAPSearchBuilder
from attrspine.backends.rdbms import RdbmsProvider
from attrspine.backends.storage import InMemoryStorageService, RedisStorageService, StorageProvider
from attrspine.connectors import ConnectorConfig, ConnectorState
from attrspine.core.cache import InMemoryCache, RedisCache
from attrspine.core.context import ResolutionContext
from attrspine.core.errors import ConfigurationError, ConnectionError
from attrspine.core.settings import AttrSpineSettings
from attrspine.factory import (
    Backend,
    create_connector,
    create_results_cache,
    create_storage_connector,
    create_storage_service,
)


class TestCreateConnector:
    def test_storage_backend(self):
        connector = create_connector("storage", AttrSpineSettings())
        assert connector.connector_id == "storage"
        assert isinstance(connector.provider, StorageProvider)
        assert connector.state is ConnectorState.UNINITIALIZED

    def test_backend_enum_and_case(self):
        assert create_connector(Backend.STORAGE, AttrSpineSettings()).backend == "storage"
        assert create_connector("STORAGE", AttrSpineSettings()).backend == "storage"

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            create_connector("mongodb", AttrSpineSettings())

    def test_connector_id_from_settings(self):
        connector = create_connector("storage", AttrSpineSettings(connector_id="myStorage"))
        assert connector.connector_id == "myStorage"

    def test_connector_id_argument_wins(self):
        settings = AttrSpineSettings(connector_id="myStorage")
        assert create_connector("storage", settings, connector_id="consent").connector_id == "consent"

    def test_policy_from_settings(self):
        connector = create_connector("storage", AttrSpineSettings(no_result_is_error=True, query_timeout=1.5))
        assert connector.config.no_result_is_error is True
        assert connector.config.query_timeout == 1.5

    def test_explicit_config(self):
        config = ConnectorConfig(fail_fast_initialize=True)
        assert create_connector("storage", AttrSpineSettings(), config=config).config is config

    def test_uses_global_settings(self, monkeypatch):
        monkeypatch.setenv("ATTRSPINE_CONNECTOR_ID", "fromEnv")
        assert create_connector("storage").connector_id == "fromEnv"


class TestLdapConnector:
    def test_requires_base_dn(self):
        with pytest.raises(ConfigurationError, match="ATTRSPINE_LDAP_BASE_DN"):
            create_connector("ldap", AttrSpineSettings())

    def test_wiring(self):
        settings = AttrSpineSettings(
            ldap_url="ldap://directory.example.org",
            ldap_base_dn="ou=people,dc=example,dc=org",
            ldap_return_attributes="uid,mail",
        )
        connector = create_connector("ldap", settings)
        assert connector.connector_id == "ldap"
        assert isinstance(connector.provider, LDAPProvider)
        assert isinstance(connector.builder, LDAPSearchBuilder)
        query = connector.builder.build(ResolutionContext(principal="alice"))
        assert query.base_dn == "ou=people,dc=example,dc=org"
        assert query.attributes == ("uid", "mail")

    def test_fractional_query_timeout_reaches_a_real_socket(self, silent_directory):
        settings = AttrSpineSettings(
            ldap_url=silent_directory,
            ldap_base_dn="ou=people,dc=example,dc=org",
            ldap_connect_timeout=2.0,
            query_timeout=0.5,
        )
        provider = create_connector("ldap", settings).provider
        provider.open()
        with pytest.raises(ConnectionError) as exc_info:
            provider.acquire()
        assert isinstance(exc_info.value.cause, LDAPCommunicationError)
        assert "timed out" in exc_info.value.message
        provider.close()


class TestRdbmsConnector:
    def test_sqlite_file(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'people.db'}"
        engine = create_engine(url)
        with engine.begin() as conn:
            conn.execute(text("CREATE TABLE people (uid TEXT, mail TEXT)"))
            conn.execute(text("INSERT INTO people VALUES ('alice', 'a@x.org')"))
        engine.dispose()

        connector = create_connector("rdbms", AttrSpineSettings(database_url=url))
        assert isinstance(connector.provider, RdbmsProvider)
        with connector:
            attributes = connector.retrieve_attributes(ResolutionContext(principal="alice"))
        assert attributes == {"uid": ["alice"], "mail": ["a@x.org"]}

    def test_empty_database_initializes(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'empty.db'}"
        connector = create_connector("rdbms", AttrSpineSettings(database_url=url))
        with connector:
            assert connector.state is ConnectorState.READY


class TestStorageConnector:
    def test_memory_service_created_on_initialize(self):
        connector = create_connector("storage", AttrSpineSettings())
        assert connector.provider.service is None
        with connector:
            assert isinstance(connector.provider.service, InMemoryStorageService)
            assert connector.retrieve_attributes(ResolutionContext(principal="alice")) == {}

    def test_existing_service(self):
        service = InMemoryStorageService()
        service.create("attributes", "alice", '{"mail": "a@x.org"}')
        with create_storage_connector(AttrSpineSettings(), service=service) as connector:
            assert connector.retrieve_attributes(ResolutionContext(principal="alice")) == {"mail": ["a@x.org"]}

    def test_templates_from_settings(self):
        settings = AttrSpineSettings(storage_context_template="consent:{requester}", storage_key_template="{principal}")
        connector = create_connector("storage", settings)
        query = connector.builder.build(ResolutionContext(principal="alice", requester="sp1"))
        assert query.cache_key == "consent:sp1!alice"


class TestCreateStorageService:
    def test_memory(self):
        assert isinstance(create_storage_service("memory://"), InMemoryStorageService)

    def test_redis(self):
        assert isinstance(create_storage_service("redis://localhost:6379/1"), RedisStorageService)

    def test_unsupported_scheme(self):
        with pytest.raises(ConfigurationError, match="Unsupported storage URL"):
            create_storage_service("etcd://localhost:2379")


class TestCreateResultsCache:
    def test_disabled_without_ttl(self):
        assert create_results_cache(AttrSpineSettings(), "ldap") is None

    def test_in_memory(self):
        cache = create_results_cache(AttrSpineSettings(results_cache_ttl=60, results_cache_size=10), "ldap")
        assert isinstance(cache, InMemoryCache)

    def test_redis(self):
        settings = AttrSpineSettings(results_cache_ttl=60, redis_cache_url="redis://localhost:6379/2")
        cache = create_results_cache(settings, "myLDAP")
        assert isinstance(cache, RedisCache)
        assert cache._key("k") == "attrspine:myLDAP:k"

    def test_connector_gets_cache(self):
        connector = create_connector("storage", AttrSpineSettings(results_cache_ttl=60))
        assert isinstance(connector.cache, InMemoryCache)
