"""Tests for attrspine.connectors.connector.DataConnector."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from pydantic import ValidationError as ConfigValidationError
from structlog.testing import capture_logs

from attrspine.connectors import ConnectorConfig, ConnectorState, DataConnector
from attrspine.core.cache import InMemoryCache
from attrspine.core.context import ResolutionContext
from attrspine.core.errors import (
    ConfigurationError,
    ConnectionError,
    ExecutionError,
    MappingError,
    NoResultError,
    QueryConstructionError,
    StateError,
    TimeoutError,
    ValidationError,
)
from attrspine.core.hashing import results_cache_key
from attrspine.core.result import Err, Ok
from tests._support import assert_attributes
from tests._support.fakes import FakeBuilder, FakeMapper, FakeProvider, PooledFakeProvider, ScriptedValidator


def _connector(provider: FakeProvider | None = None, **kwargs) -> DataConnector:
    kwargs.setdefault("builder", FakeBuilder())
    kwargs.setdefault("mapper", FakeMapper())
    return DataConnector(
        "fakeDirectory",
        provider=provider or FakeProvider({"uid=alice": [{"uid": ["alice"]}]}),
        **kwargs,
    )


class BrokenCache(InMemoryCache):
    def get(self, key):
        raise OSError("cache down")

    def set(self, key, value, *, ttl_seconds=None):
        raise OSError("cache down")


# =============================================================================
# Lifecycle
# =============================================================================


class TestInitialize:
    """Test initialize() transitions."""

    def test_starts_uninitialized(self, connector):
        assert connector.state is ConnectorState.UNINITIALIZED
        assert connector.backend == "fake"

    def test_ready_after_initialize(self, connector, fake_provider):
        connector.initialize()
        assert connector.state is ConnectorState.READY
        assert not connector.degraded
        assert fake_provider.opened == 1
        assert connector.validator_state.ok is True
        assert connector.validator_state.attempts == 1

    def test_default_validator_leases_a_connection(self, connector, fake_provider):
        connector.initialize()
        assert fake_provider.acquired == 1
        assert fake_provider.released == 1

    def test_initialize_twice_raises_state_error(self, ready_connector):
        with pytest.raises(StateError):
            ready_connector.initialize()
        assert ready_connector.state is ConnectorState.READY

    def test_empty_connector_id_rejected(self):
        with pytest.raises(ConfigurationError):
            DataConnector("")

    @pytest.mark.parametrize("missing", ["provider", "builder", "mapper"])
    def test_missing_binding_returns_to_uninitialized(self, missing):
        bindings = {"provider": FakeProvider(), "builder": FakeBuilder(), "mapper": FakeMapper()}
        bindings[missing] = None
        connector = DataConnector("c", **bindings)
        with pytest.raises(ConfigurationError) as exc_info:
            connector.initialize()
        assert missing in exc_info.value.message
        assert connector.state is ConnectorState.UNINITIALIZED

    def test_missing_binding_can_be_supplied_later(self):
        connector = DataConnector("c", provider=FakeProvider(), builder=FakeBuilder())
        with pytest.raises(ConfigurationError):
            connector.initialize()
        connector.bind(mapper=FakeMapper())
        connector.initialize()
        assert connector.state is ConnectorState.READY

    def test_provider_open_failure_fails_connector(self):
        provider = FakeProvider()
        provider.open_error = OSError("no route to host")
        connector = _connector(provider)
        with pytest.raises(ConfigurationError) as exc_info:
            connector.initialize()
        assert connector.state is ConnectorState.FAILED
        assert isinstance(exc_info.value.cause, OSError)
        assert provider.closed == 1

    def test_failed_validation_fail_fast(self):
        provider = FakeProvider()
        connector = _connector(
            provider,
            validator=ScriptedValidator(False),
            config=ConnectorConfig(fail_fast_initialize=True),
        )
        with pytest.raises(ConfigurationError) as exc_info:
            connector.initialize()
        assert connector.state is ConnectorState.FAILED
        assert isinstance(exc_info.value.cause, ValidationError)
        assert provider.closed == 1
        builder = connector.builder
        with pytest.raises(StateError):
            connector.retrieve_attributes(ResolutionContext(principal="alice"))
        assert provider.acquired == 0
        assert builder.calls == 0

    def test_failed_validation_lenient_is_degraded_ready(self):
        connector = _connector(validator=ScriptedValidator(False))
        with capture_logs() as logs:
            connector.initialize()
        assert connector.state is ConnectorState.READY
        assert connector.degraded
        assert connector.validator_state.ok is False
        assert any(entry["event"] == "connector.degraded" for entry in logs)

    def test_validator_raising_counts_as_failure(self):
        class Exploding:
            def validate(self):
                raise RuntimeError("probe crashed")

        connector = _connector(validator=Exploding(), config=ConnectorConfig(fail_fast_initialize=True))
        with pytest.raises(ConfigurationError):
            connector.initialize()

    def test_initialize_clears_cache(self):
        cache = InMemoryCache()
        cache.set("stale", {"uid": ["old"]})
        _connector(cache=cache).initialize()
        assert cache.size() == 0


class TestDestroy:
    """Test destroy() from every state."""

    def test_destroy_ready_closes_provider(self, ready_connector, fake_provider):
        ready_connector.destroy()
        assert ready_connector.state is ConnectorState.DESTROYED
        assert fake_provider.closed == 1

    def test_destroy_is_idempotent(self, ready_connector, fake_provider):
        ready_connector.destroy()
        ready_connector.destroy()
        assert fake_provider.closed == 1

    def test_destroy_uninitialized_does_not_touch_provider(self, connector, fake_provider):
        connector.destroy()
        assert connector.state is ConnectorState.DESTROYED
        assert fake_provider.closed == 0

    def test_destroy_failed_does_not_close_again(self):
        provider = FakeProvider()
        provider.open_error = OSError("down")
        connector = _connector(provider)
        with pytest.raises(ConfigurationError):
            connector.initialize()
        connector.destroy()
        assert connector.state is ConnectorState.DESTROYED
        assert provider.closed == 1

    def test_close_failure_is_logged_not_raised(self, ready_connector, fake_provider):
        def boom():
            raise OSError("close failed")

        fake_provider.close = boom
        with capture_logs() as logs:
            ready_connector.destroy()
        assert ready_connector.state is ConnectorState.DESTROYED
        assert any(entry["event"] == "connector.provider_close_failed" for entry in logs)

    def test_initialize_after_destroy_raises(self, connector):
        connector.destroy()
        with pytest.raises(StateError):
            connector.initialize()

    def test_context_manager(self, connector, fake_provider, alice):
        with connector as active:
            assert active.state is ConnectorState.READY
            assert active.retrieve_attributes(alice) == {"uid": ["alice"], "mail": ["alice@example.org"]}
        assert connector.state is ConnectorState.DESTROYED
        assert fake_provider.closed == 1


class TestConfigure:
    """Configuration is frozen once initialize() starts."""

    def test_configure_changes_before_initialize(self, connector):
        config = connector.configure(no_result_is_error=True)
        assert config.no_result_is_error is True
        assert connector.config.no_result_is_error is True

    def test_configure_replaces_config(self, connector):
        connector.configure(ConnectorConfig(query_timeout=1.5))
        assert connector.config.query_timeout == 1.5

    def test_configure_rejects_unknown_field(self, connector):
        with pytest.raises(ConfigValidationError):
            connector.configure(not_a_field=True)

    def test_config_is_frozen(self, connector):
        with pytest.raises(ConfigValidationError):
            connector.config.no_result_is_error = True

    def test_configure_after_initialize_raises(self, ready_connector):
        with pytest.raises(StateError):
            ready_connector.configure(no_result_is_error=True)

    def test_bind_after_initialize_raises(self, ready_connector):
        with pytest.raises(StateError):
            ready_connector.bind(mapper=FakeMapper())

    def test_bind_unknown_binding(self, connector):
        with pytest.raises(ConfigurationError):
            connector.bind(transport=object())


# =============================================================================
# Validation
# =============================================================================


class TestValidate:
    def test_validate_outside_ready_is_state_error(self, connector):
        outcome = connector.validate()
        assert isinstance(outcome, Err)
        assert isinstance(outcome.error, StateError)

    def test_validate_ok(self, ready_connector):
        assert ready_connector.validate() == Ok(None)
        assert ready_connector.validator_state.attempts == 2

    def test_failed_validate_enters_degraded(self):
        connector = _connector(validator=ScriptedValidator(True, False))
        connector.initialize()
        outcome = connector.validate()
        assert outcome.is_err()
        assert isinstance(outcome.error, ValidationError)
        assert outcome.error.context.connector_id == "fakeDirectory"
        assert connector.degraded

    def test_non_validation_error_is_normalized(self):
        class ReturnsMapping:
            def validate(self):
                return Err(MappingError("odd"))

        connector = _connector(validator=ReturnsMapping())
        connector.initialize()
        assert isinstance(connector.validate().error, ValidationError)


class TestDegradedMode:
    """A degraded connector keeps serving and revalidates on retrieval."""

    def test_degraded_connector_still_retrieves(self, alice):
        connector = _connector(validator=ScriptedValidator(False))
        connector.initialize()
        assert connector.retrieve_attributes(alice) == {"uid": ["alice"]}

    def test_recovers_on_retrieval(self, alice):
        validator = ScriptedValidator(False, True)
        connector = _connector(validator=validator)
        connector.initialize()
        with capture_logs() as logs:
            connector.retrieve_attributes(alice)
        assert not connector.degraded
        assert validator.calls == 2
        assert any(entry["event"] == "connector.recovered" for entry in logs)

    def test_healthy_connector_does_not_revalidate(self, alice):
        validator = ScriptedValidator(True)
        connector = _connector(validator=validator)
        connector.initialize()
        connector.retrieve_attributes(alice)
        assert validator.calls == 1

    def test_revalidation_can_be_disabled(self, alice):
        validator = ScriptedValidator(False, True)
        connector = _connector(validator=validator, config=ConnectorConfig(revalidate_when_degraded=False))
        connector.initialize()
        connector.retrieve_attributes(alice)
        assert connector.degraded
        assert validator.calls == 1


# =============================================================================
# Retrieval
# =============================================================================


class TestRetrieveAttributes:
    def test_before_initialize_raises_state_error(self, connector, alice):
        with pytest.raises(StateError):
            connector.retrieve_attributes(alice)

    def test_after_destroy_raises_state_error(self, ready_connector, alice):
        ready_connector.destroy()
        with pytest.raises(StateError):
            ready_connector.retrieve_attributes(alice)

    def test_returns_mapped_attributes(self, ready_connector, alice):
        assert_attributes(
            ready_connector.retrieve_attributes(alice),
            {"uid": ["alice"], "mail": ["alice@example.org"]},
        )

    def test_timeout_passed_to_execute(self, fake_provider, alice):
        connector = _connector(fake_provider, config=ConnectorConfig(query_timeout=2.5))
        connector.initialize()
        connector.retrieve_attributes(alice)
        assert fake_provider.connections[-1].executed == [("uid=alice", 2.5)]

    def test_one_release_per_acquire(self, ready_connector, fake_provider, alice):
        for _ in range(3):
            ready_connector.retrieve_attributes(alice)
        assert fake_provider.acquired == fake_provider.released == 4

    def test_caller_owns_result(self, ready_connector, alice):
        first = ready_connector.retrieve_attributes(alice)
        first["uid"].append("mallory")
        assert ready_connector.retrieve_attributes(alice)["uid"] == ["alice"]


class TestNoResultPolicy:
    def test_no_match_returns_empty_map(self, ready_connector):
        assert ready_connector.retrieve_attributes(ResolutionContext(principal="nobody")) == {}

    def test_no_match_raises_when_configured(self):
        connector = _connector(config=ConnectorConfig(no_result_is_error=True))
        connector.initialize()
        with pytest.raises(NoResultError) as exc_info:
            connector.retrieve_attributes(ResolutionContext(principal="nobody"))
        assert exc_info.value.context.cache_key == "uid=nobody"

    def test_cached_empty_result_still_applies_policy(self):
        provider = FakeProvider()
        connector = _connector(
            provider,
            cache=InMemoryCache(),
            config=ConnectorConfig(no_result_is_error=True),
        )
        connector.initialize()
        for _ in range(2):
            with pytest.raises(NoResultError):
                connector.retrieve_attributes(ResolutionContext(principal="nobody"))
        assert provider.executions == 1


class TestErrorTranslation:
    """Failures surface as the right kind, with connector context, and leases are balanced."""

    def test_query_construction_error_does_no_io(self, fake_provider, alice):
        connector = _connector(fake_provider, builder=FakeBuilder(QueryConstructionError("no mail")))
        connector.initialize()
        acquired = fake_provider.acquired
        with pytest.raises(QueryConstructionError) as exc_info:
            connector.retrieve_attributes(alice)
        assert fake_provider.acquired == acquired
        assert exc_info.value.context.connector_id == "fakeDirectory"
        assert exc_info.value.context.cache_key is None

    def test_unexpected_builder_exception_is_query_error(self, alice):
        connector = _connector(builder=FakeBuilder(KeyError("mail")))
        connector.initialize()
        with pytest.raises(QueryConstructionError) as exc_info:
            connector.retrieve_attributes(alice)
        assert isinstance(exc_info.value.cause, KeyError)

    def test_acquire_failure_is_connection_error_without_release(self, fake_provider, alice):
        connector = _connector(fake_provider)
        connector.initialize()
        released = fake_provider.released
        fake_provider.acquire_error = OSError("refused")
        with pytest.raises(ConnectionError) as exc_info:
            connector.retrieve_attributes(alice)
        assert fake_provider.released == released
        assert exc_info.value.retryable
        assert exc_info.value.context.backend == "fake"
        assert exc_info.value.context.cache_key == "uid=alice"

    def test_execute_failure_releases(self, ready_connector, fake_provider, alice):
        fake_provider.execute_error = RuntimeError("syntax error")
        with pytest.raises(ExecutionError):
            ready_connector.retrieve_attributes(alice)
        assert fake_provider.acquired == fake_provider.released

    def test_timeout_kind_preserved(self, ready_connector, fake_provider, alice):
        fake_provider.execute_error = TimeoutError("slow", timeout=1.0)
        with pytest.raises(TimeoutError):
            ready_connector.retrieve_attributes(alice)
        assert fake_provider.acquired == fake_provider.released

    def test_mapping_failure_after_release(self, fake_provider, alice):
        connector = _connector(fake_provider, mapper=FakeMapper(ValueError("unexpected shape")))
        connector.initialize()
        acquired, released = fake_provider.acquired, fake_provider.released
        with pytest.raises(MappingError):
            connector.retrieve_attributes(alice)
        assert fake_provider.acquired - acquired == 1
        assert fake_provider.released - released == 1

    def test_release_failure_is_swallowed(self, ready_connector, fake_provider, alice):
        def broken_release(connection):
            raise OSError("already closed")

        fake_provider.release = broken_release
        with capture_logs() as logs:
            assert ready_connector.retrieve_attributes(alice)["uid"] == ["alice"]
        assert any(entry["event"] == "connection.release_failed" for entry in logs)

    def test_error_logged_with_step_event(self, ready_connector, fake_provider, alice):
        fake_provider.execute_error = RuntimeError("boom")
        with capture_logs() as logs:
            with pytest.raises(ExecutionError):
                ready_connector.retrieve_attributes(alice)
        assert any(entry["event"] == "connector.retrieve.error" for entry in logs)


class TestResultsCache:
    def test_cache_hit_skips_io(self, fake_provider, alice):
        cache = InMemoryCache()
        connector = _connector(fake_provider, cache=cache)
        connector.initialize()
        acquired = fake_provider.acquired
        first = connector.retrieve_attributes(alice)
        second = connector.retrieve_attributes(alice)
        assert first == second
        assert fake_provider.acquired - acquired == 1
        assert cache.exists(results_cache_key("fakeDirectory", "uid=alice"))

    def test_cached_value_is_copied(self, alice):
        connector = _connector(cache=InMemoryCache())
        connector.initialize()
        connector.retrieve_attributes(alice)["uid"].append("mallory")
        assert connector.retrieve_attributes(alice) == {"uid": ["alice"]}

    def test_invalidate_cache(self, fake_provider, alice):
        connector = _connector(fake_provider, cache=InMemoryCache())
        connector.initialize()
        connector.retrieve_attributes(alice)
        connector.invalidate_cache()
        connector.retrieve_attributes(alice)
        assert fake_provider.executions == 2

    def test_ttl_from_config(self, alice):
        cache = InMemoryCache(default_ttl_seconds=None)
        calls = []
        original_set = cache.set

        def recording_set(key, value, *, ttl_seconds=None):
            calls.append(ttl_seconds)
            original_set(key, value, ttl_seconds=ttl_seconds)

        cache.set = recording_set
        connector = _connector(cache=cache, config=ConnectorConfig(results_cache_ttl=30))
        connector.initialize()
        connector.retrieve_attributes(alice)
        assert calls == [30]

    def test_broken_cache_falls_back_to_backend(self, fake_provider, alice):
        connector = _connector(fake_provider, cache=BrokenCache())
        connector.initialize()
        with capture_logs() as logs:
            assert connector.retrieve_attributes(alice)["uid"] == ["alice"]
        events = [entry["event"] for entry in logs]
        assert events.count("connector.cache_unavailable") == 2


class TestResolve:
    def test_ok(self, ready_connector, alice):
        assert ready_connector.resolve(alice) == Ok({"uid": ["alice"], "mail": ["alice@example.org"]})

    def test_err_for_resolution_error(self, ready_connector, fake_provider, alice):
        fake_provider.acquire_error = OSError("down")
        outcome = ready_connector.resolve(alice)
        assert isinstance(outcome, Err)
        assert isinstance(outcome.error, ConnectionError)

    def test_err_for_state_error(self, connector, alice):
        assert isinstance(connector.resolve(alice).error, StateError)


class TestConcurrentRetrieval:
    def test_parallel_callers_share_one_connector(self):
        rows = {f"uid=user{i}": [{"uid": [f"user{i}"]}] for i in range(8)}
        provider = PooledFakeProvider(rows, size=3)
        connector = _connector(provider)
        connector.initialize()
        baseline = provider.acquired
        principals = [f"user{i % 8}" for i in range(200)]

        def retrieve(principal):
            return connector.retrieve_attributes(ResolutionContext(principal=principal))

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(retrieve, principals))

        assert results == [{"uid": [principal]} for principal in principals]
        assert provider.acquired - baseline == len(principals)
        assert provider.acquired == provider.released
        assert provider.max_leased <= 3
        assert provider.pool.leased_count == 0
        connector.destroy()
        assert provider.closed == 1

    def test_parallel_callers_with_results_cache(self):
        provider = PooledFakeProvider({"uid=alice": [{"uid": ["alice"]}]}, size=2)
        connector = _connector(provider, cache=InMemoryCache())
        connector.initialize()

        def retrieve(_):
            return connector.retrieve_attributes(ResolutionContext(principal="alice"))

        with ThreadPoolExecutor(max_workers=6) as executor:
            results = list(executor.map(retrieve, range(60)))

        assert all(result == {"uid": ["alice"]} for result in results)
        assert len({id(result) for result in results}) == len(results)
        assert provider.acquired == provider.released
        connector.destroy()
