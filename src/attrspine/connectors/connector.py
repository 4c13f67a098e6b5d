"""
DataConnector: the one orchestrator every backend is composed into.

Manifesto:
    Directory, relational and storage connectors all do the same thing:

        build query → acquire connection → execute → map result
        → apply no-result / validation policy

    That algorithm lives here exactly once. Backends contribute strategies
    (QueryBuilder, ConnectionProvider, ResultMapper, Validator), never a
    subclass, so lifecycle, error translation, caching and logging are
    identical for every store.

Architecture:
    ::

        DataConnector(connector_id, provider, builder, mapper, validator, config, cache)
            │
            ├── initialize()   UNINITIALIZED → INITIALIZING → READY | FAILED
            ├── validate()     Result[None], READY only
            ├── retrieve_attributes(ctx) → AttributeMap   (raises ResolutionError)
            ├── resolve(ctx)   → Result[AttributeMap]
            └── destroy()      any → DESTROYED (idempotent, closes provider)

        retrieve_attributes:
            builder.build(ctx) ──► cache hit? ──yes──► copy of cached map
                                        │ no
                                        ▼
                          with leased(provider) as conn:
                              raw = query.execute(conn, timeout)
                                        │   (connection released)
                                        ▼
                          mapper.map(raw) ──► cache ──► no-result policy

Guardrails:
    ❌ DON'T: Retry inside the connector
    ✅ DO: Surface ``retryable`` on the error and let the caller decide

    ❌ DON'T: Hold a connection while mapping
    ✅ DO: Materialize in ``execute`` and map after release

Tags:
    data-connector, orchestrator, composition, lifecycle, attribute-spine
"""

from __future__ import annotations

import threading
from typing import Any, Callable, TypeVar

from attrspine.core.cache import CacheBackend
from attrspine.core.context import AttributeMap, ResolutionContext, copy_attribute_map
from attrspine.core.errors import (
    ConfigurationError,
    ConnectorError,
    ExecutionError,
    MappingError,
    NoResultError,
    QueryConstructionError,
    ResolutionError,
    StateError,
    ValidationError,
)
from attrspine.core.hashing import results_cache_key
from attrspine.core.logging import get_logger
from attrspine.core.protocols import ConnectionProvider, ExecutableQuery, QueryBuilder, ResultMapper, Validator
from attrspine.core.result import Err, Ok, Result
from attrspine.core.timing import log_step
from attrspine.connectors.config import ConnectorConfig
from attrspine.connectors.lifecycle import ConnectorState, ValidatorState, _Lifecycle
from attrspine.connectors.providers import leased
from attrspine.connectors.validators import ConnectionValidator

T = TypeVar("T")

_BINDINGS = ("provider", "builder", "mapper", "validator", "cache")


class DataConnector:
    """
    Resolve attributes from one external store through injected strategies.

    Args:
        connector_id: Identifier used in logs, errors and cache keys
        provider: Connection acquisition and release
        builder: Resolution context to ExecutableQuery
        mapper: Raw result to AttributeMap
        validator: Health check; defaults to acquiring and releasing a connection
        config: Policy knobs, ``ConnectorConfig()`` by default
        cache: Optional results cache

    Example:
        >>> connector = DataConnector("myLDAP", provider=p, builder=b, mapper=m)
        >>> connector.initialize()
        >>> connector.retrieve_attributes(ResolutionContext(principal="alice"))
        {'uid': ['alice'], 'mail': ['alice@example.org']}
        >>> connector.destroy()
    """

    def __init__(
        self,
        connector_id: str,
        *,
        provider: ConnectionProvider | None = None,
        builder: QueryBuilder | None = None,
        mapper: ResultMapper | None = None,
        validator: Validator | None = None,
        config: ConnectorConfig | None = None,
        cache: CacheBackend | None = None,
    ):
        if not connector_id:
            raise ConfigurationError("connector_id must be a non-empty string")
        self._connector_id = connector_id
        self._provider = provider
        self._builder = builder
        self._mapper = mapper
        self._validator = validator
        self._cache = cache
        self._config = config or ConnectorConfig()

        self._lock = threading.RLock()
        self._revalidating = threading.Lock()
        self._lifecycle = _Lifecycle()
        self._log = get_logger(__name__).bind(connector_id=connector_id)

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def connector_id(self) -> str:
        return self._connector_id

    @property
    def backend(self) -> str | None:
        return getattr(self._provider, "backend", None)

    @property
    def state(self) -> ConnectorState:
        return self._lifecycle.state

    @property
    def config(self) -> ConnectorConfig:
        return self._config

    @property
    def degraded(self) -> bool:
        """True while READY but the last validation failed."""
        return self._lifecycle.degraded

    @property
    def validator_state(self) -> ValidatorState:
        return self._lifecycle.validator

    @property
    def provider(self) -> ConnectionProvider | None:
        return self._provider

    @property
    def builder(self) -> QueryBuilder | None:
        return self._builder

    @property
    def mapper(self) -> ResultMapper | None:
        return self._mapper

    @property
    def validator(self) -> Validator | None:
        return self._validator

    @property
    def cache(self) -> CacheBackend | None:
        return self._cache

    def __repr__(self) -> str:
        return f"DataConnector({self._connector_id!r}, backend={self.backend!r}, state={self.state.value})"

    # ------------------------------------------------------------------ #
    # Configuration (UNINITIALIZED only)
    # ------------------------------------------------------------------ #

    def _require_configurable(self, what: str) -> None:
        if self._lifecycle.state is not ConnectorState.UNINITIALIZED:
            raise StateError(
                f"Cannot change {what} of connector {self._connector_id!r} after initialize()",
                state=self._lifecycle.state.value,
            ).with_context(connector_id=self._connector_id)

    def configure(self, config: ConnectorConfig | None = None, **changes: Any) -> ConnectorConfig:
        """Replace the config, or update fields of the current one. Before initialize() only."""
        with self._lock:
            self._require_configurable("configuration")
            base = config or self._config
            if changes:
                base = ConnectorConfig.model_validate({**base.model_dump(), **changes})
            self._config = base
            return self._config

    def bind(self, **bindings: Any) -> DataConnector:
        """Set strategies (provider, builder, mapper, validator, cache). Before initialize() only."""
        unknown = set(bindings) - set(_BINDINGS)
        if unknown:
            raise ConfigurationError(f"Unknown connector binding(s): {', '.join(sorted(unknown))}")
        with self._lock:
            self._require_configurable("bindings")
            for name, value in bindings.items():
                setattr(self, f"_{name}", value)
        return self

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def initialize(self) -> None:
        """
        Check bindings, open the provider and validate.

        Raises:
            StateError: Not in UNINITIALIZED
            ConfigurationError: Bindings missing (state returns to UNINITIALIZED),
                provider failed to open, or validation failed on a fail-fast connector
                (state FAILED)
        """
        with self._lock:
            lifecycle = self._lifecycle
            if lifecycle.state is not ConnectorState.UNINITIALIZED:
                raise StateError(
                    f"initialize() requires state uninitialized, connector {self._connector_id!r} "
                    f"is {lifecycle.state.value}",
                    state=lifecycle.state.value,
                ).with_context(connector_id=self._connector_id)
            lifecycle.move(ConnectorState.INITIALIZING)

            missing = [name for name in ("provider", "builder", "mapper") if getattr(self, f"_{name}") is None]
            if missing:
                lifecycle.move(ConnectorState.UNINITIALIZED)
                raise ConfigurationError(
                    f"Connector {self._connector_id!r} is missing required binding(s): {', '.join(missing)}"
                ).with_context(connector_id=self._connector_id, missing=missing)

            if self._validator is None:
                self._validator = ConnectionValidator(self._provider)

            try:
                self._provider.open()
            except Exception as exc:
                _close_quietly(self._provider, self._log)
                lifecycle.move(ConnectorState.FAILED)
                self._log.error("connector.initialize_failed", reason="provider_open", error=str(exc))
                raise ConfigurationError(
                    f"Connector {self._connector_id!r} could not open its {self.backend} provider: {exc}",
                    cause=exc,
                ).with_context(connector_id=self._connector_id, backend=self.backend) from exc

            if self._cache is not None:
                self._cache.clear()

            outcome = self._run_validator()
            match outcome:
                case Ok():
                    lifecycle.move(ConnectorState.READY)
                    self._log.info("connector.initialized", backend=self.backend)
                case Err(error):
                    if self._config.fail_fast_initialize:
                        _close_quietly(self._provider, self._log)
                        lifecycle.move(ConnectorState.FAILED)
                        self._log.error("connector.initialize_failed", reason="validation", **error.to_dict())
                        raise ConfigurationError(
                            f"Connector {self._connector_id!r} failed validation: {error.message}",
                            cause=error,
                        ).with_context(connector_id=self._connector_id, backend=self.backend) from error
                    lifecycle.degraded = True
                    lifecycle.move(ConnectorState.READY)
                    self._log.warning("connector.degraded", backend=self.backend, **error.to_dict())

    def destroy(self) -> None:
        """Move to DESTROYED from any state and close the provider. Idempotent."""
        with self._lock:
            lifecycle = self._lifecycle
            if lifecycle.state is ConnectorState.DESTROYED:
                return
            previous = lifecycle.state
            lifecycle.move(ConnectorState.DESTROYED)
            lifecycle.degraded = False
            if self._provider is not None and previous in (ConnectorState.INITIALIZING, ConnectorState.READY):
                _close_quietly(self._provider, self._log)
            self._log.info("connector.destroyed", previous_state=previous.value)

    def __enter__(self) -> DataConnector:
        if self.state is ConnectorState.UNINITIALIZED:
            self.initialize()
        return self

    def __exit__(self, *args: Any) -> None:
        self.destroy()

    # ------------------------------------------------------------------ #
    # Validation
    # ------------------------------------------------------------------ #

    def _run_validator(self) -> Result[None]:
        try:
            outcome = self._validator.validate()
        except Exception as exc:
            outcome = Err(ValidationError(f"Validator raised: {exc}", cause=exc))
        if isinstance(outcome, Err) and not isinstance(outcome.error, ValidationError):
            outcome = Err(ValidationError(f"Validation failed: {outcome.error}", cause=outcome.error))
        if isinstance(outcome, Err):
            outcome.error.with_context(connector_id=self._connector_id, backend=self.backend)

        with self._lock:
            previous = self._lifecycle.validator
            if isinstance(outcome, Ok):
                self._lifecycle.validator = ValidatorState.passed(previous)
            else:
                self._lifecycle.validator = ValidatorState.failed(previous, outcome.error)
        return outcome

    def validate(self) -> Result[None]:
        """
        Run the validator now.

        Returns ``Err(StateError)`` outside READY. Success clears degraded mode;
        failure enters it.
        """
        state = self._lifecycle.state
        if state is not ConnectorState.READY:
            return Err(
                StateError(
                    f"validate() requires state ready, connector {self._connector_id!r} is {state.value}",
                    state=state.value,
                ).with_context(connector_id=self._connector_id)
            )
        outcome = self._run_validator()
        with self._lock:
            was_degraded = self._lifecycle.degraded
            self._lifecycle.degraded = outcome.is_err()
        if outcome.is_ok() and was_degraded:
            self._log.info("connector.recovered", backend=self.backend)
        elif outcome.is_err():
            self._log.warning("connector.validation_failed", **outcome.error.to_dict())
        return outcome

    def _revalidate_if_degraded(self) -> None:
        if not (self._lifecycle.degraded and self._config.revalidate_when_degraded):
            return
        # one revalidation at a time; concurrent retrievals proceed without waiting
        if not self._revalidating.acquire(blocking=False):
            return
        try:
            if self._lifecycle.degraded:
                self.validate()
        finally:
            self._revalidating.release()

    # ------------------------------------------------------------------ #
    # Retrieval
    # ------------------------------------------------------------------ #

    def _require_ready(self) -> None:
        state = self._lifecycle.state
        if state is not ConnectorState.READY:
            raise StateError(
                f"Connector {self._connector_id!r} is {state.value}, retrieval requires ready",
                state=state.value,
            ).with_context(connector_id=self._connector_id, backend=self.backend)

    def _step(self, kind: type[ResolutionError], step: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except ResolutionError:
            raise
        except ConnectorError as exc:
            raise kind(f"{step} failed: {exc.message}", cause=exc) from exc
        except Exception as exc:
            raise kind(f"Unexpected error during {step}: {exc}", cause=exc) from exc

    def _cache_get(self, key: str) -> AttributeMap | None:
        try:
            cached = self._cache.get(key)
        except Exception as exc:  # noqa: BLE001
            self._log.warning("connector.cache_unavailable", operation="get", error=str(exc))
            return None
        return None if cached is None else copy_attribute_map(cached)

    def _cache_put(self, key: str, attributes: AttributeMap) -> None:
        try:
            self._cache.set(key, copy_attribute_map(attributes), ttl_seconds=self._config.results_cache_ttl)
        except Exception as exc:  # noqa: BLE001
            self._log.warning("connector.cache_unavailable", operation="set", error=str(exc))

    def retrieve_attributes(self, context: ResolutionContext) -> AttributeMap:
        """
        Resolve attributes for *context*.

        Returns a fresh AttributeMap owned by the caller; ``{}`` means no match.

        Raises:
            StateError: Not READY
            QueryConstructionError, ConnectionError, ExecutionError, TimeoutError,
            MappingError, NoResultError
        """
        self._require_ready()
        self._revalidate_if_degraded()

        query: ExecutableQuery | None = None
        try:
            with log_step("connector.retrieve", log=self._log, principal=context.principal) as timer:
                query = self._step(QueryConstructionError, "query construction", self._builder.build, context)
                attributes = self._retrieve(query, timer)
                if not attributes:
                    timer.add_metric("attributes", 0)
                    if self._config.no_result_is_error:
                        raise NoResultError(f"No result for principal {context.principal!r}")
                    return {}
                timer.add_metric("attributes", len(attributes))
                return attributes
        except ConnectorError as exc:
            raise exc.with_context(
                connector_id=self._connector_id,
                backend=self.backend,
                cache_key=query.cache_key if query is not None else None,
            )

    def _retrieve(self, query: ExecutableQuery, timer: Any) -> AttributeMap:
        cache_key = None
        if self._cache is not None:
            cache_key = results_cache_key(self._connector_id, query.cache_key)
            cached = self._cache_get(cache_key)
            if cached is not None:
                timer.add_metric("cache", "hit")
                return cached
            timer.add_metric("cache", "miss")

        with leased(self._provider, log=self._log) as connection:
            raw = self._step(
                ExecutionError,
                "query execution",
                query.execute,
                connection,
                timeout=self._config.query_timeout,
            )
        attributes = self._step(MappingError, "result mapping", self._mapper.map, raw)

        if cache_key is not None:
            self._cache_put(cache_key, attributes)
        return attributes

    def resolve(self, context: ResolutionContext) -> Result[AttributeMap]:
        """Result-returning form of ``retrieve_attributes``."""
        try:
            return Ok(self.retrieve_attributes(context))
        except (ResolutionError, StateError) as exc:
            return Err(exc)

    def invalidate_cache(self) -> None:
        """Drop every cached result."""
        if self._cache is not None:
            self._cache.clear()
            self._log.info("connector.cache_invalidated")


def _close_quietly(provider: ConnectionProvider, log: Any) -> None:
    """Close *provider*, logging instead of raising on failure."""
    try:
        provider.close()
    except Exception as exc:  # noqa: BLE001
        log.warning("connector.provider_close_failed", error_type=type(exc).__name__, error=str(exc))


__all__ = ["DataConnector"]
