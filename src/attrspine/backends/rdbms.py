"""
Relational (SQL) binding.

Strategies for a DataConnector backed by any database SQLAlchemy can reach:

- ``SQLQueryBuilder``  — binds context variables as named parameters
  (``:principal``, ``:mail``); values are never spliced into SQL text
- ``SQLQuery``         — the ExecutableQuery; runs ``text(sql)`` and
  materializes a ``RowSet``
- ``RdbmsProvider``    — wraps a SQLAlchemy ``Engine`` and its pool
- ``RowSetMapper``     — column-per-row accumulation into an AttributeMap
- ``rdbms_validator``  — acquire + ``SELECT 1``

Column-per-row accumulation: every column becomes an attribute whose values
are that column's non-null values in row order.

Examples:
    >>> builder = SQLQueryBuilder("SELECT uid, mail FROM people WHERE uid = :principal")
    >>> query = builder.build(ResolutionContext(principal="alice"))
    >>> query.params
    (('principal', 'alice'),)
    >>> RowSetMapper().map(RowSet(columns=("uid", "mail"), rows=(("alice", "a@x.org"),)))
    {'uid': ['alice'], 'mail': ['a@x.org']}

Tags:
    rdbms, sql, sqlalchemy, data-connector, attribute-spine
"""

from __future__ import annotations

import json
import re
import threading
import time
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from attrspine.backends.dialect import timeout_for
from attrspine.connectors.templates import lookup_variable
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

BACKEND = "rdbms"

# Same rule SQLAlchemy's text() uses to find bind parameters.
_BIND_PARAM = re.compile(r"(?<![:\w\x5c]):(\w+)(?!:)", re.UNICODE)


# ------------------------------------------------------------------ #
# Raw result
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RowSet:
    """Materialized result set: column names plus rows in driver order."""

    columns: tuple[str, ...]
    rows: tuple[tuple[Any, ...], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "rows", tuple(tuple(row) for row in self.rows))

    def __len__(self) -> int:
        return len(self.rows)


# ------------------------------------------------------------------ #
# Query
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class SQLQuery:
    """A SQL statement plus its bound parameters, sorted by name."""

    sql: str
    params: tuple[tuple[str, Any], ...] = ()
    expanding: frozenset[str] = field(default_factory=frozenset)

    @property
    def cache_key(self) -> str:
        return f"{self.sql}|{json.dumps(dict(self.params), sort_keys=True, default=str)}"

    def statement(self) -> Any:
        clause = text(self.sql)
        if self.expanding:
            clause = clause.bindparams(*(bindparam(name, expanding=True) for name in sorted(self.expanding)))
        return clause

    def execute(self, connection: Connection, *, timeout: float | None = None) -> RowSet:
        statement_timeout = timeout_for(connection)
        params = {name: list(value) if name in self.expanding else value for name, value in self.params}
        started = time.monotonic()
        try:
            with statement_timeout.limit(connection, timeout):
                result = connection.execute(self.statement(), params)
                if not result.returns_rows:
                    raise ExecutionError("SQL statement returned no result set")
                rows = RowSet(columns=tuple(result.keys()), rows=tuple(tuple(row) for row in result.all()))
        except DBAPIError as exc:
            if timeout and statement_timeout.is_timeout(exc):
                raise TimeoutError(
                    f"SQL query exceeded {timeout}s", timeout=timeout, cause=exc
                ) from exc
            if exc.connection_invalidated:
                raise ConnectionError(f"Database connection lost: {exc.orig}", cause=exc) from exc
            raise ExecutionError(f"SQL query failed: {exc.orig}", cause=exc) from exc
        except SQLAlchemyError as exc:
            raise ExecutionError(f"SQL query failed: {exc}", cause=exc) from exc

        elapsed = time.monotonic() - started
        if timeout and not statement_timeout.enforced_by_server and elapsed > timeout:
            raise TimeoutError(f"SQL query took {elapsed:.3f}s, limit {timeout}s", timeout=timeout)
        return rows


class SQLQueryBuilder:
    """
    Build ``SQLQuery`` objects from a parameterized SQL template.

    Every ``:name`` in the SQL is bound from the context: ``principal``,
    ``requester``, ``issuer`` or an upstream attribute id (first value).
    Names listed in ``expanding`` bind all values of the attribute, for
    ``WHERE grp IN :groups``.
    """

    def __init__(self, sql: str, *, expanding: Collection[str] = ()):
        if not sql or not sql.strip():
            raise ConfigurationError("SQL template must not be empty")
        self.sql = sql
        self.expanding = frozenset(expanding)
        self.parameters = tuple(dict.fromkeys(_BIND_PARAM.findall(sql)))

    def build(self, context: ResolutionContext) -> SQLQuery:
        variables = context.variables()
        params: dict[str, Any] = {}
        for name in self.parameters:
            if name in self.expanding:
                params[name] = self._all_values(variables, name)
            else:
                params[name] = lookup_variable(variables, name)
        return SQLQuery(
            sql=self.sql,
            params=tuple(sorted(params.items())),
            expanding=frozenset(name for name in self.expanding if name in params),
        )

    @staticmethod
    def _all_values(variables: Mapping[str, Any], name: str) -> tuple[Any, ...]:
        if name not in variables:
            raise QueryConstructionError(f"No value for SQL parameter {name!r}", variable=name)
        value = variables[name]
        values = value if isinstance(value, tuple) else (value,)
        if not values:
            raise QueryConstructionError(f"Attribute {name!r} has no values", variable=name)
        return values

    def __repr__(self) -> str:
        return f"SQLQueryBuilder({self.sql!r})"


# ------------------------------------------------------------------ #
# Provider
# ------------------------------------------------------------------ #


def create_rdbms_engine(
    url: str,
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    pool_timeout: float | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine; pool parameters are ignored for SQLite."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        return create_engine(url, echo=echo, **kwargs)

    pool_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow
    if pool_timeout is not None:
        pool_kwargs["pool_timeout"] = pool_timeout
    return create_engine(url, echo=echo, **pool_kwargs, **kwargs)


class RdbmsProvider:
    """
    ConnectionProvider over a SQLAlchemy ``Engine``.

    Either pass an engine (owned by the caller, never disposed here) or an
    engine factory called by ``open()`` (the engine is then disposed by
    ``close()``).
    """

    backend = BACKEND

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        engine_factory: Callable[[], Engine] | None = None,
    ):
        if (engine is None) == (engine_factory is None):
            raise ConfigurationError("RdbmsProvider needs exactly one of engine or engine_factory")
        self._engine = engine
        self._engine_factory = engine_factory
        self._owns_engine = engine is None
        self._leased: set[int] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> RdbmsProvider:
        return cls(engine_factory=lambda: create_rdbms_engine(url, **engine_kwargs))

    @property
    def engine(self) -> Engine | None:
        return self._engine

    def open(self) -> None:
        if self._engine is None:
            self._engine = self._engine_factory()
            logger.debug("rdbms.engine.created", dialect=self._engine.dialect.name)

    def acquire(self) -> Connection:
        if self._engine is None:
            raise ConnectionError("Database provider is not open")
        try:
            connection = self._engine.connect()
        except PoolTimeoutError as exc:
            raise ConnectionError(f"Database pool exhausted: {exc}", cause=exc) from exc
        except SQLAlchemyError as exc:
            raise ConnectionError(f"Database unreachable: {exc}", cause=exc) from exc
        with self._lock:
            self._leased.add(id(connection))
        return connection

    def release(self, connection: Connection) -> None:
        with self._lock:
            if id(connection) not in self._leased:
                return
            self._leased.discard(id(connection))
        try:
            # returns the DBAPI connection to the pool, rolling back
            connection.close()
        except SQLAlchemyError as exc:
            logger.warning("rdbms.release_failed", error=str(exc))

    def close(self) -> None:
        if self._engine is not None and self._owns_engine:
            self._engine.dispose()
            self._engine = None
            logger.debug("rdbms.engine.disposed")


# ------------------------------------------------------------------ #
# Mapper
# ------------------------------------------------------------------ #


class RowSetMapper:
    """
    Map a ``RowSet`` column-per-row.

    Args:
        aliases: Column name → attribute id
        column_types: Column name → converter applied to each non-null value
        multiple_results_is_error: More than one row raises MappingError
    """

    def __init__(
        self,
        *,
        aliases: Mapping[str, str] | None = None,
        column_types: Mapping[str, Callable[[Any], Any]] | None = None,
        multiple_results_is_error: bool = False,
    ):
        self.aliases = dict(aliases or {})
        self.column_types = dict(column_types or {})
        self.multiple_results_is_error = multiple_results_is_error

    def map(self, raw: RowSet) -> AttributeMap:
        if not isinstance(raw, RowSet):
            raise MappingError(f"Expected RowSet, got {type(raw).__name__}")
        if self.multiple_results_is_error and len(raw.rows) > 1:
            raise MappingError(f"Query returned {len(raw.rows)} rows, at most one allowed")

        width = len(raw.columns)
        for position, row in enumerate(raw.rows):
            if len(row) != width:
                raise MappingError(f"Row {position} has {len(row)} values for {width} columns")

        attributes: AttributeMap = {}
        for index, column in enumerate(raw.columns):
            convert = self.column_types.get(column)
            values = []
            for row in raw.rows:
                value = row[index]
                if value is None:
                    continue
                if convert is not None:
                    try:
                        value = convert(value)
                    except Exception as exc:
                        raise MappingError(
                            f"Column {column!r}: cannot convert {value!r}: {exc}", cause=exc
                        ) from exc
                values.append(value)
            if values:
                attributes.setdefault(self.aliases.get(column, column), []).extend(values)
        return attributes


# ------------------------------------------------------------------ #
# Validator
# ------------------------------------------------------------------ #


def _select_one(connection: Connection) -> bool:
    return connection.execute(text("SELECT 1")).scalar() == 1


def rdbms_validator(provider: RdbmsProvider) -> ConnectionValidator:
    """Default validator: acquire a connection and run ``SELECT 1``."""
    return ConnectionValidator(provider, probe=_select_one, name="SELECT 1")


__all__ = [
    "RowSet",
    "SQLQuery",
    "SQLQueryBuilder",
    "RdbmsProvider",
    "RowSetMapper",
    "create_rdbms_engine",
    "rdbms_validator",
]
