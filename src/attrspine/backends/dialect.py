"""Per-dialect statement timeouts for the relational binding.

A query timeout has to be enforced by the database, not by the client,
otherwise a slow statement keeps holding its pooled connection. Each
supported SQLAlchemy dialect gets a ``StatementTimeout`` implementation that
knows how to arm a deadline on a connection and how to recognize the error
the database raises when the deadline fires.

Architecture::

    ┌──────────────────────────────────────────────────────────────────┐
    │ with timeout_for(conn).limit(conn, 2.0):                         │
    │     conn.execute(text(sql), params)                              │
    └──────────────────────────────────────────────────────────────────┘
                              │
            ┌─────────────────┼──────────────────┬───────────────────┐
            ▼                 ▼                  ▼                   ▼
    ┌──────────────┐ ┌──────────────────┐ ┌────────────────┐ ┌──────────────┐
    │ sqlite       │ │ postgresql       │ │ mysql/mariadb  │ │ other        │
    │ progress     │ │ SET LOCAL        │ │ SET SESSION    │ │ elapsed time │
    │ handler      │ │ statement_timeout│ │ max_execution_ │ │ checked after│
    │ "interrupted"│ │ sqlstate 57014   │ │ time, errno    │ │ the statement│
    │              │ │                  │ │ 3024           │ │              │
    └──────────────┘ └──────────────────┘ └────────────────┘ └──────────────┘

Examples:
    >>> timeout_for_dialect("sqlite").name
    'sqlite'
    >>> timeout_for_dialect("mssql").enforced_by_server
    False

Tags:
    dialect, sql, timeout, sqlalchemy, attribute-spine
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError


@runtime_checkable
class StatementTimeout(Protocol):
    """Statement timeout contract for one database dialect."""

    @property
    def name(self) -> str:
        ...

    @property
    def enforced_by_server(self) -> bool:
        """False when the deadline can only be checked after the statement returns."""
        ...

    def limit(self, connection: Connection, timeout: float | None) -> Any:
        """Context manager arming *timeout* (seconds) for statements run inside it."""
        ...

    def is_timeout(self, error: DBAPIError) -> bool:
        """True if *error* is this dialect's statement-timeout error."""
        ...


class SQLiteTimeout:
    """SQLite: a progress handler interrupts the statement once the deadline passes."""

    name = "sqlite"
    enforced_by_server = True
    instructions_per_check = 1000

    @contextmanager
    def limit(self, connection: Connection, timeout: float | None) -> Iterator[None]:
        if not timeout:
            yield
            return
        dbapi_connection = connection.connection.dbapi_connection
        deadline = time.monotonic() + timeout
        dbapi_connection.set_progress_handler(
            lambda: 1 if time.monotonic() > deadline else 0, self.instructions_per_check
        )
        try:
            yield
        finally:
            dbapi_connection.set_progress_handler(None, self.instructions_per_check)

    def is_timeout(self, error: DBAPIError) -> bool:
        return "interrupted" in str(error.orig).lower()


class PostgreSQLTimeout:
    """PostgreSQL: ``SET LOCAL statement_timeout`` scoped to the current transaction."""

    name = "postgresql"
    enforced_by_server = True

    @contextmanager
    def limit(self, connection: Connection, timeout: float | None) -> Iterator[None]:
        if timeout:
            connection.exec_driver_sql(f"SET LOCAL statement_timeout = {max(1, int(timeout * 1000))}")
        yield

    def is_timeout(self, error: DBAPIError) -> bool:
        orig = error.orig
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return code == "57014"


class MySQLTimeout:
    """MySQL: ``max_execution_time`` for the session, reset afterwards."""

    name = "mysql"
    enforced_by_server = True

    @contextmanager
    def limit(self, connection: Connection, timeout: float | None) -> Iterator[None]:
        if not timeout:
            yield
            return
        connection.exec_driver_sql(f"SET SESSION max_execution_time = {max(1, int(timeout * 1000))}")
        try:
            yield
        finally:
            connection.exec_driver_sql("SET SESSION max_execution_time = 0")

    def is_timeout(self, error: DBAPIError) -> bool:
        args = getattr(error.orig, "args", ())
        return bool(args) and args[0] == 3024


class ElapsedTimeout:
    """Any other dialect: no server-side limit, the caller compares elapsed time."""

    enforced_by_server = False

    def __init__(self, name: str):
        self.name = name

    @contextmanager
    def limit(self, connection: Connection, timeout: float | None) -> Iterator[None]:
        yield

    def is_timeout(self, error: DBAPIError) -> bool:
        return False


_TIMEOUTS: dict[str, StatementTimeout] = {
    "sqlite": SQLiteTimeout(),
    "postgresql": PostgreSQLTimeout(),
    "mysql": MySQLTimeout(),
    "mariadb": MySQLTimeout(),
}


def timeout_for_dialect(name: str) -> StatementTimeout:
    """Statement timeout strategy for a SQLAlchemy dialect name."""
    key = name.lower()
    return _TIMEOUTS.get(key) or ElapsedTimeout(key)


def timeout_for(connection: Connection) -> StatementTimeout:
    """Statement timeout strategy for a live SQLAlchemy connection."""
    return timeout_for_dialect(connection.dialect.name)


def register_timeout(name: str, timeout: StatementTimeout) -> None:
    """Register a statement timeout strategy for a custom dialect."""
    _TIMEOUTS[name.lower()] = timeout


__all__ = [
    "StatementTimeout",
    "SQLiteTimeout",
    "PostgreSQLTimeout",
    "MySQLTimeout",
    "ElapsedTimeout",
    "timeout_for_dialect",
    "timeout_for",
    "register_timeout",
]
