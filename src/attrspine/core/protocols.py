"""
Canonical protocol definitions for the data connector contract.

This module is the single source of truth for the strategy interfaces a
``DataConnector`` is composed from. Backends never subclass a connector;
they provide objects matching these shapes.

Manifesto:
    Protocols define contracts without inheritance. They enable:
    - **Composition:** One orchestrator, many backends, no subclass tree
    - **Testability:** Any object matching the protocol works in tests
    - **Portability:** ldap3, SQLAlchemy and redis stay behind the seam

Architecture:
    ::

        protocols.py (YOU ARE HERE)
        ├── QueryBuilder        — context -> ExecutableQuery (pure, no I/O)
        ├── ExecutableQuery     — immutable query + cache_key, runs on a Connection
        ├── ConnectionProvider  — open/close lifecycle, acquire/release leases
        ├── ResultMapper        — RawResult -> AttributeMap
        └── Validator           — health probe returning Result[None]

    Data flow:
    ┌──────────────┐  build   ┌────────────────┐ execute ┌───────────┐  map   ┌──────────────┐
    │ Resolution   │ ───────> │ ExecutableQuery│ ──────> │ RawResult │ ─────> │ AttributeMap │
    │ Context      │          └────────────────┘    ▲    └───────────┘        └──────────────┘
    └──────────────┘                                │
                                     ConnectionProvider.acquire()/release()

Guardrails:
    ❌ DON'T: Keep a Connection inside an ExecutableQuery
    ✅ DO: Receive it as an argument to execute()

    ❌ DON'T: Return an unconsumed cursor/iterator as a RawResult
    ✅ DO: Materialize it, the connection is released before mapping

    ❌ DON'T: Raise from ConnectionProvider.release()
    ✅ DO: Log the failure and return

Tags:
    protocol, data-connector, strategy, composition, attribute-spine
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from attrspine.core.context import AttributeMap, ResolutionContext
    from attrspine.core.result import Result


@runtime_checkable
class ExecutableQuery(Protocol):
    """
    Immutable, backend-specific, ready-to-run query.

    ``cache_key`` is deterministic: two contexts yielding equal queries yield
    equal keys.
    """

    @property
    def cache_key(self) -> str:
        """Deterministic key identifying this query's result."""
        ...

    def execute(self, connection: Any, *, timeout: float | None = None) -> Any:
        """Run against a leased connection and return a materialized RawResult.

        Raises ExecutionError, or TimeoutError when *timeout* is exceeded.
        """
        ...


@runtime_checkable
class QueryBuilder(Protocol):
    """Turns a resolution context into an ExecutableQuery."""

    def build(self, context: ResolutionContext) -> ExecutableQuery:
        """Pure function of context and static configuration.

        Raises QueryConstructionError when the context is insufficient.
        """
        ...


@runtime_checkable
class ConnectionProvider(Protocol):
    """
    Acquisition and release of backend connections.

    The provider owns backend-wide resources (pools, clients) and has its own
    lifecycle, composed into but independent of the connector's.
    """

    @property
    def backend(self) -> str:
        """Short backend name used in logs and error context."""
        ...

    def open(self) -> None:
        """Prepare backend-wide resources. Idempotent."""
        ...

    def close(self) -> None:
        """Release backend-wide resources. Idempotent, never raises."""
        ...

    def acquire(self) -> Any:
        """Lease a connection. Raises ConnectionError."""
        ...

    def release(self, connection: Any) -> None:
        """Return a leased connection. Idempotent, never raises."""
        ...


@runtime_checkable
class ResultMapper(Protocol):
    """Converts a raw backend result into an AttributeMap."""

    def map(self, raw: Any) -> AttributeMap:
        """Zero matches map to an empty dict. Raises MappingError."""
        ...


@runtime_checkable
class Validator(Protocol):
    """Health check run at initialization and on demand."""

    def validate(self) -> Result[None]:
        """Ok(None) when healthy, Err(ValidationError) otherwise. Never raises."""
        ...


__all__ = [
    "ExecutableQuery",
    "QueryBuilder",
    "ConnectionProvider",
    "ResultMapper",
    "Validator",
]
