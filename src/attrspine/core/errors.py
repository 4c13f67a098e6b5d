"""
Structured error types for attribute-spine data connectors.

Every failure a data connector can report is one of a small, closed set of
kinds. Backend bindings translate their native exceptions (ldap3, SQLAlchemy,
redis, JSON decoding) into these kinds at their boundary, so callers of a
connector never see a driver exception.

Each ConnectorError carries:
- **Category:** What kind of failure (query, connection, mapping, ...)
- **Retryable:** Whether the same call may succeed later (the framework itself
  never retries; the flag is advice for the orchestration layer)
- **Context:** connector id, backend, cache key, lifecycle state, extra metadata
- **Cause:** The driver exception, also set as ``__cause__``

Manifesto:
    - **Closed taxonomy:** One type per failure kind, shared by all backends
    - **No leaking drivers:** Native errors are wrapped, never re-raised bare
    - **Loggable:** ``to_dict()`` flattens an error into log fields

Hierarchy:
    ::

        ConnectorError
          ConfigurationError, ValidationError, StateError
          ResolutionError            raised by retrieve_attributes()
            QueryConstructionError, ConnectionError, MappingError, NoResultError
            ExecutionError
              TimeoutError

Examples:
    >>> err = QueryConstructionError("No value for 'principal'")
    >>> err.category
    <ErrorCategory.QUERY: 'QUERY'>
    >>> err.with_context(connector_id="myLDAP").context.connector_id
    'myLDAP'

    >>> isinstance(TimeoutError("slow"), ExecutionError)
    True

Guardrails:
    ❌ DON'T: Let ldap3/SQLAlchemy/redis exceptions escape a backend binding
    ✅ DO: Wrap them with the matching kind and pass ``cause=``

    ❌ DON'T: Return None to signal "no result"
    ✅ DO: Return an empty map, or raise NoResultError when policy says so

Tags:
    error-handling, exception-hierarchy, data-connector, attribute-resolution,
    attribute-spine
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Failure kinds. Categories map one-to-one onto the failure kinds of the connector
    contract, plus INTERNAL/UNKNOWN for bugs and foreign exceptions.
    """

    # Lifecycle / setup
    CONFIG = "CONFIG"             # Missing bindings, invalid settings
    VALIDATION = "VALIDATION"     # Health check failed
    STATE = "STATE"               # Operation outside its lifecycle state

    # Retrieval
    QUERY = "QUERY"               # Context insufficient for the query template
    CONNECTION = "CONNECTION"     # Unreachable backend, pool exhausted
    EXECUTION = "EXECUTION"       # Query rejected or failed
    TIMEOUT = "TIMEOUT"           # Query exceeded its deadline
    MAPPING = "MAPPING"           # Raw result shape not understood
    NO_RESULT = "NO_RESULT"       # Zero matches under no-result-is-error

    # Internal errors
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        connector_id: Identifier of the connector that failed
        backend: Backend kind ("ldap", "rdbms", "storage")
        cache_key: Cache key of the query being executed, if one was built
        state: Lifecycle state of the connector when the error occurred
        metadata: Additional key-value pairs
    """

    connector_id: str | None = None
    backend: str | None = None
    cache_key: str | None = None
    state: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Non-empty fields only."""
        result = {}
        for key in ["connector_id", "backend", "cache_key", "state"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ConnectorError(Exception):
    """
    Base exception for all data connector errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    ``raise MappingError("...")`` carries the right metadata without
    ceremony.

    Examples:
        >>> error = ConnectorError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> try:
        ...     raise OSError("socket closed")
        ... except OSError as e:
        ...     error = ConnectionError("LDAP server unreachable", cause=e)
        >>> error.__cause__
        OSError('socket closed')
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ConnectorError:
        """
        Fill context fields in place and return self; unknown keys go to ``metadata``.

        Usage:
            raise MappingError("bad row").with_context(
                connector_id="myDatabase", backend="rdbms"
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Log fields: ``log.warning("connector.validation_failed", **err.to_dict())``."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# LIFECYCLE ERRORS
# =============================================================================


class ConfigurationError(ConnectorError):
    """
    Missing or invalid connector bindings.

    Raised by ``initialize()``; fatal, never retryable.
    """

    default_category = ErrorCategory.CONFIG


class ValidationError(ConnectorError):
    """
    Backend unreachable or misconfigured, as reported by a Validator.

    Fatal at initialization only when the connector is fail-fast.
    """

    default_category = ErrorCategory.VALIDATION


class StateError(ConnectorError):
    """Operation invoked outside its valid lifecycle state."""

    default_category = ErrorCategory.STATE

    def __init__(self, message: str, *, state: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        if state is not None:
            self.context.state = state


# =============================================================================
# RESOLUTION ERRORS
# =============================================================================


class ResolutionError(ConnectorError):
    """
    Base for every failure of a single retrieval call.

    The orchestration layer is expected to treat any ResolutionError as
    "this connector contributed nothing", not as a failed request.
    """


class QueryConstructionError(ResolutionError):
    """The resolution context lacks data the query template requires."""

    default_category = ErrorCategory.QUERY

    def __init__(self, message: str, *, variable: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.variable = variable

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.variable:
            result["variable"] = self.variable
        return result


class ConnectionError(ResolutionError):  # noqa: A001
    """Connection acquisition failed or the pool was exhausted."""

    default_category = ErrorCategory.CONNECTION
    default_retryable = True


class ExecutionError(ResolutionError):
    """The backend rejected or failed the query."""

    default_category = ErrorCategory.EXECUTION


class TimeoutError(ExecutionError):  # noqa: A001
    """The query exceeded its configured deadline."""

    default_category = ErrorCategory.TIMEOUT
    default_retryable = True

    def __init__(self, message: str, *, timeout: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class MappingError(ResolutionError):
    """The raw backend result could not be interpreted."""

    default_category = ErrorCategory.MAPPING


class NoResultError(ResolutionError):
    """Zero matches, reported only when the no-result policy requires it."""

    default_category = ErrorCategory.NO_RESULT


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Retry advice for any exception; builtin socket errors and timeouts count as retryable."""
    if isinstance(error, ConnectorError):
        return error.retryable
    return isinstance(error, (builtins.ConnectionError, builtins.TimeoutError))


def categorize_error(error: BaseException) -> ErrorCategory:
    """Category of any exception; foreign ones are classified by builtin type."""
    if isinstance(error, ConnectorError):
        return error.category
    if isinstance(error, builtins.TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (builtins.ConnectionError, OSError)):
        return ErrorCategory.CONNECTION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ConnectorError",
    # Lifecycle
    "ConfigurationError",
    "ValidationError",
    "StateError",
    # Resolution
    "ResolutionError",
    "QueryConstructionError",
    "ConnectionError",
    "ExecutionError",
    "TimeoutError",
    "MappingError",
    "NoResultError",
    # Utilities
    "is_retryable",
    "categorize_error",
]
