"""
Core primitives shared by every data connector.

Errors, the Result envelope, the strategy protocols, the resolution context,
structured logging, settings, the results cache and health reporting.

Backend-specific code lives in ``attrspine.backends``; the orchestrator in
``attrspine.connectors``.
"""

from attrspine.core.context import AttributeMap, ResolutionContext
from attrspine.core.errors import (
    ConfigurationError,
    ConnectionError,
    ConnectorError,
    ErrorCategory,
    ErrorContext,
    ExecutionError,
    MappingError,
    NoResultError,
    QueryConstructionError,
    ResolutionError,
    StateError,
    TimeoutError,
    ValidationError,
)
from attrspine.core.protocols import (
    ConnectionProvider,
    ExecutableQuery,
    QueryBuilder,
    ResultMapper,
    Validator,
)
from attrspine.core.result import Err, Ok, Result, partition_results, try_result

__all__ = [
    # Context
    "AttributeMap",
    "ResolutionContext",
    # Errors
    "ErrorCategory",
    "ErrorContext",
    "ConnectorError",
    "ConfigurationError",
    "ValidationError",
    "StateError",
    "ResolutionError",
    "QueryConstructionError",
    "ConnectionError",
    "ExecutionError",
    "TimeoutError",
    "MappingError",
    "NoResultError",
    # Protocols
    "QueryBuilder",
    "ExecutableQuery",
    "ConnectionProvider",
    "ResultMapper",
    "Validator",
    # Result
    "Ok",
    "Err",
    "Result",
    "try_result",
    "partition_results",
]
