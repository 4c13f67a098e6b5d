"""
attribute-spine: data connectors for identity attribute resolution.

Given a per-request ``ResolutionContext``, a ``DataConnector`` queries one
external identity store (LDAP directory, relational database or key/value
storage service) and returns a normalized ``AttributeMap``.

Examples:
    >>> from attrspine import DataConnector, ResolutionContext
    >>> from attrspine.backends.rdbms import RdbmsProvider, RowSetMapper, SQLQueryBuilder
    >>> connector = DataConnector(
    ...     "myDatabase",
    ...     provider=RdbmsProvider(engine),
    ...     builder=SQLQueryBuilder("SELECT uid, mail FROM people WHERE uid = :principal"),
    ...     mapper=RowSetMapper(),
    ... )
    >>> connector.initialize()
    >>> connector.retrieve_attributes(ResolutionContext(principal="alice"))
    {'uid': ['alice'], 'mail': ['alice@example.org']}
"""

__version__ = "0.1.0"

from attrspine.connectors import ConnectorConfig, ConnectorState, DataConnector
from attrspine.core import (
    AttributeMap,
    ConnectorError,
    Err,
    Ok,
    ResolutionContext,
    ResolutionError,
    Result,
)

__all__ = [
    "__version__",
    "DataConnector",
    "ConnectorConfig",
    "ConnectorState",
    "ResolutionContext",
    "AttributeMap",
    "ConnectorError",
    "ResolutionError",
    "Ok",
    "Err",
    "Result",
]
