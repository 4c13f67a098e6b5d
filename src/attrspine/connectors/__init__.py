"""
The connector orchestrator and its supporting pieces.

``DataConnector`` implements the retrieval algorithm once; backends plug in
strategies from ``attrspine.backends``.
"""

from attrspine.connectors.config import ConnectorConfig
from attrspine.connectors.connector import DataConnector
from attrspine.connectors.lifecycle import ConnectorState, ValidatorState
from attrspine.connectors.providers import BoundedPool, leased
from attrspine.connectors.templates import QueryTemplate
from attrspine.connectors.validators import CallableValidator, ConnectionValidator, NullValidator

__all__ = [
    "DataConnector",
    "ConnectorConfig",
    "ConnectorState",
    "ValidatorState",
    "QueryTemplate",
    "leased",
    "BoundedPool",
    "ConnectionValidator",
    "CallableValidator",
    "NullValidator",
]
