"""
structlog setup shared by the connector, the backend bindings and the CLI.

Every connector logger is bound with ``connector_id``; events are dotted
snake-case names (``connector.initialized``, ``ldap.pool.closed``). Output
goes to stderr so the CLI's stdout stays parseable.

JSON output renames ``timestamp`` and ``level`` to their ECS names
(``@timestamp``, ``log.level``) and stamps ``service.name``::

    {"event": "connector.retrieve.end", "connector_id": "myLDAP",
     "duration_ms": 4.2, "attributes": 3, "service.name": "idp",
     "log.level": "info", "@timestamp": "..."}

Tags:
    logging, structlog, ecs, attribute-spine
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog._config import BoundLoggerLazyProxy
from structlog.types import EventDict, Processor, WrappedLogger


def _service_stamper(service: str) -> Processor:
    def stamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", service)
        return event_dict

    return stamp


def _ecs_field_names(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "attrspine",
) -> None:
    """Configure structlog (and the stdlib root logger used by ldap3/SQLAlchemy).

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines when True, colored console when False,
            JSON unless stderr is a terminal when None
        service: Value for the ``service.name`` field
    """
    numeric_level = getattr(logging, level.upper())
    if json_format is None:
        json_format = not sys.stderr.isatty()

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _service_stamper(service),
    ]
    if json_format:
        processors += [_ecs_field_names, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Bound logger carrying ``logger=name``; works with any logger factory."""
    if name is None:
        return structlog.get_logger()
    return BoundLoggerLazyProxy(None, initial_values={"logger": name}, logger_factory_args=())


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind *fields* into every log line emitted inside the block, then restore.

    Example:
        with log_context(principal="alice", requester="https://sp.example.org"):
            connector.retrieve_attributes(ctx)
    """
    tokens = structlog.contextvars.bind_contextvars(**fields)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


__all__ = ["configure_logging", "get_logger", "log_context"]
