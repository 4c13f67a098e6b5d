"""
Directory (LDAP) binding.

Strategies for a DataConnector backed by an LDAP directory through ldap3:

- ``LDAPSearchBuilder`` — renders a filter template with RFC 4515 escaping
- ``LDAPSearch``        — the ExecutableQuery; its cache key is the filter
- ``LDAPProvider``      — bounded pool of bound ldap3 connections
- ``LDAPEntryMapper``   — merges the attributes of every returned entry
- ``ldap_validator``    — acquire + root DSE read

Examples:
    >>> builder = LDAPSearchBuilder("ou=people,dc=example,dc=org", "(&(uid={principal}))")
    >>> query = builder.build(ResolutionContext(principal="alice"))
    >>> query.filter, query.cache_key
    ('(&(uid=alice))', '(&(uid=alice))')

    Values are escaped before substitution, so a principal of ``*)(uid=*``
    becomes ``\\2a\\29\\28uid=\\2a`` inside the filter instead of widening it.

Guardrails:
    ❌ DON'T: Hand ldap3's live ``conn.response`` to the mapper
    ✅ DO: Copy it into a ``SearchResult`` before the connection is released

Tags:
    ldap, directory, ldap3, data-connector, attribute-spine
"""

from __future__ import annotations

import builtins
import math
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from ldap3 import ALL_ATTRIBUTES, ANONYMOUS, AUTO_BIND_NONE, BASE, LEVEL, NONE, SIMPLE, SUBTREE, Connection, Server
from ldap3.core.exceptions import (
    LDAPCommunicationError,
    LDAPException,
    LDAPResponseTimeoutError,
    LDAPTimeLimitExceededResult,
)
from ldap3.utils.conv import escape_filter_chars

from attrspine.connectors.providers import BoundedPool
from attrspine.connectors.templates import QueryTemplate
from attrspine.connectors.validators import ConnectionValidator
from attrspine.core.context import AttributeMap, ResolutionContext
from attrspine.core.errors import ConfigurationError, ConnectionError, ExecutionError, MappingError, TimeoutError
from attrspine.core.logging import get_logger

logger = get_logger(__name__)

BACKEND = "ldap"

SCOPES = {
    "base": BASE,
    "one": LEVEL,
    "onelevel": LEVEL,
    "level": LEVEL,
    "sub": SUBTREE,
    "subtree": SUBTREE,
}

RESULT_SUCCESS = 0
RESULT_TIME_LIMIT_EXCEEDED = 3


def escape_filter_value(value: str) -> str:
    """RFC 4515 escaping of a value substituted into a search filter."""
    return escape_filter_chars(value)


# ------------------------------------------------------------------ #
# Raw result
# ------------------------------------------------------------------ #


def _as_values(value: Any) -> tuple[Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        return (value,)
    return tuple(v for v in value if v is not None)


@dataclass(frozen=True)
class LDAPEntry:
    """One directory entry, detached from its connection."""

    dn: str
    attributes: Mapping[str, tuple[Any, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        frozen = {name: _as_values(values) for name, values in dict(self.attributes).items()}
        object.__setattr__(self, "attributes", MappingProxyType(frozen))


@dataclass(frozen=True)
class SearchResult:
    """Materialized search response: entries in server order."""

    entries: tuple[LDAPEntry, ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def from_response(cls, response: Sequence[Mapping[str, Any]] | None) -> SearchResult:
        """Copy the ``searchResEntry`` items of an ldap3 ``conn.response``."""
        entries = []
        for item in response or ():
            if item.get("type", "searchResEntry") != "searchResEntry":
                continue
            entries.append(LDAPEntry(dn=item.get("dn", ""), attributes=dict(item.get("attributes") or {})))
        return cls(entries=tuple(entries))


def _whole_seconds(seconds: float | None) -> int | None:
    """ldap3 packs the socket receive timeout as an integer; round up."""
    if not seconds:
        return None
    return max(1, math.ceil(seconds))


# ------------------------------------------------------------------ #
# Query
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class LDAPSearch:
    """A rendered directory search. The filter identifies the result."""

    base_dn: str
    filter: str
    scope: str = SUBTREE
    attributes: tuple[str, ...] | None = None
    size_limit: int = 0

    @property
    def cache_key(self) -> str:
        return self.filter

    def execute(self, connection: Connection, *, timeout: float | None = None) -> SearchResult:
        time_limit = max(1, math.ceil(timeout)) if timeout else 0
        try:
            connection.search(
                search_base=self.base_dn,
                search_filter=self.filter,
                search_scope=self.scope,
                attributes=list(self.attributes) if self.attributes else ALL_ATTRIBUTES,
                size_limit=self.size_limit,
                time_limit=time_limit,
            )
        except (LDAPTimeLimitExceededResult, LDAPResponseTimeoutError) as exc:
            raise TimeoutError(f"LDAP search exceeded {timeout}s", timeout=timeout, cause=exc) from exc
        except LDAPCommunicationError as exc:
            if isinstance(exc, builtins.TimeoutError):
                raise TimeoutError(f"LDAP search exceeded {timeout}s: {exc}", timeout=timeout, cause=exc) from exc
            raise ConnectionError(f"LDAP connection failed during search: {exc}", cause=exc) from exc
        except LDAPException as exc:
            raise ExecutionError(f"LDAP search failed: {exc}", cause=exc) from exc

        result = connection.result or {}
        code = result.get("result", RESULT_SUCCESS)
        if code == RESULT_TIME_LIMIT_EXCEEDED:
            raise TimeoutError(f"LDAP search exceeded {timeout}s", timeout=timeout)
        if code != RESULT_SUCCESS:
            raise ExecutionError(
                f"LDAP search failed: {result.get('description', code)} {result.get('message', '')}".rstrip()
            ).with_context(ldap_result=code)
        return SearchResult.from_response(connection.response)


class LDAPSearchBuilder:
    """
    Render ``LDAPSearch`` objects from a filter template.

    Args:
        base_dn: Search base
        filter_template: ``str.format`` template, e.g. ``"(uid={principal})"``
        scope: ``base``, ``one`` or ``sub``
        attributes: Attributes to return, all user attributes when omitted
        size_limit: Server-side entry limit, 0 for none
    """

    def __init__(
        self,
        base_dn: str,
        filter_template: str,
        *,
        scope: str = "sub",
        attributes: Iterable[str] | None = None,
        size_limit: int = 0,
    ):
        if scope.lower() not in SCOPES:
            raise ConfigurationError(f"Unknown LDAP search scope {scope!r}, expected one of {sorted(SCOPES)}")
        self.base_dn = base_dn
        self.template = QueryTemplate(filter_template, escape=escape_filter_value)
        self.scope = SCOPES[scope.lower()]
        self.attributes = tuple(attributes) if attributes else None
        self.size_limit = size_limit

    def build(self, context: ResolutionContext) -> LDAPSearch:
        return LDAPSearch(
            base_dn=self.base_dn,
            filter=self.template.render(context),
            scope=self.scope,
            attributes=self.attributes,
            size_limit=self.size_limit,
        )


# ------------------------------------------------------------------ #
# Provider
# ------------------------------------------------------------------ #


class LDAPProvider:
    """
    Pool of bound ldap3 connections to one directory server.

    Connections are opened lazily on first acquire; ``open()`` only prepares
    the server description. ``connection_factory`` replaces the default
    bind logic (tests, SASL binds).
    """

    backend = BACKEND

    def __init__(
        self,
        url: str,
        *,
        bind_dn: str | None = None,
        password: str | None = None,
        use_starttls: bool = False,
        pool_size: int = 4,
        acquire_timeout: float = 5.0,
        connect_timeout: float = 5.0,
        receive_timeout: float | None = None,
        connection_factory: Callable[[], Connection] | None = None,
    ):
        self.url = url
        self.bind_dn = bind_dn
        self._password = password
        self.use_starttls = use_starttls
        self.pool_size = pool_size
        self.acquire_timeout = acquire_timeout
        self.connect_timeout = connect_timeout
        self.receive_timeout = receive_timeout
        self._connection_factory = connection_factory
        self._server: Server | None = None
        self._pool: BoundedPool[Connection] | None = None

    def __repr__(self) -> str:
        return f"LDAPProvider({self.url!r}, bind_dn={self.bind_dn!r}, pool_size={self.pool_size})"

    @property
    def pool(self) -> BoundedPool[Connection] | None:
        return self._pool

    def open(self) -> None:
        if self._pool is not None and not self._pool.closed:
            return
        if self._connection_factory is None:
            self._server = Server(self.url, connect_timeout=self.connect_timeout, get_info=NONE)
        self._pool = BoundedPool(
            self._connection_factory or self._connect,
            self._unbind,
            is_alive=self._is_alive,
            size=self.pool_size,
            acquire_timeout=self.acquire_timeout,
            name="ldap.pool",
        )
        logger.debug("ldap.pool.opened", url=self.url, size=self.pool_size)

    def _connect(self) -> Connection:
        connection = Connection(
            self._server,
            user=self.bind_dn,
            password=self._password,
            authentication=SIMPLE if self.bind_dn else ANONYMOUS,
            auto_bind=AUTO_BIND_NONE,
            read_only=True,
            receive_timeout=_whole_seconds(self.receive_timeout),
            raise_exceptions=False,
        )
        try:
            if self.use_starttls:
                connection.open()
                connection.start_tls()
            bound = connection.bind()
        except LDAPException as exc:
            raise ConnectionError(f"LDAP server {self.url} unreachable: {exc}", cause=exc) from exc
        if not bound:
            description = (connection.result or {}).get("description", "unknown error")
            self._unbind(connection)
            raise ConnectionError(f"LDAP bind to {self.url} as {self.bind_dn or 'anonymous'} failed: {description}")
        return connection

    @staticmethod
    def _is_alive(connection: Connection) -> bool:
        return not connection.closed and bool(connection.bound)

    @staticmethod
    def _unbind(connection: Connection) -> None:
        connection.unbind()

    def acquire(self) -> Connection:
        if self._pool is None:
            raise ConnectionError("LDAP provider is not open")
        return self._pool.acquire()

    def release(self, connection: Connection) -> None:
        if self._pool is not None:
            self._pool.release(connection)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            logger.debug("ldap.pool.closed", url=self.url)


# ------------------------------------------------------------------ #
# Mapper
# ------------------------------------------------------------------ #


class LDAPEntryMapper:
    """
    Merge the attributes of all entries, in entry order.

    Args:
        lowercase_attribute_names: Normalize attribute names to lower case
        aliases: Directory attribute name → attribute id (after lower-casing)
        multiple_results_is_error: More than one entry raises MappingError
    """

    def __init__(
        self,
        *,
        lowercase_attribute_names: bool = False,
        aliases: Mapping[str, str] | None = None,
        multiple_results_is_error: bool = False,
    ):
        self.lowercase_attribute_names = lowercase_attribute_names
        self.aliases = dict(aliases or {})
        self.multiple_results_is_error = multiple_results_is_error

    def map(self, raw: SearchResult | Sequence[Mapping[str, Any]]) -> AttributeMap:
        if isinstance(raw, list):
            raw = SearchResult.from_response(raw)
        if not isinstance(raw, SearchResult):
            raise MappingError(f"Expected SearchResult, got {type(raw).__name__}")
        if self.multiple_results_is_error and len(raw.entries) > 1:
            dns = ", ".join(entry.dn for entry in raw.entries[:5])
            raise MappingError(f"Search returned {len(raw.entries)} entries, at most one allowed: {dns}")

        attributes: AttributeMap = {}
        for entry in raw.entries:
            for name, values in entry.attributes.items():
                if not values:
                    continue
                normalized = name.lower() if self.lowercase_attribute_names else name
                attributes.setdefault(self.aliases.get(normalized, normalized), []).extend(values)
        return attributes


# ------------------------------------------------------------------ #
# Validator
# ------------------------------------------------------------------ #


def _read_root_dse(connection: Connection) -> bool:
    connection.search("", "(objectClass=*)", search_scope=BASE, attributes=["namingContexts"])
    return (connection.result or {}).get("result", RESULT_SUCCESS) == RESULT_SUCCESS


def ldap_validator(provider: LDAPProvider) -> ConnectionValidator:
    """Default validator: acquire a bound connection and read the root DSE."""
    return ConnectionValidator(provider, probe=_read_root_dse, name="root DSE read")


__all__ = [
    "LDAPEntry",
    "SearchResult",
    "LDAPSearch",
    "LDAPSearchBuilder",
    "LDAPProvider",
    "LDAPEntryMapper",
    "escape_filter_value",
    "ldap_validator",
]
