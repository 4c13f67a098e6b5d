"""
Query template rendering.

Templates use Python ``str.format`` fields resolved against
``ResolutionContext.variables()``:

    ``{principal}``, ``{requester}``, ``{issuer}``  the scalar context fields
    ``{mail}``                                    first value of upstream attribute ``mail``
    ``{mail[1]}``                                 second value of ``mail``

Every substituted value goes through the template's ``escape`` function
(LDAP filter escaping for directory searches, identity for storage keys).
Rendering is all-or-nothing: a missing variable, an attribute without
values, an out-of-range index or malformed braces raise
``QueryConstructionError`` and nothing is returned.

Examples:
    >>> from attrspine.core.context import ResolutionContext
    >>> QueryTemplate("(&(uid={principal}))").render(ResolutionContext(principal="alice"))
    '(&(uid=alice))'
"""

from __future__ import annotations

import string
from collections.abc import Callable, Mapping
from typing import Any

from attrspine.core.context import ResolutionContext
from attrspine.core.errors import QueryConstructionError

Escape = Callable[[str], str]


def _identity(value: str) -> str:
    return value


def lookup_variable(variables: Mapping[str, Any], name: str, *, index: int = 0) -> Any:
    """
    Resolve one template variable to a single value.

    Scalars are returned as-is; upstream attributes (tuples of values) yield
    the value at *index*.
    """
    if name not in variables:
        raise QueryConstructionError(f"No value for template variable {name!r}", variable=name)
    value = variables[name]
    if not isinstance(value, tuple):
        return value
    if not value:
        raise QueryConstructionError(f"Attribute {name!r} has no values", variable=name)
    try:
        return value[index]
    except IndexError:
        raise QueryConstructionError(
            f"Attribute {name!r} has {len(value)} value(s), index {index} requested",
            variable=name,
        ) from None


class _TemplateFormatter(string.Formatter):
    def __init__(self, escape: Escape):
        super().__init__()
        self._escape = escape

    def get_value(self, key: int | str, args: Any, kwargs: Mapping[str, Any]) -> Any:
        if isinstance(key, int):
            raise QueryConstructionError(
                f"Positional field {{{key}}} is not supported, name the variable"
            )
        if key not in kwargs:
            raise QueryConstructionError(f"No value for template variable {key!r}", variable=key)
        return kwargs[key]

    def get_field(self, field_name: str, args: Any, kwargs: Mapping[str, Any]) -> Any:
        head = field_name.split("[", 1)[0]
        if "." in head:
            raise QueryConstructionError(
                f"Attribute access in field {{{field_name}}} is not supported", variable=head
            )
        if field_name == head:
            return lookup_variable(kwargs, head), head
        try:
            obj, first = super().get_field(field_name, args, kwargs)
        except (IndexError, KeyError, TypeError) as exc:
            raise QueryConstructionError(
                f"Cannot resolve template field {{{field_name}}}: {exc}", variable=head, cause=exc
            ) from exc
        return obj, first

    def format_field(self, value: Any, format_spec: str) -> str:
        return self._escape(super().format_field(value, format_spec))


class QueryTemplate:
    """
    A parsed query template.

    Args:
        text: Template text with ``str.format`` fields
        escape: Applied to each rendered value, identity by default
    """

    def __init__(self, text: str, *, escape: Escape | None = None):
        self.text = text
        self._formatter = _TemplateFormatter(escape or _identity)

    def variables(self) -> frozenset[str]:
        """Top-level variable names referenced by the template."""
        names: set[str] = set()
        for _, field_name, _, _ in self._parse():
            if field_name:
                names.add(field_name.split("[", 1)[0])
        return frozenset(names)

    def _parse(self) -> list[tuple[str, str | None, str | None, str | None]]:
        try:
            return list(self._formatter.parse(self.text))
        except ValueError as exc:
            raise QueryConstructionError(f"Malformed template {self.text!r}: {exc}", cause=exc) from exc

    def render(self, context: ResolutionContext) -> str:
        """Render against *context*. Raises QueryConstructionError."""
        self._parse()
        try:
            return self._formatter.vformat(self.text, (), context.variables())
        except ValueError as exc:
            raise QueryConstructionError(f"Malformed template {self.text!r}: {exc}", cause=exc) from exc

    def __repr__(self) -> str:
        return f"QueryTemplate({self.text!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, QueryTemplate) and other.text == self.text

    def __hash__(self) -> int:
        return hash(self.text)


__all__ = ["QueryTemplate", "lookup_variable", "Escape"]
