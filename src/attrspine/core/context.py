"""Resolution context and attribute map types.

``ResolutionContext`` is the caller-owned, per-request input to a connector:
the subject being resolved plus attributes already gathered from upstream
sources. ``AttributeMap`` is a connector's output.

Both are deliberately plain: the attribute value model is opaque here, so
values are arbitrary Python objects and only their ``str()`` form is used
when a value is substituted into a query template.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

AttributeMap = dict[str, list[Any]]
"""Attribute id -> ordered values. A missing key means "no value produced"."""

RESERVED_VARIABLES = frozenset({"principal", "requester", "issuer"})


def _freeze_attributes(attributes: Mapping[str, Iterable[Any]] | None) -> Mapping[str, tuple[Any, ...]]:
    frozen: dict[str, tuple[Any, ...]] = {}
    for name, values in (attributes or {}).items():
        if isinstance(values, (str, bytes)):
            frozen[name] = (values,)
        else:
            frozen[name] = tuple(values)
    return MappingProxyType(frozen)


@dataclass(frozen=True)
class ResolutionContext:
    """
    Per-request input describing who is being resolved.

    Attributes:
        principal: Name of the subject whose attributes are resolved
        requester: Identifier of the party the attributes are released to
        issuer: Identifier of the party releasing the attributes
        attributes: Upstream attributes, id -> values (read-only view)

    Example:
        >>> ctx = ResolutionContext(principal="alice", attributes={"mail": ["a@x.org"]})
        >>> ctx.attributes["mail"]
        ('a@x.org',)
    """

    principal: str | None = None
    requester: str | None = None
    issuer: str | None = None
    attributes: Mapping[str, tuple[Any, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", _freeze_attributes(self.attributes))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResolutionContext):
            return NotImplemented
        return (
            self.principal == other.principal
            and self.requester == other.requester
            and self.issuer == other.issuer
            and dict(self.attributes) == dict(other.attributes)
        )

    def __hash__(self) -> int:
        return hash((self.principal, self.requester, self.issuer, tuple(sorted(self.attributes))))

    def variables(self) -> dict[str, Any]:
        """
        Substitution namespace for query templates.

        Scalar fields are present only when set. Upstream attributes are exposed
        as tuples of values under their own id; a scalar field wins over an
        upstream attribute of the same name.
        """
        namespace: dict[str, Any] = dict(self.attributes)
        for name in RESERVED_VARIABLES:
            value = getattr(self, name)
            if value is not None:
                namespace[name] = value
        return namespace


def copy_attribute_map(attributes: Mapping[str, Iterable[Any]]) -> AttributeMap:
    """Return an independent copy so each caller owns its AttributeMap."""
    return {name: list(values) for name, values in attributes.items()}


__all__ = [
    "AttributeMap",
    "ResolutionContext",
    "RESERVED_VARIABLES",
    "copy_attribute_map",
]
