"""
Ok / Err outcomes for the operations that report failure as a value.

Three calls in the connector contract never raise for backend trouble and
return a ``Result`` instead:

- ``Validator.validate()``      -> ``Result[None]``
- ``DataConnector.validate()``  -> ``Result[None]``
- ``DataConnector.resolve()``   -> ``Result[AttributeMap]``

Both variants are frozen dataclasses with positional match support, so
callers usually destructure them::

    match connector.resolve(context):
        case Ok(attributes):
            merge(attributes)
        case Err(error):
            log.warning("connector.skipped", **error.to_dict())

``Err.unwrap()`` re-raises the carried exception, which turns a Result back
into the raising style: ``connector.validate().unwrap()``.

Tags:
    result-pattern, error-handling, attribute-spine
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from attrspine.core.errors import ConnectorError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """The operation succeeded with ``value``."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U]:
        return Ok(f(self.value))

    def map_err(self, f: Callable[[Exception], Exception]) -> Result[T]:
        return self

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "value": self.value}

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """The operation failed with ``error``; usually a ConnectorError subclass."""

    error: Exception

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, f: Callable[[T], U]) -> Result[U]:
        return Err(self.error)

    def map_err(self, f: Callable[[Exception], Exception]) -> Result[T]:
        return Err(f(self.error))

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.error, ConnectorError):
            error = self.error.to_dict()
        else:
            error = {"error_type": type(self.error).__name__, "message": str(self.error)}
        return {"ok": False, "error": error}

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Ok[T] | Err[T]


def try_result(f: Callable[[], T]) -> Result[T]:
    """Call *f*; its return value becomes ``Ok``, any Exception it raises ``Err``."""
    try:
        return Ok(f())
    except Exception as exc:
        return Err(exc)


def partition_results(results: Iterable[Result[T]]) -> tuple[list[T], list[Exception]]:
    """
    Split outcomes into values and errors, each list in input order.

    Handy when one request resolves several connectors and wants every
    failure reported, not only the first.
    """
    values: list[T] = []
    errors: list[Exception] = []
    for result in results:
        if isinstance(result, Ok):
            values.append(result.value)
        else:
            errors.append(result.error)
    return values, errors


__all__ = [
    "Ok",
    "Err",
    "Result",
    "try_result",
    "partition_results",
]
