"""
Validators: health checks a connector runs at initialization and on demand.

``validate()`` never raises. Every failure, including an unexpected
exception from a probe, is reported as ``Err(ValidationError)``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from attrspine.core.errors import ConnectorError, ValidationError
from attrspine.core.protocols import ConnectionProvider
from attrspine.core.result import Err, Ok, Result
from attrspine.connectors.providers import leased


def _as_validation_error(exc: BaseException, what: str) -> ValidationError:
    if isinstance(exc, ValidationError):
        return exc
    message = exc.message if isinstance(exc, ConnectorError) else str(exc)
    return ValidationError(f"{what} failed: {message}", cause=exc)


class ConnectionValidator:
    """
    Acquire a connection, run an optional probe on it, release it.

    The probe receives the leased connection and signals failure by raising
    or by returning ``False``.

    Example:
        >>> validator = ConnectionValidator(provider, probe=lambda conn: conn.ping())
        >>> validator.validate()
        Ok(None)
    """

    def __init__(
        self,
        provider: ConnectionProvider,
        probe: Callable[[Any], bool | None] | None = None,
        *,
        name: str = "connection check",
    ):
        self.provider = provider
        self.probe = probe
        self.name = name

    def validate(self) -> Result[None]:
        try:
            with leased(self.provider) as connection:
                if self.probe is not None and self.probe(connection) is False:
                    return Err(ValidationError(f"{self.name} failed: probe returned False"))
        except Exception as exc:
            return Err(_as_validation_error(exc, self.name))
        return Ok(None)


class CallableValidator:
    """Wrap a zero-argument health function; ``False`` or an exception means unhealthy."""

    def __init__(self, check: Callable[[], bool | None], *, name: str | None = None):
        self.check = check
        self.name = name or getattr(check, "__name__", "custom check")

    def validate(self) -> Result[None]:
        try:
            outcome = self.check()
        except Exception as exc:
            return Err(_as_validation_error(exc, self.name))
        if outcome is False:
            return Err(ValidationError(f"{self.name} failed"))
        return Ok(None)


class NullValidator:
    """Always healthy."""

    def validate(self) -> Result[None]:
        return Ok(None)


__all__ = ["ConnectionValidator", "CallableValidator", "NullValidator"]
