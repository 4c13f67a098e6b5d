"""Connector lifecycle states and validation bookkeeping.

Manifesto:
    A connector's lifecycle is an explicit state machine, not a pair of
    booleans. Every operation states which state it requires, and every
    transition is checked against ``VALID_TRANSITIONS``.

Tags:
    data-connector, lifecycle, state-machine, attribute-spine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from attrspine.core.errors import ConnectorError, StateError


class ConnectorState(str, Enum):
    """Lifecycle of a DataConnector.

    Valid transition graph::

        UNINITIALIZED → INITIALIZING | DESTROYED
        INITIALIZING  → READY | FAILED | UNINITIALIZED (bindings missing) | DESTROYED
        READY         → DESTROYED
        FAILED        → DESTROYED
        DESTROYED     → (terminal)
    """

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    DESTROYED = "destroyed"


VALID_TRANSITIONS: dict[ConnectorState, frozenset[ConnectorState]] = {
    ConnectorState.UNINITIALIZED: frozenset({
        ConnectorState.INITIALIZING,
        ConnectorState.DESTROYED,
    }),
    ConnectorState.INITIALIZING: frozenset({
        ConnectorState.READY,
        ConnectorState.FAILED,
        ConnectorState.UNINITIALIZED,
        ConnectorState.DESTROYED,
    }),
    ConnectorState.READY: frozenset({ConnectorState.DESTROYED}),
    ConnectorState.FAILED: frozenset({ConnectorState.DESTROYED}),
    ConnectorState.DESTROYED: frozenset(),  # terminal
}


def validate_transition(current: ConnectorState, target: ConnectorState) -> None:
    """Raise :class:`StateError` if *current → target* is illegal.

    Example:
        >>> validate_transition(ConnectorState.READY, ConnectorState.DESTROYED)
        >>> validate_transition(ConnectorState.DESTROYED, ConnectorState.READY)
        Traceback (most recent call last):
        StateError: Invalid connector transition: destroyed → ready
    """
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise StateError(
            f"Invalid connector transition: {current.value} → {target.value}",
            state=current.value,
        )


@dataclass(frozen=True)
class ValidatorState:
    """Outcome of the most recent validation.

    ``ok is None`` means validation has not run yet.
    """

    ok: bool | None = None
    checked_at: datetime | None = None
    error: ConnectorError | None = None
    attempts: int = 0

    @classmethod
    def passed(cls, previous: ValidatorState) -> ValidatorState:
        return cls(ok=True, checked_at=datetime.now(UTC), attempts=previous.attempts + 1)

    @classmethod
    def failed(cls, previous: ValidatorState, error: ConnectorError) -> ValidatorState:
        return cls(ok=False, checked_at=datetime.now(UTC), error=error, attempts=previous.attempts + 1)


@dataclass
class _Lifecycle:
    """Mutable state record owned by a DataConnector under its lock."""

    state: ConnectorState = ConnectorState.UNINITIALIZED
    validator: ValidatorState = field(default_factory=ValidatorState)
    degraded: bool = False

    def move(self, target: ConnectorState) -> None:
        validate_transition(self.state, target)
        self.state = target


__all__ = ["ConnectorState", "VALID_TRANSITIONS", "validate_transition", "ValidatorState"]
