"""
Step timing for connector log lines.

``log_step(event)`` wraps one unit of work (a retrieval, a pool warm-up)
and emits up to two events:

- ``<event>.start`` at DEBUG
- ``<event>.end`` with ``duration_ms`` at INFO, or ``<event>.error`` at
  WARNING carrying the error's ``to_dict()`` fields

Each step binds a ``span_id`` into structlog contextvars for its duration,
so log lines emitted inside the block (by a backend binding, say) can be
tied back to it; a step opened inside another also logs ``parent_span_id``.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog

from attrspine.core.errors import ConnectorError
from attrspine.core.logging import get_logger


@dataclass
class StepTimer:
    """Clock and extra log fields for one step."""

    step: str
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    parent_span_id: str | None = None
    started_at: float = field(default_factory=time.perf_counter)
    ended_at: float | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None

    def stop(self) -> None:
        if self.ended_at is None:
            self.ended_at = time.perf_counter()

    @property
    def duration_ms(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.perf_counter()
        return (end - self.started_at) * 1000

    def add_metric(self, key: str, value: Any) -> StepTimer:
        self.metrics[key] = value
        return self

    def fail(self, exc: BaseException) -> None:
        self.stop()
        if isinstance(exc, ConnectorError):
            self.error = exc.to_dict()
        else:
            self.error = {"error_type": type(exc).__name__, "message": str(exc)}

    def fields(self) -> dict[str, Any]:
        """Log fields: duration, span ids, metrics and, after ``fail()``, the error."""
        out: dict[str, Any] = {"duration_ms": round(self.duration_ms, 2), "span_id": self.span_id}
        if self.parent_span_id:
            out["parent_span_id"] = self.parent_span_id
        out.update(self.metrics)
        if self.error is not None:
            out["status"] = "error"
            out.update(self.error)
        return out


@contextmanager
def log_step(
    event: str,
    *,
    log: Any = None,
    log_start: bool = True,
    level: str = "info",
    **metrics: Any,
) -> Iterator[StepTimer]:
    """
    Time the block and log it as *event*; exceptions are logged and re-raised.

    Example:
        with log_step("connector.retrieve", log=self._log, principal="alice") as timer:
            attributes = self._retrieve(query)
            timer.add_metric("attributes", len(attributes))
    """
    log = log if log is not None else get_logger("attrspine.timing")
    parent = structlog.contextvars.get_contextvars().get("span_id")
    timer = StepTimer(step=event, parent_span_id=parent, metrics=dict(metrics))
    tokens = structlog.contextvars.bind_contextvars(span_id=timer.span_id)
    try:
        if log_start:
            start = {"parent_span_id": parent} if parent else {}
            log.debug(f"{event}.start", **start, **metrics)
        yield timer
    except Exception as exc:
        timer.fail(exc)
        log.warning(f"{event}.error", **timer.fields())
        raise
    finally:
        timer.stop()
        structlog.contextvars.reset_contextvars(**tokens)

    getattr(log, level)(f"{event}.end", **timer.fields())


__all__ = ["StepTimer", "log_step"]
