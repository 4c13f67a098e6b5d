"""Health reporting over data connectors.

Provides:
- **Response models** — ``CheckResult`` and ``HealthReport``, a JSON-ready
  envelope describing every connector's validation outcome.
- **``check_connectors()``** — runs ``validate()`` on each connector and
  aggregates the results.

A connector whose validation fails makes the report ``unhealthy`` unless it
is listed as optional, in which case the report is only ``degraded``.

Quick start::

    from attrspine.core.health import check_connectors

    report = check_connectors([ldap_connector, rdbms_connector], optional={"myDatabase"})
    print(report.model_dump_json(indent=2))
"""

from __future__ import annotations

import time
from collections.abc import Collection, Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

from attrspine.core.errors import ConnectorError
from attrspine.core.result import Err, Ok

if TYPE_CHECKING:
    from attrspine.connectors.connector import DataConnector

Status = Literal["healthy", "degraded", "unhealthy"]


# ── Response Models ──────────────────────────────────────────────────────


class CheckResult(BaseModel):
    """Result of a single connector validation."""

    status: Status
    state: str
    latency_ms: float | None = None
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class HealthReport(BaseModel):
    """Aggregate health of a set of connectors.

    Fields
    ──────
    status    : ``healthy`` | ``degraded`` | ``unhealthy``
    timestamp : ISO-8601 UTC
    checks    : Per-connector breakdown (connector_id → CheckResult)
    """

    status: Status = "healthy"
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    checks: dict[str, CheckResult] = Field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


# ── Internal helpers ─────────────────────────────────────────────────────


def _check_one(connector: DataConnector) -> CheckResult:
    start = time.monotonic()
    result = connector.validate()
    elapsed = round((time.monotonic() - start) * 1000, 2)
    match result:
        case Ok():
            return CheckResult(status="healthy", state=connector.state.value, latency_ms=elapsed)
        case Err(error):
            details = error.to_dict() if isinstance(error, ConnectorError) else {}
            return CheckResult(
                status="unhealthy",
                state=connector.state.value,
                latency_ms=elapsed,
                error=str(error)[:200],
                details=details,
            )


def _compute_status(checks: dict[str, CheckResult], optional: Collection[str]) -> Status:
    any_required_down = False
    any_optional_down = False
    for name, result in checks.items():
        if result.status == "healthy":
            continue
        if name in optional:
            any_optional_down = True
        else:
            any_required_down = True
    if any_required_down:
        return "unhealthy"
    if any_optional_down:
        return "degraded"
    return "healthy"


# ── Public API ───────────────────────────────────────────────────────────


def check_connectors(
    connectors: Iterable[DataConnector],
    *,
    optional: Collection[str] = (),
) -> HealthReport:
    """Validate each connector and build a :class:`HealthReport`.

    Parameters
    ----------
    connectors : Iterable[DataConnector]
        Connectors to check, keyed in the report by ``connector_id``.
    optional : Collection[str]
        Connector ids whose failure only degrades the report.
    """
    checks = {connector.connector_id: _check_one(connector) for connector in connectors}
    return HealthReport(status=_compute_status(checks, optional), checks=checks)


__all__ = ["CheckResult", "HealthReport", "check_connectors"]
