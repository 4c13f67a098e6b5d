"""
CLI utility helpers — output formatting and error reporting.
"""

from __future__ import annotations

import json
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from attrspine.core.context import AttributeMap
from attrspine.core.errors import ConnectorError
from attrspine.core.health import HealthReport

console = Console()
err_console = Console(stderr=True)


def fail(error: BaseException) -> NoReturn:
    """Print *error* to stderr and exit with status 1."""
    if isinstance(error, ConnectorError):
        err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")
    else:
        err_console.print(f"[bold red]Error[/bold red]: {error}")
    raise typer.Exit(code=1)


def output_attributes(attributes: AttributeMap, *, as_json: bool = False, title: str = "") -> None:
    """Render an AttributeMap as JSON or a Rich table."""
    if as_json:
        console.print_json(json.dumps(attributes, default=str))
        return
    if not attributes:
        console.print("[dim]No attributes.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    table.add_column("attribute", style="bold")
    table.add_column("values", overflow="fold")
    for name, values in attributes.items():
        table.add_row(name, ", ".join(_display(v) for v in values))
    console.print(table)


def output_report(report: HealthReport, *, as_json: bool = False) -> None:
    """Render a HealthReport as JSON or a Rich table."""
    if as_json:
        console.print_json(report.model_dump_json())
        return
    colour = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}[report.status]
    table = Table(title=f"[{colour}]{report.status}[/{colour}]", pad_edge=False)
    for column in ("connector", "status", "state", "latency_ms", "error"):
        table.add_column(column, overflow="fold")
    for name, check in report.checks.items():
        table.add_row(name, check.status, check.state, _display(check.latency_ms), check.error or "")
    console.print(table)


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.hex()
    return str(value)
