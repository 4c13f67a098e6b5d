"""
Root Typer application for the attrspine CLI.

Commands build a connector from ``ATTRSPINE_*`` settings, so the same
environment that configures a deployment can be checked from a shell::

    attrspine validate ldap
    attrspine resolve rdbms --principal alice --attribute mail=alice@example.org --json
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

import typer
from typer import Typer

from attrspine import __version__
from attrspine.cli.utils import fail, output_attributes, output_report
from attrspine.core.context import ResolutionContext
from attrspine.core.errors import ConnectorError
from attrspine.core.health import check_connectors
from attrspine.core.logging import configure_logging, log_context
from attrspine.core.settings import get_settings
from attrspine.factory import Backend, create_connector

app = Typer(
    name="attrspine",
    help="attrspine — resolve identity attributes from directories, databases and storage services.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        try:
            v = pkg_version("attribute-spine")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"attribute-spine {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override ATTRSPINE_LOG_LEVEL."),
) -> None:
    """attrspine CLI — validate connectors and resolve attributes."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=settings.log_format == "json",
        service="attrspine-cli",
    )


# ── Helpers ──────────────────────────────────────────────────────────────


def parse_attributes(pairs: list[str] | None) -> dict[str, list[str]]:
    """``["mail=a@x.org", "mail=b@x.org"]`` → ``{"mail": ["a@x.org", "b@x.org"]}``."""
    attributes: dict[str, list[str]] = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"expected id=value, got {pair!r}", param_hint="--attribute")
        attributes.setdefault(name, []).append(value)
    return attributes


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def validate(
    backend: Backend = typer.Argument(..., help="ldap, rdbms or storage"),
    as_json: bool = typer.Option(False, "--json", help="Output the health report as JSON."),
) -> None:
    """Initialize a connector and report whether its backend is healthy."""
    try:
        connector = create_connector(backend, get_settings())
        connector.initialize()
    except ConnectorError as exc:
        fail(exc)

    try:
        report = check_connectors([connector])
    finally:
        connector.destroy()

    output_report(report, as_json=as_json)
    if report.status == "unhealthy":
        raise typer.Exit(code=1)


@app.command()
def resolve(
    backend: Backend = typer.Argument(..., help="ldap, rdbms or storage"),
    principal: str = typer.Option(..., "--principal", "-p", help="Subject to resolve."),
    requester: str | None = typer.Option(None, "--requester", help="Party the attributes are released to."),
    issuer: str | None = typer.Option(None, "--issuer", help="Party releasing the attributes."),
    attribute: list[str] | None = typer.Option(
        None, "--attribute", "-a", help="Upstream attribute as id=value; repeatable."
    ),
    as_json: bool = typer.Option(False, "--json", help="Output attributes as JSON."),
) -> None:
    """Resolve attributes for one principal."""
    context = ResolutionContext(
        principal=principal,
        requester=requester,
        issuer=issuer,
        attributes=parse_attributes(attribute),
    )
    try:
        with log_context(principal=principal, backend=backend.value):
            with create_connector(backend, get_settings()) as connector:
                attributes = connector.retrieve_attributes(context)
    except ConnectorError as exc:
        fail(exc)

    output_attributes(attributes, as_json=as_json, title=connector.connector_id)
