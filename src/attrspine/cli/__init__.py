"""Command line interface (``attrspine``)."""

from attrspine.cli.app import app

__all__ = ["app"]
