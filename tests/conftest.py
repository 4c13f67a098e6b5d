"""
Shared pytest fixtures for attribute-spine tests.

This module provides:
- Isolation fixtures (structlog defaults, settings cache, ATTRSPINE_* env)
- Connector fixtures built from the fakes in ``tests._support.fakes``
- A populated in-memory SQLite engine for the relational binding
"""

from __future__ import annotations

import os
import socket
from pathlib import Path

import pytest
import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from attrspine.connectors import DataConnector
from attrspine.core.context import ResolutionContext
from attrspine.core.settings import reset_settings
from tests._support.fakes import FakeBuilder, FakeMapper, FakeProvider


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Drop ATTRSPINE_* variables, cached settings and logging config around each test."""
    for name in list(os.environ):
        if name.startswith("ATTRSPINE_"):
            monkeypatch.delenv(name, raising=False)
    # keep a stray .env in the working directory out of settings
    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield
    reset_settings()
    structlog.reset_defaults()


# =============================================================================
# Connector fixtures
# =============================================================================


@pytest.fixture
def alice() -> ResolutionContext:
    return ResolutionContext(principal="alice")


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider({"uid=alice": [{"uid": ["alice"], "mail": ["alice@example.org"]}]})


@pytest.fixture
def connector(fake_provider: FakeProvider) -> DataConnector:
    """Uninitialized connector over the fakes with the default validator."""
    return DataConnector(
        "fakeDirectory",
        provider=fake_provider,
        builder=FakeBuilder(),
        mapper=FakeMapper(),
    )


@pytest.fixture
def ready_connector(connector: DataConnector):
    connector.initialize()
    yield connector
    connector.destroy()


@pytest.fixture
def silent_directory():
    """URL of a TCP listener that accepts LDAP connections and never answers."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(8)
    yield f"ldap://127.0.0.1:{listener.getsockname()[1]}"
    listener.close()


# =============================================================================
# Relational fixtures
# =============================================================================


@pytest.fixture
def people_engine():
    """In-memory SQLite shared across threads, with people and groups tables."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE people (uid TEXT PRIMARY KEY, mail TEXT, cn TEXT, age TEXT)"))
        conn.execute(text("CREATE TABLE groups (uid TEXT, grp TEXT)"))
        conn.execute(
            text("INSERT INTO people (uid, mail, cn, age) VALUES (:uid, :mail, :cn, :age)"),
            [
                {"uid": "alice", "mail": "a@x.org", "cn": "Alice A", "age": "34"},
                {"uid": "bob", "mail": None, "cn": "Bob B", "age": "not-a-number"},
            ],
        )
        conn.execute(
            text("INSERT INTO groups (uid, grp) VALUES (:uid, :grp)"),
            [
                {"uid": "alice", "grp": "staff"},
                {"uid": "alice", "grp": "admins"},
                {"uid": "bob", "grp": "staff"},
            ],
        )
    yield engine
    engine.dispose()
