"""Shared fixtures for pgtopology.postgres unit tests."""

from __future__ import annotations

import asyncpg
import pytest

from .fakes import FakeCluster


@pytest.fixture(autouse=True)
def _clear_pg_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep PG* variables of the developer's shell out of default resolution."""
    for name in (
        "PGHOST",
        "PGHOSTADDR",
        "PGPORT",
        "PGUSER",
        "PGPASSWORD",
        "PGDATABASE",
        "PGSSLMODE",
        "PGCONNECT_TIMEOUT",
        "PGAPPNAME",
        "PGOPTIONS",
        "PGTARGETSESSIONATTRS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_cluster(monkeypatch: pytest.MonkeyPatch) -> FakeCluster:
    """Route ``asyncpg.connect`` to scripted fake nodes."""
    cluster = FakeCluster()
    monkeypatch.setattr(asyncpg, "connect", cluster.connect)
    return cluster
