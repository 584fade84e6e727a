"""Shared fixtures for pgtopology.postgres integration tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from testcontainers.postgres import PostgresContainer  # type: ignore[import-untyped]

from pgtopology.postgres import NodeConnection, NodeRegistry, aconnect_conninfo

from .replication_fixtures import (  # noqa: F401
    container_conninfo,
    is_docker_available,
    primary_container,
    standby_container,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator


def pytest_configure(config: pytest.Config) -> None:  # noqa: ARG001
    """Configure Docker environment for testcontainers.

    Runs before any fixture so both local development and CI find the daemon.
    """
    if not os.environ.get("DOCKER_HOST"):
        possible_sockets = [
            Path("/var/run/docker.sock"),
            Path.home() / ".docker" / "run" / "docker.sock",
        ]
        for socket_path in possible_sockets:
            if socket_path.exists():
                os.environ["DOCKER_HOST"] = f"unix://{socket_path}"
                os.environ["TESTCONTAINERS_DOCKER_SOCKET_OVERRIDE"] = str(socket_path)
                break

    # Ryuk has known issues on macOS/Docker Desktop
    if sys.platform == "darwin" and not os.environ.get("TESTCONTAINERS_RYUK_DISABLED"):
        os.environ["TESTCONTAINERS_RYUK_DISABLED"] = "true"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Provide a session-scoped standalone PostgreSQL container.

    Yields
    ------
    PostgresContainer
        Running PostgreSQL container instance.
    """
    if not is_docker_available():
        pytest.skip("Docker daemon not accessible")

    with PostgresContainer("postgres:17-alpine", driver="asyncpg") as container:
        yield container


@pytest_asyncio.fixture
async def registry_conn(postgres_container: PostgresContainer) -> AsyncIterator[NodeConnection]:
    """Connection to the standalone container with an empty node registry."""
    async with await aconnect_conninfo(container_conninfo(postgres_container)) as conn:
        await NodeRegistry(conn).ainstall_schema()
        await conn.aexecute('TRUNCATE TABLE "repmgr"."nodes"')
        yield conn
