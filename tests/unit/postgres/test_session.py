from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from pgtopology.postgres import (
    NodeConnection,
    QueryError,
    SessionSettings,
    aapply_session_defaults,
    aset_session_parameter,
)


@pytest.fixture
def conn() -> MagicMock:
    conn = MagicMock(spec=NodeConnection)
    conn.afetchval = AsyncMock(return_value="local")
    conn.describe.return_value = "db1:5432/repmgr"
    return conn


class TestSetSessionParameter:
    @pytest.mark.asyncio
    async def test_sends_name_and_value_as_bind_parameters(self, conn: MagicMock) -> None:
        assert await aset_session_parameter(conn, "synchronous_commit", "local") is True

        query, name, value = conn.afetchval.await_args.args
        assert "set_config($1, $2, false)" in query
        assert (name, value) == ("synchronous_commit", "local")

    @pytest.mark.asyncio
    async def test_booleans_are_sent_as_on_off(self, conn: MagicMock) -> None:
        await aset_session_parameter(conn, "jit", False)

        assert conn.afetchval.await_args.args[2] == "off"

    @pytest.mark.asyncio
    async def test_value_with_quotes_is_passed_verbatim(self, conn: MagicMock) -> None:
        await aset_session_parameter(conn, "application_name", "o'brien; DROP TABLE x")

        assert conn.afetchval.await_args.args[2] == "o'brien; DROP TABLE x"

    @pytest.mark.asyncio
    async def test_failure_returns_false_and_logs(self, conn: MagicMock) -> None:
        conn.afetchval.side_effect = QueryError("fetchval", 'unrecognized configuration parameter "nope"')

        with capture_logs() as logs:
            result = await aset_session_parameter(conn, "nope", "1")

        assert result is False
        errors = [entry for entry in logs if entry["log_level"] == "error"]
        assert errors
        assert errors[0]["name"] == "nope"


class TestApplySessionDefaults:
    @pytest.mark.asyncio
    async def test_default_is_local_synchronous_commit(self, conn: MagicMock) -> None:
        assert await aapply_session_defaults(conn) is True

        conn.afetchval.assert_awaited_once()
        assert conn.afetchval.await_args.args[1:] == ("synchronous_commit", "local")

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, conn: MagicMock) -> None:
        conn.afetchval.side_effect = [None, QueryError("fetchval", "denied"), None]
        settings = SessionSettings(parameters={"a": "1", "b": "2", "c": "3"})

        assert await aapply_session_defaults(conn, settings) is False
        assert conn.afetchval.await_count == 2

    @pytest.mark.asyncio
    async def test_empty_settings_succeed(self, conn: MagicMock) -> None:
        assert await aapply_session_defaults(conn, SessionSettings(parameters={})) is True
        conn.afetchval.assert_not_awaited()
