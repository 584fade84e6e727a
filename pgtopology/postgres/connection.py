"""Single asyncpg connections to cluster nodes.

Discovery and registry maintenance talk to one node at a time, so unlike a
pool this wraps exactly one ``asyncpg.Connection``. Every new connection gets
the configured session defaults applied before it is handed out.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Literal, Self

import asyncpg

from ..logger import get_logger
from .config import ConnectionConfig
from .conninfo import ConnectionParameters
from .exceptions import ConnectionNotOpenError, NodeConnectionError, QueryError, SessionConfigError
from .session import aapply_session_defaults

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from types import TracebackType

    from asyncpg import Record

    from ..logger import BoundLogger

type IsolationLevel = Literal["read_uncommitted", "read_committed", "repeatable_read", "serializable"]

# Raised by asyncpg for server errors, protocol/state errors, and network trouble.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    TimeoutError,
)


class NodeConnection:
    """An open connection to one node.

    Query methods raise `QueryError` for any failure reported by the
    transport, so callers deal with one error type.

    Examples
    --------
    >>> async with await aconnect(ConnectionParameters.parse("host=db1 dbname=repmgr")) as conn:
    ...     in_recovery = await conn.ais_in_recovery()
    """

    __slots__ = ("_command_timeout", "_conn", "_logger", "_parameters")

    def __init__(
        self,
        conn: asyncpg.Connection,
        parameters: ConnectionParameters,
        *,
        command_timeout: float | None = None,
        logger: BoundLogger | None = None,
    ) -> None:
        self._conn = conn
        self._parameters = parameters
        self._command_timeout = command_timeout
        self._logger = logger or get_logger(__name__)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        state = "closed" if self.is_closed else "open"
        return f"<NodeConnection {self.describe()} {state}>"

    @property
    def raw(self) -> asyncpg.Connection:
        """The underlying asyncpg connection."""
        if self._conn.is_closed():
            msg = f"Connection to {self.describe()} is closed"
            raise ConnectionNotOpenError(msg)
        return self._conn

    @property
    def parameters(self) -> ConnectionParameters:
        """Parameters this connection was opened with (a copy)."""
        return self._parameters.copy()

    @property
    def is_closed(self) -> bool:
        return self._conn.is_closed()

    def describe(self) -> str:
        return self._parameters.describe()

    async def aclose(self) -> None:
        """Close the connection gracefully. Safe to call more than once."""
        if self._conn.is_closed():
            return
        try:
            await self._conn.close(timeout=self._command_timeout)
        except TRANSPORT_ERRORS as e:
            self._logger.debug("graceful close failed, terminating", target=self.describe(), error=str(e))
            self._conn.terminate()

    def terminate(self) -> None:
        """Close the connection immediately without waiting on the server."""
        if not self._conn.is_closed():
            self._conn.terminate()

    async def aexecute(self, query: str, *args: object, timeout: float | None = None) -> str:
        try:
            return await self.raw.execute(query, *args, timeout=self._timeout(timeout))
        except TRANSPORT_ERRORS as e:
            raise QueryError("execute", str(e)) from e

    async def afetch(self, query: str, *args: object, timeout: float | None = None) -> list[Record]:
        try:
            return await self.raw.fetch(query, *args, timeout=self._timeout(timeout))
        except TRANSPORT_ERRORS as e:
            raise QueryError("fetch", str(e)) from e

    async def afetchrow(self, query: str, *args: object, timeout: float | None = None) -> Record | None:
        try:
            return await self.raw.fetchrow(query, *args, timeout=self._timeout(timeout))
        except TRANSPORT_ERRORS as e:
            raise QueryError("fetchrow", str(e)) from e

    async def afetchval(self, query: str, *args: object, timeout: float | None = None) -> Any:
        try:
            return await self.raw.fetchval(query, *args, timeout=self._timeout(timeout))
        except TRANSPORT_ERRORS as e:
            raise QueryError("fetchval", str(e)) from e

    @asynccontextmanager
    async def atransaction(
        self,
        isolation: IsolationLevel = "read_committed",
        *,
        readonly: bool = False,
    ) -> AsyncIterator[Self]:
        """Run the enclosed block in a transaction, rolling back on error.

        Yields
        ------
        NodeConnection
            This connection, inside the transaction.
        """
        transaction = self.raw.transaction(isolation=isolation, readonly=readonly)
        try:
            await transaction.start()
        except TRANSPORT_ERRORS as e:
            raise QueryError("begin transaction", str(e)) from e

        try:
            yield self
        except BaseException:
            try:
                await transaction.rollback()
            except TRANSPORT_ERRORS as e:
                self._logger.error("unable to roll back transaction", target=self.describe(), error=str(e))
            raise

        try:
            await transaction.commit()
        except TRANSPORT_ERRORS as e:
            raise QueryError("commit transaction", str(e)) from e

    async def ais_in_recovery(self, timeout: float | None = None) -> bool:
        """Return True when the node is a standby (in recovery).

        Raises
        ------
        QueryError
            If the query fails or the server does not return a boolean.
        """
        value = await self.afetchval("SELECT pg_catalog.pg_is_in_recovery()", timeout=timeout)
        if not isinstance(value, bool):
            raise QueryError("pg_is_in_recovery", f"expected a boolean, got {value!r}")
        return value

    async def aget_wal_location(self, *, in_recovery: bool, timeout: float | None = None) -> str | None:
        """Return the current WAL position: write position on a primary, receive position on a standby."""
        if in_recovery:
            query = "SELECT pg_catalog.pg_last_wal_receive_lsn()::text"
        else:
            query = "SELECT pg_catalog.pg_current_wal_lsn()::text"
        value = await self.afetchval(query, timeout=timeout)
        return str(value) if value is not None else None

    async def aget_server_version(self) -> tuple[int, str]:
        """Return ``(server_version_num, server_version)``."""
        row = await self.afetchrow(
            "SELECT pg_catalog.current_setting('server_version_num') AS num, "
            "       pg_catalog.current_setting('server_version') AS version"
        )
        if row is None:
            raise QueryError("server version", "no row returned")
        return int(row["num"]), str(row["version"])

    def _timeout(self, timeout: float | None) -> float | None:
        return timeout if timeout is not None else self._command_timeout


async def aconnect(
    params: ConnectionParameters,
    config: ConnectionConfig | None = None,
    *,
    logger: BoundLogger | None = None,
) -> NodeConnection:
    """Open a connection and apply session defaults.

    Parameters
    ----------
    params
        Connection parameters of the target node.
    config
        Timeouts, fallback application name and session defaults.
    logger
        Logger to report on; defaults to this module's logger.

    Returns
    -------
    NodeConnection
        An open connection owned by the caller.

    Raises
    ------
    ConninfoParseError
        If ``params`` cannot be mapped onto transport arguments.
    NodeConnectionError
        If the transport cannot establish the connection.
    SessionConfigError
        If session defaults cannot be applied and ``strict_session_defaults`` is set.
    """
    config = config or ConnectionConfig()
    log = logger or get_logger(__name__)
    target = params.describe()

    kwargs = params.to_connect_kwargs()
    kwargs.setdefault("timeout", config.connect_timeout)
    kwargs["command_timeout"] = config.command_timeout
    server_settings = kwargs.setdefault("server_settings", {})
    server_settings.setdefault("application_name", config.fallback_application_name)

    log.debug("connecting to node", conninfo=params.to_conninfo(redact=True))

    try:
        raw = await asyncpg.connect(**kwargs)
    except TRANSPORT_ERRORS as e:
        log.debug("connection to node failed", target=target, error=str(e))
        raise NodeConnectionError(target, str(e)) from e

    conn = NodeConnection(raw, params.copy(), command_timeout=config.command_timeout, logger=log)

    if params.is_replication:
        return conn

    try:
        applied = await aapply_session_defaults(conn, config.session, logger=log)
    except BaseException:
        conn.terminate()
        raise

    if not applied:
        if config.strict_session_defaults:
            await conn.aclose()
            raise SessionConfigError(target, "unable to apply session defaults")
        log.warning("continuing without session defaults", target=target)

    return conn


async def aconnect_conninfo(
    conninfo: str,
    config: ConnectionConfig | None = None,
    *,
    logger: BoundLogger | None = None,
) -> NodeConnection:
    """Parse ``conninfo`` and open a connection with `aconnect`."""
    return await aconnect(ConnectionParameters.parse(conninfo), config, logger=logger)


async def aconnect_as_user(
    conninfo: str,
    user: str,
    config: ConnectionConfig | None = None,
    *,
    logger: BoundLogger | None = None,
) -> NodeConnection:
    """Connect with ``conninfo`` but as a different ``user``.

    The inherited ``application_name`` is dropped so the fallback name applies.
    """
    params = ConnectionParameters.parse(conninfo, ignore_application_name=True)
    params.set("user", user)
    return await aconnect(params, config, logger=logger)
