"""Node registry: the durable catalog of cluster members.

The registry is a single table (``repmgr.nodes`` by default) keyed by
``node_id``. It records what the cluster *was told*; it never infers role
changes itself. Use `PrimaryDiscovery` when the live primary matters.

Reads raise `RegistryQueryError` on failure and return ``None`` when nothing
matches. Writes return ``False`` on failure and log the reason; retrying is
left to the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ..core.enums import NodeRole
from ..logger import get_logger
from .config import RegistryConfig
from .exceptions import QueryError, RegistryQueryError
from .models import NodeRecord

if TYPE_CHECKING:
    from collections.abc import Mapping

    from ..logger import BoundLogger
    from .connection import NodeConnection

_COLUMNS = "node_id, type, upstream_node_id, node_name, conninfo, slot_name, priority, active"


class NodeRegistry:
    """CRUD access to node records over a caller-owned connection.

    Examples
    --------
    >>> registry = NodeRegistry(conn)
    >>> await registry.ainstall_schema()
    >>> await registry.acreate_node_record(
    ...     NodeRecord(node_id=1, role=NodeRole.PRIMARY, node_name="node1", conninfo="host=db1 dbname=repmgr")
    ... )
    True
    >>> await registry.aget_master_node_id()
    1
    """

    __slots__ = ("_config", "_conn", "_logger")

    def __init__(
        self,
        conn: NodeConnection,
        config: RegistryConfig | None = None,
        *,
        logger: BoundLogger | None = None,
    ) -> None:
        self._conn = conn
        self._config = config or RegistryConfig()
        self._logger = logger or get_logger(__name__)

    @property
    def table(self) -> str:
        return self._config.qualified_table

    async def ainstall_schema(self) -> None:
        """Create the registry schema and table if they do not exist.

        Raises
        ------
        QueryError
            If any DDL statement fails; the transaction is rolled back.
        """
        schema = f'"{self._config.schema_name}"'
        async with self._conn.atransaction():
            await self._conn.aexecute(f"CREATE SCHEMA IF NOT EXISTS {schema}")
            await self._conn.aexecute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    node_id          INTEGER PRIMARY KEY CHECK (node_id > 0),
                    type             TEXT    NOT NULL CHECK (type IN ('primary', 'standby', 'witness', 'bdr')),
                    upstream_node_id INTEGER NULL REFERENCES {self.table} (node_id) DEFERRABLE,
                    node_name        TEXT    NOT NULL CHECK (char_length(node_name) BETWEEN 1 AND 63),
                    conninfo         TEXT    NOT NULL CHECK (conninfo <> ''),
                    slot_name        TEXT    NULL CHECK (char_length(slot_name) <= 63),
                    priority         INTEGER NOT NULL DEFAULT 100 CHECK (priority >= 0),
                    active           BOOLEAN NOT NULL DEFAULT TRUE
                )
            """)
        self._logger.info("node registry schema installed", table=self.table)

    async def aget_node_record(self, node_id: int) -> NodeRecord | None:
        """Fetch one node record.

        Returns
        -------
        NodeRecord | None
            The record, or None if no node has this id.

        Raises
        ------
        RegistryQueryError
            If the query fails or the stored row is not a valid record.
        """
        query = f"SELECT {_COLUMNS} FROM {self.table} WHERE node_id = $1"
        self._logger.debug("fetching node record", node_id=node_id)

        try:
            row = await self._conn.afetchrow(query, node_id, timeout=self._config.query_timeout)
        except QueryError as e:
            self._logger.error("unable to retrieve node record", node_id=node_id, error=e.message)
            raise RegistryQueryError("get node record", e.message) from e

        if row is None:
            self._logger.debug("no record found for node", node_id=node_id)
            return None
        return self._decode_row(row, "get node record")

    async def aget_all_node_records(self) -> list[NodeRecord]:
        query = f"SELECT {_COLUMNS} FROM {self.table} ORDER BY node_id"
        try:
            rows = await self._conn.afetch(query, timeout=self._config.query_timeout)
        except QueryError as e:
            raise RegistryQueryError("get node records", e.message) from e
        return [self._decode_row(row, "get node records") for row in rows]

    async def aget_candidate_records(self) -> list[NodeRecord]:
        """Return every non-witness node in primary-discovery order.

        Active nodes first, then nodes registered as primary, then ascending
        ``priority``, then ascending ``node_id``. When the registry is
        accurate the real primary is the first candidate.
        Rows that do not decode into a `NodeRecord` are logged and left out.

        Raises
        ------
        RegistryQueryError
            If the query fails.
        """
        query = f"SELECT {_COLUMNS} FROM {self.table} WHERE type <> $1"
        try:
            rows = await self._conn.afetch(query, NodeRole.WITNESS.to_db(), timeout=self._config.query_timeout)
        except QueryError as e:
            self._logger.error("unable to retrieve node records", error=e.message)
            raise RegistryQueryError("get candidate records", e.message) from e

        records: list[NodeRecord] = []
        for row in rows:
            try:
                records.append(NodeRecord.from_row(row))
            except ValidationError as e:
                self._logger.error(
                    "skipping undecodable node record",
                    node_id=row["node_id"],
                    error_count=e.error_count(),
                    error=e.errors(include_url=False)[0]["msg"],
                )
        return sorted(records, key=lambda record: record.candidate_rank)

    async def aget_master_node_id(self) -> int | None:
        """Return the id of the node the registry lists as the active primary.

        This is the stored value only; the node is not contacted.

        Raises
        ------
        RegistryQueryError
            If the query fails.
        """
        query = f"""
            SELECT node_id
              FROM {self.table}
             WHERE type = $1
               AND active IS TRUE
          ORDER BY node_id
             LIMIT 1
        """
        try:
            node_id = await self._conn.afetchval(query, NodeRole.PRIMARY.to_db(), timeout=self._config.query_timeout)
        except QueryError as e:
            self._logger.error("active primary lookup failed", error=e.message)
            raise RegistryQueryError("get primary node id", e.message) from e

        if node_id is None:
            self._logger.warning("no active primary found in registry")
            return None
        return int(node_id)

    async def acreate_node_record(self, record: NodeRecord, action: str | None = None) -> bool:
        """Insert a new node record.

        A standby registered without an upstream gets the registry's current
        primary as upstream (a snapshot at call time), or no upstream if the
        registry has none.
        """
        values = await self._arecord_values(record, "create", action)
        if values is None:
            return False

        query = f"""
            INSERT INTO {self.table}
                   ({_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """
        try:
            await self._conn.aexecute(query, *values, timeout=self._config.query_timeout)
        except QueryError as e:
            self._logger.error("unable to create node record", node_id=record.node_id, error=e.message)
            return False

        self._logger.info("node record created", node_id=record.node_id, role=str(record.role))
        return True

    async def aupdate_node_record(self, record: NodeRecord, action: str | None = None) -> bool:
        """Replace every stored column of ``record.node_id``.

        Applies the same upstream rule as `acreate_node_record`. Returns False
        if the query fails or no record with this id exists.
        """
        values = await self._arecord_values(record, "update", action)
        if values is None:
            return False

        query = f"""
            UPDATE {self.table}
               SET type = $2,
                   upstream_node_id = $3,
                   node_name = $4,
                   conninfo = $5,
                   slot_name = $6,
                   priority = $7,
                   active = $8
             WHERE node_id = $1
        """
        try:
            status = await self._conn.aexecute(query, *values, timeout=self._config.query_timeout)
        except QueryError as e:
            self._logger.error("unable to update node record", node_id=record.node_id, error=e.message)
            return False

        if _affected_rows(status) == 0:
            self._logger.error("unable to update node record: no such node", node_id=record.node_id)
            return False

        self._logger.info("node record updated", node_id=record.node_id, role=str(record.role))
        return True

    async def aupdate_node_active(self, node_id: int, *, active: bool) -> bool:
        """Set only the ``active`` flag of a node."""
        query = f"UPDATE {self.table} SET active = $2 WHERE node_id = $1"
        try:
            status = await self._conn.aexecute(query, node_id, active, timeout=self._config.query_timeout)
        except QueryError as e:
            self._logger.error("unable to update node active flag", node_id=node_id, error=e.message)
            return False
        return _affected_rows(status) > 0

    async def adelete_node_record(self, node_id: int) -> bool:
        """Remove a node record. Returns False if the query fails or nothing was deleted."""
        query = f"DELETE FROM {self.table} WHERE node_id = $1"
        try:
            status = await self._conn.aexecute(query, node_id, timeout=self._config.query_timeout)
        except QueryError as e:
            self._logger.error("unable to delete node record", node_id=node_id, error=e.message)
            return False

        deleted = _affected_rows(status) > 0
        if deleted:
            self._logger.info("node record deleted", node_id=node_id)
        return deleted

    def _decode_row(self, row: Mapping[str, Any], operation: str) -> NodeRecord:
        try:
            return NodeRecord.from_row(row)
        except ValidationError as e:
            self._logger.error("unable to decode node record", node_id=row["node_id"], error_count=e.error_count())
            raise RegistryQueryError(operation, f"invalid node record {row['node_id']}: {e}") from e

    async def _arecord_values(self, record: NodeRecord, operation: str, action: str | None) -> tuple[object, ...] | None:
        if action is not None:
            self._logger.debug("node record write", operation=operation, node_id=record.node_id, action=action)

        try:
            upstream_node_id = await self._aresolve_upstream(record)
        except RegistryQueryError:
            self._logger.error(
                f"unable to {operation} node record: upstream lookup failed",
                node_id=record.node_id,
            )
            return None

        try:
            role = record.role.to_db()
        except ValueError as e:
            self._logger.error(f"unable to {operation} node record", node_id=record.node_id, error=str(e))
            return None

        return (
            record.node_id,
            role,
            upstream_node_id,
            record.node_name,
            record.conninfo,
            record.slot_name,
            record.priority,
            record.active,
        )

    async def _aresolve_upstream(self, record: NodeRecord) -> int | None:
        if record.upstream_node_id is not None:
            return record.upstream_node_id
        if record.role is not NodeRole.STANDBY:
            return None
        return await self.aget_master_node_id()


def _affected_rows(status: str) -> int:
    """Parse the row count from a command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0
