"""Node registry and node connections against a real PostgreSQL server."""

from __future__ import annotations

import pytest
from testcontainers.postgres import PostgresContainer  # type: ignore[import-untyped]

from pgtopology.core.enums import NodeRole
from pgtopology.postgres import (
    ConnectionConfig,
    ConnectionParameters,
    NodeConnection,
    NodeConnectionError,
    NodeRecord,
    NodeRegistry,
    QueryError,
    SessionConfigError,
    SessionSettings,
    aconnect_as_user,
    aconnect_conninfo,
)

from .replication_fixtures import container_conninfo


def _record(node_id: int, role: NodeRole, **overrides: object) -> NodeRecord:
    values: dict[str, object] = {
        "node_id": node_id,
        "role": role,
        "node_name": f"node{node_id}",
        "conninfo": f"host=node{node_id} dbname=repmgr user=repmgr connect_timeout=2",
    }
    values.update(overrides)
    return NodeRecord(**values)  # type: ignore[arg-type]


@pytest.mark.integration
class TestNodeRegistry:
    """CRUD round trips through the registry table."""

    @pytest.mark.asyncio
    async def test_install_schema_is_idempotent(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)

        await registry.ainstall_schema()
        await registry.ainstall_schema()

        assert await registry.aget_all_node_records() == []

    @pytest.mark.asyncio
    async def test_create_and_get(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)
        primary = _record(1, NodeRole.PRIMARY, slot_name="repmgr_slot_1", priority=50)

        assert await registry.acreate_node_record(primary, action="primary register") is True
        stored = await registry.aget_node_record(1)

        assert stored == primary
        assert await registry.aget_node_record(2) is None

    @pytest.mark.asyncio
    async def test_standby_upstream_is_resolved_at_write_time(self, registry_conn: NodeConnection) -> None:
        """Verify a standby registered without upstream follows the active primary.

        Arrange
        -------
        - Register node1 as the active primary

        Act
        ---
        - Register node2 as a standby with no upstream
        - Register node3 as a standby with explicit upstream node2

        Assert
        ------
        - node2's stored upstream is node1
        - node3's explicit upstream is kept
        """
        registry = NodeRegistry(registry_conn)
        await registry.acreate_node_record(_record(1, NodeRole.PRIMARY))

        assert await registry.acreate_node_record(_record(2, NodeRole.STANDBY)) is True
        assert await registry.acreate_node_record(_record(3, NodeRole.STANDBY, upstream_node_id=2)) is True

        node2 = await registry.aget_node_record(2)
        node3 = await registry.aget_node_record(3)
        assert node2 is not None and node2.upstream_node_id == 1
        assert node3 is not None and node3.upstream_node_id == 2

    @pytest.mark.asyncio
    async def test_standby_without_primary_has_null_upstream(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)

        assert await registry.acreate_node_record(_record(2, NodeRole.STANDBY)) is True

        node2 = await registry.aget_node_record(2)
        assert node2 is not None
        assert node2.upstream_node_id is None
        assert await registry.aget_master_node_id() is None

    @pytest.mark.asyncio
    async def test_duplicate_and_dangling_upstream_are_rejected(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)
        await registry.acreate_node_record(_record(1, NodeRole.PRIMARY))

        assert await registry.acreate_node_record(_record(1, NodeRole.PRIMARY)) is False
        assert await registry.acreate_node_record(_record(5, NodeRole.STANDBY, upstream_node_id=42)) is False
        assert [record.node_id for record in await registry.aget_all_node_records()] == [1]

    @pytest.mark.asyncio
    async def test_update_is_idempotent(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)
        await registry.acreate_node_record(_record(1, NodeRole.PRIMARY))
        await registry.acreate_node_record(_record(2, NodeRole.STANDBY))
        promoted = _record(2, NodeRole.PRIMARY, priority=10)

        assert await registry.aupdate_node_record(promoted, action="standby promote") is True
        assert await registry.aupdate_node_record(promoted) is True

        stored = await registry.aget_node_record(2)
        assert stored is not None
        assert stored.role is NodeRole.PRIMARY
        assert stored.priority == 10
        assert stored.upstream_node_id is None

    @pytest.mark.asyncio
    async def test_update_of_missing_node(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)

        assert await registry.aupdate_node_record(_record(9, NodeRole.PRIMARY)) is False

    @pytest.mark.asyncio
    async def test_master_node_id_ignores_inactive_primaries(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)
        await registry.acreate_node_record(_record(1, NodeRole.PRIMARY, active=False))
        await registry.acreate_node_record(_record(2, NodeRole.PRIMARY))

        assert await registry.aget_master_node_id() == 2

        assert await registry.aupdate_node_active(2, active=False) is True
        assert await registry.aget_master_node_id() is None

    @pytest.mark.asyncio
    async def test_candidates_exclude_witness_and_are_ranked(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)
        for record in (
            _record(1, NodeRole.PRIMARY, active=False),
            _record(2, NodeRole.STANDBY, upstream_node_id=1, priority=50),
            _record(3, NodeRole.WITNESS),
            _record(4, NodeRole.PRIMARY),
            _record(5, NodeRole.BDR, priority=50),
            _record(6, NodeRole.STANDBY, upstream_node_id=4, priority=10),
        ):
            assert await registry.acreate_node_record(record) is True

        candidates = await registry.aget_candidate_records()

        assert [record.node_id for record in candidates] == [4, 6, 2, 5, 1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("node_name", "conninfo"),
        [("", "host=node1"), ("n" * 64, "host=node1"), ("node1", "")],
    )
    async def test_schema_rejects_rows_records_cannot_hold(
        self, registry_conn: NodeConnection, node_name: str, conninfo: str
    ) -> None:
        with pytest.raises(QueryError, match="check constraint"):
            await registry_conn.aexecute(
                "INSERT INTO repmgr.nodes (node_id, type, node_name, conninfo) VALUES (1, 'primary', $1, $2)",
                node_name,
                conninfo,
            )

        assert await NodeRegistry(registry_conn).aget_all_node_records() == []

    @pytest.mark.asyncio
    async def test_delete(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)
        await registry.acreate_node_record(_record(1, NodeRole.PRIMARY))

        assert await registry.adelete_node_record(1) is True
        assert await registry.adelete_node_record(1) is False
        assert await registry.aget_node_record(1) is None


@pytest.mark.integration
class TestNodeConnection:
    """Session defaults and server introspection on a live connection."""

    @pytest.mark.asyncio
    async def test_session_defaults_are_applied(self, registry_conn: NodeConnection) -> None:
        assert await registry_conn.afetchval("SHOW synchronous_commit") == "local"

    @pytest.mark.asyncio
    async def test_standalone_server_is_not_in_recovery(self, registry_conn: NodeConnection) -> None:
        assert await registry_conn.ais_in_recovery() is False
        assert await registry_conn.aget_wal_location(in_recovery=False) is not None

    @pytest.mark.asyncio
    async def test_server_version(self, registry_conn: NodeConnection) -> None:
        version_num, version = await registry_conn.aget_server_version()

        assert version_num >= 170000
        assert version.startswith("17")

    @pytest.mark.asyncio
    async def test_effective_parameters(self, postgres_container: PostgresContainer) -> None:
        conninfo = container_conninfo(postgres_container)

        async with await aconnect_conninfo(conninfo) as conn:
            params = await ConnectionParameters.afrom_connection(conn)

        assert params.get("user") == postgres_container.username
        assert params.get("dbname") == postgres_container.dbname
        assert params.get("application_name") == "pgtopology"
        assert params.get("password") == postgres_container.password

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self, registry_conn: NodeConnection) -> None:
        registry = NodeRegistry(registry_conn)

        with pytest.raises(QueryError):
            async with registry_conn.atransaction():
                await registry_conn.aexecute(
                    "INSERT INTO repmgr.nodes (node_id, type, node_name, conninfo) VALUES (1, 'primary', 'n1', 'x')"
                )
                await registry_conn.aexecute("SELECT 1/0")

        assert await registry.aget_node_record(1) is None

    @pytest.mark.asyncio
    async def test_unknown_setting_fails_strict_connect(self, postgres_container: PostgresContainer) -> None:
        config = ConnectionConfig(session=SessionSettings(parameters={"synchronous_commit": "sometimes"}))

        with pytest.raises(SessionConfigError):
            await aconnect_conninfo(container_conninfo(postgres_container), config)

    @pytest.mark.asyncio
    async def test_wrong_password(self, postgres_container: PostgresContainer) -> None:
        conninfo = container_conninfo(postgres_container, password="wrong")

        with pytest.raises(NodeConnectionError):
            await aconnect_conninfo(conninfo)

    @pytest.mark.asyncio
    async def test_connect_as_other_user(self, postgres_container: PostgresContainer) -> None:
        conninfo = container_conninfo(postgres_container, application_name="repmgrd")

        async with await aconnect_as_user(conninfo, postgres_container.username) as conn:
            assert await conn.afetchval("SELECT current_setting('application_name')") == "pgtopology"
