"""PostgreSQL node registry and primary discovery with asyncpg.

This module provides:

- `ConnectionParameters`: ordered libpq connection parameters
- `NodeConnection` / `aconnect`: single connections with session defaults applied
- `NodeRegistry`: CRUD on the node registry table
- `PrimaryDiscovery`: locate the live primary by probing registered nodes

Usage
-----
Register nodes::

    async with await aconnect_conninfo("host=db1 dbname=repmgr user=repmgr") as conn:
        registry = NodeRegistry(conn)
        await registry.ainstall_schema()
        await registry.acreate_node_record(record)

Find the primary, whatever the registry says::

    primary = await PrimaryDiscovery().adiscover_primary(conn)
    if primary is not None:
        async with primary:
            await primary.connection.aexecute("...")
"""

from .config import (
    ConnectionConfig,
    ConnectionDefaults,
    DiscoveryConfig,
    RegistryConfig,
    SessionSettings,
)
from .conninfo import CONNINFO_KEYWORDS, ConnectionParameters
from .connection import NodeConnection, aconnect, aconnect_as_user, aconnect_conninfo
from .discovery import PrimaryDiscovery
from .exceptions import (
    ConninfoParseError,
    ConnectionNotOpenError,
    NodeConnectionError,
    PrimaryNotFoundError,
    QueryError,
    RegistryQueryError,
    SessionConfigError,
    TopologyError,
)
from .models import ClusterProbeResult, DiscoveredPrimary, NodeProbe, NodeRecord
from .registry import NodeRegistry
from .session import aapply_session_defaults, aset_session_parameter

__all__ = [
    "CONNINFO_KEYWORDS",
    "ClusterProbeResult",
    "ConnectionConfig",
    "ConnectionDefaults",
    "ConnectionNotOpenError",
    "ConnectionParameters",
    "ConninfoParseError",
    "DiscoveredPrimary",
    "DiscoveryConfig",
    "NodeConnection",
    "NodeConnectionError",
    "NodeProbe",
    "NodeRecord",
    "NodeRegistry",
    "PrimaryDiscovery",
    "PrimaryNotFoundError",
    "QueryError",
    "RegistryConfig",
    "RegistryQueryError",
    "SessionConfigError",
    "SessionSettings",
    "TopologyError",
    "aapply_session_defaults",
    "aconnect",
    "aconnect_as_user",
    "aconnect_conninfo",
    "aset_session_parameter",
]
