"""Node registry and live primary discovery for PostgreSQL replication clusters."""

from __future__ import annotations

from .core import NodeRole, ProbeStatus
from .postgres import (
    ConnectionParameters,
    DiscoveredPrimary,
    DiscoveryConfig,
    NodeConnection,
    NodeRecord,
    NodeRegistry,
    PrimaryDiscovery,
    aconnect,
)

__all__ = [
    "ConnectionParameters",
    "DiscoveredPrimary",
    "DiscoveryConfig",
    "NodeConnection",
    "NodeRecord",
    "NodeRegistry",
    "NodeRole",
    "PrimaryDiscovery",
    "ProbeStatus",
    "aconnect",
]

__version__ = "0.1.0"
