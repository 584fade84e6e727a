from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from ..core.enums import NodeRole, ProbeStatus
from .connection import NodeConnection  # noqa: TC001

if TYPE_CHECKING:
    from types import TracebackType


class NodeRecord(BaseModel):
    """One registered cluster member.

    ``role`` and ``active`` are the registry's view and may be stale; only a
    live probe says which node is really the primary. ``is_reachable``,
    ``is_visible`` and ``wal_location`` are filled in by probes and are never
    persisted.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    node_id: int = Field(gt=0)
    role: NodeRole
    upstream_node_id: int | None = Field(default=None, gt=0)
    node_name: str = Field(min_length=1, max_length=63)
    conninfo: str = Field(min_length=1)
    slot_name: str | None = Field(default=None, max_length=63)
    priority: int = Field(default=100, ge=0)
    active: bool = Field(default=True)

    is_reachable: bool = Field(default=False, exclude=True)
    is_visible: bool = Field(default=False, exclude=True)
    wal_location: str | None = Field(default=None, exclude=True)

    @field_validator("role", mode="before")
    @classmethod
    def _parse_role(cls, value: Any) -> NodeRole:
        if isinstance(value, NodeRole):
            return value
        return NodeRole.parse(None if value is None else str(value))

    @field_validator("slot_name", mode="before")
    @classmethod
    def _blank_slot_is_none(cls, value: Any) -> Any:
        return value or None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Self:
        """Build a record from a registry row (``type`` column holds the role)."""
        return cls(
            node_id=row["node_id"],
            role=row["type"],
            upstream_node_id=row["upstream_node_id"],
            node_name=row["node_name"],
            conninfo=row["conninfo"],
            slot_name=row["slot_name"],
            priority=row["priority"],
            active=row["active"],
        )

    @property
    def is_primary_role(self) -> bool:
        return self.role is NodeRole.PRIMARY

    @property
    def candidate_rank(self) -> tuple[bool, bool, int, int]:
        """Sort key for discovery: active, then registered primary, then priority, then id."""
        return (not self.active, not self.is_primary_role, self.priority, self.node_id)


class NodeProbe(BaseModel):
    """Outcome of probing a single candidate."""

    model_config = ConfigDict(frozen=True)

    node_id: int
    node_name: str
    status: ProbeStatus
    latency_s: float | None = None
    wal_location: str | None = None
    message: str | None = None

    @property
    def is_reachable(self) -> bool:
        return self.status in (ProbeStatus.PRIMARY, ProbeStatus.STANDBY, ProbeStatus.QUERY_FAILED)

    @property
    def is_visible(self) -> bool:
        return self.status in (ProbeStatus.PRIMARY, ProbeStatus.STANDBY)


class DiscoveredPrimary(BaseModel):
    """The verified primary and an open connection to it.

    The caller owns ``connection`` and must close it, either explicitly or by
    using this object as an async context manager.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    connection: NodeConnection
    node_id: int
    node: NodeRecord

    @property
    def conninfo(self) -> str:
        return self.node.conninfo

    async def aclose(self) -> None:
        await self.connection.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()


class ClusterProbeResult(BaseModel):
    """Live state of every candidate node, compared with the registry."""

    model_config = ConfigDict(frozen=True)

    nodes: tuple[NodeRecord, ...]
    probes: tuple[NodeProbe, ...]
    registry_primary_id: int | None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def primary_node_ids(self) -> tuple[int, ...]:
        """Nodes that report they are not in recovery, in candidate order."""
        return tuple(p.node_id for p in self.probes if p.status is ProbeStatus.PRIMARY)

    @property
    def primary_node_id(self) -> int | None:
        """Highest-ranked live primary, the node discovery would return."""
        return self.primary_node_ids[0] if self.primary_node_ids else None

    @property
    def is_split_brain(self) -> bool:
        return len(self.primary_node_ids) > 1

    @property
    def is_registry_stale(self) -> bool:
        """True when the registry's active primary is not the live primary."""
        return self.registry_primary_id != self.primary_node_id

    @property
    def unreachable_node_ids(self) -> tuple[int, ...]:
        return tuple(p.node_id for p in self.probes if not p.is_reachable)

