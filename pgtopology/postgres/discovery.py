"""Primary discovery by live probing.

Why Probe?
----------
The registry's ``type = 'primary' AND active`` row is only what the cluster
was last told. After an unannounced promotion, or a primary that crashed
before anyone updated the catalog, that row points at the wrong node. The
only authoritative answer comes from the nodes themselves: a node that is
not in recovery (``pg_is_in_recovery()`` is false) accepts writes.

Probe Order
-----------
Candidates come from the registry ordered so the registered primary is
usually first:

1. ``active`` nodes before inactive ones
2. nodes registered as primary before everything else
3. ascending ``priority``
4. ascending ``node_id``

When the registry is accurate the first probe succeeds. When it is wrong,
every node is probed at most once. Witness nodes are never candidates.

Failure Policy
--------------
A candidate that cannot be reached, whose conninfo cannot be parsed, or that
fails the recovery query is logged and skipped; one dead node never aborts
the pass. A failure reading the registry itself propagates immediately.

Concurrency
-----------
With ``max_concurrent_probes > 1`` probes run as tasks, but results are
consumed in rank order. The answer is the highest-ranked verified primary,
never simply the fastest one to respond. Once it is known the remaining
probes are cancelled and any connection they opened is closed.

Usage
-----
>>> discovery = PrimaryDiscovery(DiscoveryConfig(max_concurrent_probes=4))
>>> primary = await discovery.adiscover_primary(registry_conn)
>>> if primary is None:
...     raise SystemExit("no primary found")
>>> async with primary:
...     await primary.connection.aexecute("CHECKPOINT")
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, NamedTuple

from ..core.enums import ProbeStatus
from ..logger import get_logger
from ..resilience import retry
from .config import DiscoveryConfig
from .conninfo import ConnectionParameters
from .connection import aconnect
from .exceptions import ConninfoParseError, NodeConnectionError, PrimaryNotFoundError, QueryError
from .models import ClusterProbeResult, DiscoveredPrimary, NodeProbe, NodeRecord
from .registry import NodeRegistry

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ..logger import BoundLogger
    from .connection import NodeConnection


class _ProbeOutcome(NamedTuple):
    probe: NodeProbe
    connection: NodeConnection | None


class PrimaryDiscovery:
    """Locate the node that is really acting as primary.

    Attributes
    ----------
    config : DiscoveryConfig
        Connection timeouts, registry location, probe concurrency and the
        optional retry policy used by `adiscover_primary_or_raise`.
    """

    __slots__ = ("_config", "_logger")

    def __init__(self, config: DiscoveryConfig | None = None, *, logger: BoundLogger | None = None) -> None:
        self._config = config or DiscoveryConfig()
        self._logger = logger or get_logger(__name__)

    @property
    def config(self) -> DiscoveryConfig:
        return self._config

    async def adiscover_primary(self, registry_conn: NodeConnection) -> DiscoveredPrimary | None:
        """Return an open connection to the verified primary, or None.

        Parameters
        ----------
        registry_conn
            Caller-owned connection to a node holding the registry. Only read.

        Returns
        -------
        DiscoveredPrimary | None
            The primary with an open connection the caller must close, or
            None if no candidate is a reachable primary.

        Raises
        ------
        RegistryQueryError
            If the candidate list cannot be read.
        """
        candidates = await self._aget_candidates(registry_conn)

        if self._config.max_concurrent_probes > 1 and len(candidates) > 1:
            found = await self._adiscover_concurrent(candidates)
        else:
            found = await self._adiscover_sequential(candidates)

        if found is None:
            self._logger.warning("no primary found", candidate_count=len(candidates))
        else:
            self._logger.info("current primary node found", node_id=found.node_id, node_name=found.node.node_name)
        return found

    async def adiscover_primary_or_raise(self, registry_conn: NodeConnection) -> DiscoveredPrimary:
        """Like `adiscover_primary`, but raise when nothing is found.

        When ``config.retry`` is set, whole discovery passes are repeated with
        jittered backoff while no primary is found (for example mid-promotion).

        Raises
        ------
        PrimaryNotFoundError
            If no primary is found after all attempts.
        RegistryQueryError
            If the candidate list cannot be read.
        """
        retry_config = self._config.retry
        if retry_config is None:
            return await self._adiscover_or_raise(registry_conn)

        if retry_config.retry_on_exceptions is None:
            retry_config = retry_config.model_copy(update={"retry_on_exceptions": (PrimaryNotFoundError,)})
        return await retry(retry_config)(self._adiscover_or_raise)(registry_conn)

    async def aprobe_cluster(self, registry_conn: NodeConnection) -> ClusterProbeResult:
        """Probe every candidate and report live state next to the registry's view.

        No connection is kept open. Unlike discovery, probing does not stop at
        the first primary, so split-brain and a stale registry are visible.
        """
        registry = NodeRegistry(registry_conn, self._config.registry, logger=self._logger)
        candidates = await self._aget_candidates(registry_conn)
        registry_primary_id = await registry.aget_master_node_id()

        semaphore = asyncio.Semaphore(self._config.max_concurrent_probes)

        async def bounded(node: NodeRecord) -> _ProbeOutcome:
            async with semaphore:
                return await self._aprobe(node, keep_connection=False, with_wal=True)

        outcomes = await asyncio.gather(*(bounded(node) for node in candidates))
        probes = tuple(outcome.probe for outcome in outcomes)
        nodes = tuple(
            node.model_copy(
                update={
                    "is_reachable": probe.is_reachable,
                    "is_visible": probe.is_visible,
                    "wal_location": probe.wal_location,
                }
            )
            for node, probe in zip(candidates, probes, strict=True)
        )

        result = ClusterProbeResult(nodes=nodes, probes=probes, registry_primary_id=registry_primary_id)
        if result.is_split_brain:
            self._logger.error("more than one node is not in recovery", primary_node_ids=result.primary_node_ids)
        elif result.is_registry_stale:
            self._logger.warning(
                "registry primary does not match live primary",
                registry_primary_id=registry_primary_id,
                live_primary_id=result.primary_node_id,
            )
        return result

    async def _adiscover_or_raise(self, registry_conn: NodeConnection) -> DiscoveredPrimary:
        found = await self.adiscover_primary(registry_conn)
        if found is None:
            raise PrimaryNotFoundError("no primary found among registered nodes")
        return found

    async def _aget_candidates(self, registry_conn: NodeConnection) -> list[NodeRecord]:
        self._logger.info("retrieving node list")
        registry = NodeRegistry(registry_conn, self._config.registry, logger=self._logger)
        return await registry.aget_candidate_records()

    async def _adiscover_sequential(self, candidates: Sequence[NodeRecord]) -> DiscoveredPrimary | None:
        for node in candidates:
            outcome = await self._aprobe(node, keep_connection=True)
            if outcome.connection is not None:
                return DiscoveredPrimary(connection=outcome.connection, node_id=node.node_id, node=node)
        return None

    async def _adiscover_concurrent(self, candidates: Sequence[NodeRecord]) -> DiscoveredPrimary | None:
        semaphore = asyncio.Semaphore(self._config.max_concurrent_probes)

        async def bounded(node: NodeRecord) -> _ProbeOutcome:
            async with semaphore:
                return await self._aprobe(node, keep_connection=True)

        tasks = [asyncio.create_task(bounded(node), name=f"probe-node-{node.node_id}") for node in candidates]
        winner: asyncio.Task[_ProbeOutcome] | None = None
        try:
            for node, task in zip(candidates, tasks, strict=True):
                outcome = await task
                if outcome.connection is not None:
                    winner = task
                    return DiscoveredPrimary(connection=outcome.connection, node_id=node.node_id, node=node)
            return None
        finally:
            for task in tasks:
                if task is winner:
                    continue
                if task.done():
                    _discard_probe(task)
                else:
                    task.add_done_callback(_discard_probe)
                    task.cancel()

    async def _aprobe(self, node: NodeRecord, *, keep_connection: bool, with_wal: bool = False) -> _ProbeOutcome:
        """Probe one candidate.

        The returned connection is set only when the node is a primary and
        ``keep_connection`` is True; in every other case it has been closed.
        """
        log = self._logger.bind(node_id=node.node_id, node_name=node.node_name)
        log.info("checking role of cluster node")
        started = time.perf_counter()

        def outcome(status: ProbeStatus, message: str | None = None, wal_location: str | None = None) -> NodeProbe:
            return NodeProbe(
                node_id=node.node_id,
                node_name=node.node_name,
                status=status,
                latency_s=time.perf_counter() - started,
                wal_location=wal_location,
                message=message,
            )

        try:
            params = ConnectionParameters.parse(node.conninfo)
        except ConninfoParseError as e:
            log.error("unable to parse node conninfo", error=str(e))
            return _ProbeOutcome(outcome(ProbeStatus.SKIPPED, str(e)), None)

        try:
            conn = await aconnect(params, self._config.connection, logger=log)
        except ConninfoParseError as e:
            log.error("unable to use node conninfo", error=str(e))
            return _ProbeOutcome(outcome(ProbeStatus.SKIPPED, str(e)), None)
        except NodeConnectionError as e:
            log.warning("unable to connect to node", error=e.message)
            return _ProbeOutcome(outcome(ProbeStatus.UNREACHABLE, e.message), None)

        try:
            in_recovery = await conn.ais_in_recovery(timeout=self._config.query_timeout)
            wal_location = None
            if with_wal:
                wal_location = await conn.aget_wal_location(
                    in_recovery=in_recovery, timeout=self._config.query_timeout
                )
        except QueryError as e:
            log.error("unable to retrieve recovery state from node", error=e.message)
            await conn.aclose()
            return _ProbeOutcome(outcome(ProbeStatus.QUERY_FAILED, e.message), None)
        except BaseException:
            conn.terminate()
            raise

        if in_recovery:
            log.debug("node is in recovery")
            await conn.aclose()
            return _ProbeOutcome(outcome(ProbeStatus.STANDBY, wal_location=wal_location), None)

        log.debug("node is not in recovery")
        probe = outcome(ProbeStatus.PRIMARY, wal_location=wal_location)
        if keep_connection:
            return _ProbeOutcome(probe, conn)
        await conn.aclose()
        return _ProbeOutcome(probe, None)


def _discard_probe(task: asyncio.Task[_ProbeOutcome]) -> None:
    """Close the connection of a probe whose result is no longer wanted."""
    if task.cancelled() or task.exception() is not None:
        return
    connection = task.result().connection
    if connection is not None:
        connection.terminate()
