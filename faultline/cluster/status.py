"""
faultline Cluster Status

Status queries against live nodes. Nothing is cached: every call asks the
nodes again.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import structlog

from faultline.cluster.node import ClusterNode
from faultline.errors import (
    ClusterStatusError,
    FaultlineError,
    InconsistentStateError,
)
from faultline.types import ClusterState, ClusterStatus

logger = structlog.get_logger(__name__)

DEFAULT_HEALTHY_STATES = (ClusterState.ACTIVE.value, ClusterState.DEGRADED.value)


async def get_status(node: ClusterNode) -> ClusterStatus:
    """Cluster status as reported by ``node``.

    A failure is reported to the caller as-is; it does not by itself mean
    the node is partitioned.
    """
    status = await node.status()
    node.log.debug("cluster.status", state=status.state, cluster=status.cluster)
    return status


def statuses_in_sync(a: ClusterStatus, b: ClusterStatus) -> bool:
    """Convergence predicate: both snapshots report the same state."""
    return a.in_sync_with(b)


async def check_cluster_status(
    nodes: Sequence[ClusterNode],
    healthy_states: Optional[Iterable[str]] = None,
) -> List[ClusterStatus]:
    """Verify that ``nodes`` form a healthy cluster.

    Every node must report a status, all must agree on the cluster name and
    aggregate state, and the state must be one of ``healthy_states``.

    Returns:
        One status per node, in node order.

    Raises:
        ClusterStatusError: A status is unavailable or the state is unhealthy.
        InconsistentStateError: Nodes disagree.
    """
    if not nodes:
        raise ClusterStatusError("no nodes to check")
    healthy = set(healthy_states or DEFAULT_HEALTHY_STATES)

    statuses: List[ClusterStatus] = []
    for node in nodes:
        try:
            statuses.append(await get_status(node))
        except FaultlineError as e:
            raise ClusterStatusError(f"status unavailable on {node}: {e}", cause=e) from e

    reference, reference_node = statuses[0], nodes[0]
    for node, status in zip(nodes[1:], statuses[1:]):
        if status.cluster != reference.cluster:
            raise InconsistentStateError(
                f"cluster name mismatch: {reference_node} reports {reference.cluster!r}, "
                f"{node} reports {status.cluster!r}"
            )
        if not statuses_in_sync(reference, status):
            raise InconsistentStateError(
                f"cluster status is not in sync: {reference_node} reports "
                f"{reference.state!r}, {node} reports {status.state!r}"
            )

    if reference.state not in healthy:
        raise ClusterStatusError(
            f"cluster {reference.cluster!r} is {reference.state!r}, "
            f"expected one of {sorted(healthy)}"
        )

    logger.info(
        "cluster.status_ok",
        cluster=reference.cluster,
        state=reference.state,
        nodes=[str(n) for n in nodes],
    )
    return statuses
