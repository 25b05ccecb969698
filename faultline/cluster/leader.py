"""
faultline Leader Detection

Asks every node whether the coordination layer names it leader and
reconciles the answers into a single leader.
"""

from __future__ import annotations

from typing import Optional, Sequence

import structlog

from faultline.cluster.node import ClusterNode
from faultline.errors import LeaderNotFoundError, MultipleLeadersError

logger = structlog.get_logger(__name__)


async def get_leader(nodes: Sequence[ClusterNode]) -> ClusterNode:
    """Return the one node that believes itself leader.

    Nodes are queried one after another.

    Raises:
        LeaderNotFoundError: No node claims leadership.
        MultipleLeadersError: Two nodes claim leadership. This can happen
            transiently during an election, so pollers should retry.
    """
    leader: Optional[ClusterNode] = None
    for node in nodes:
        if not await node.is_leader():
            continue
        if leader is not None:
            logger.warning("leader.multiple", first=str(leader), second=str(node))
            raise MultipleLeadersError(f"multiple leader nodes [{leader}, {node}]")
        leader = node

    if leader is None:
        raise LeaderNotFoundError(
            f"unable to get leader node among {[str(n) for n in nodes]}"
        )
    logger.debug("leader.found", leader=str(leader))
    return leader
