"""
faultline Network Partition Controller

Cuts a node off from the rest of its cluster with iptables drop rules
installed on that node, and removes them again. Each peer gets a rule
pair: INPUT drops traffic from the peer, OUTPUT drops traffic to it.
"""

from __future__ import annotations

import contextlib
from typing import AsyncIterator, FrozenSet, Optional, Sequence, Set

import structlog

from faultline.cluster.node import ClusterNode
from faultline.config import FaultlineConfig, get_config
from faultline.errors import FaultlineError, PartitionError, PartitionRuleMissingError
from faultline.types import FirewallAction, Partition, peer_rules

logger = structlog.get_logger(__name__)


def get_partitions(cluster: Sequence[ClusterNode], target: ClusterNode) -> Partition:
    """Split ``cluster`` into ``[target]`` and everyone else.

    The input sequence is left untouched; the majority keeps its order.
    """
    majority = [node for node in cluster if node.private_addr != target.private_addr]
    return Partition(isolated=[target], majority=majority)


def _cluster_key(cluster: Sequence[ClusterNode], target: ClusterNode) -> FrozenSet[str]:
    return frozenset([n.private_addr for n in cluster] + [target.private_addr])


class PartitionController:
    """
    Installs and removes partitions.

    One isolate or heal may run per cluster at a time; a second call on the
    same cluster while one is in flight raises :class:`PartitionError`.
    """

    # Clusters with a change in flight, shared by all controllers
    _in_progress: Set[FrozenSet[str]] = set()

    def __init__(self, config: Optional[FaultlineConfig] = None) -> None:
        self.config = config or get_config()

    @contextlib.asynccontextmanager
    async def _exclusive(
        self, cluster: Sequence[ClusterNode], target: ClusterNode
    ) -> AsyncIterator[None]:
        key = _cluster_key(cluster, target)
        if key in self._in_progress:
            raise PartitionError(
                f"partition change already in progress on cluster {sorted(key)}"
            )
        self._in_progress.add(key)
        try:
            yield
        finally:
            self._in_progress.discard(key)

    async def isolate(self, target: ClusterNode, cluster: Sequence[ClusterNode]) -> Partition:
        """Drop all traffic between ``target`` and the other cluster members.

        Returns once every rule is installed.

        Raises:
            PartitionError: A rule could not be installed. Rules installed
                before the failure stay in place.
        """
        partition = get_partitions(cluster, target)
        async with self._exclusive(cluster, target):
            for peer in partition.majority:
                for rule in peer_rules(peer.private_addr):
                    try:
                        await target.firewall(FirewallAction.INSERT, rule)
                    except FaultlineError as e:
                        raise PartitionError(
                            f"failed to isolate {target} from {peer}: {rule}: {e}",
                            rule=str(rule),
                            peer=str(peer),
                            cause=e,
                        ) from e
                target.log.info("partition.peer_isolated", peer=peer.private_addr)

        logger.info("partition.created", **partition.to_dict())
        return partition

    async def heal(self, target: ClusterNode, cluster: Sequence[ClusterNode]) -> None:
        """Remove the rules :meth:`isolate` installed on ``target``.

        Raises:
            PartitionRuleMissingError: An expected rule is not installed.
            PartitionError: A rule could not be checked or removed.
        """
        partition = get_partitions(cluster, target)
        async with self._exclusive(cluster, target):
            for peer in partition.majority:
                for rule in peer_rules(peer.private_addr):
                    try:
                        present = await target.has_firewall_rule(rule)
                    except FaultlineError as e:
                        raise PartitionError(
                            f"failed to check {rule} on {target}: {e}",
                            rule=str(rule),
                            peer=str(peer),
                            cause=e,
                        ) from e
                    if not present:
                        raise PartitionRuleMissingError(
                            f"rule {rule} for {peer} is not installed on {target}",
                            rule=str(rule),
                            peer=str(peer),
                        )
                    try:
                        await target.firewall(FirewallAction.DELETE, rule)
                    except FaultlineError as e:
                        raise PartitionError(
                            f"failed to remove {rule} from {target}: {e}",
                            rule=str(rule),
                            peer=str(peer),
                            cause=e,
                        ) from e
                target.log.info("partition.peer_restored", peer=peer.private_addr)

        logger.info("partition.healed", target=str(target))
