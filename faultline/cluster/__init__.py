"""
faultline Cluster

Cluster members, status queries and leader detection.
"""

from faultline.cluster.leader import get_leader
from faultline.cluster.node import ClusterNode, build_cluster
from faultline.cluster.status import (
    check_cluster_status,
    get_status,
    statuses_in_sync,
)

__all__ = [
    "ClusterNode",
    "build_cluster",
    "get_leader",
    "get_status",
    "check_cluster_status",
    "statuses_in_sync",
]
