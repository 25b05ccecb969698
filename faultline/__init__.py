"""
faultline - chaos failover testing for clustered deployments

Drives a leader failover against a live cluster over ssh:
- Leader detection through the coordination layer
- Network partitions with iptables drop rules
- Bounded, deadline-aware polling of cluster state
- Long-running remote operations tracked to completion
"""

__version__ = "0.1.0"

from faultline.cluster import ClusterNode, build_cluster, get_leader
from faultline.config import FaultlineConfig, get_config, set_config
from faultline.failover import FailoverResult, FailoverScenario, run_failover
from faultline.partition import PartitionController, get_partitions

__all__ = [
    "ClusterNode",
    "FaultlineConfig",
    "FailoverResult",
    "FailoverScenario",
    "PartitionController",
    "build_cluster",
    "get_config",
    "get_leader",
    "get_partitions",
    "run_failover",
    "set_config",
    "__version__",
]
