"""
faultline Types

Data model shared by the remote channel, the cluster queries, the partition
controller and the failover orchestrator:

- Node addressing
- The cluster status document reported by every node
- Firewall rules and network partitions
- Long-running remote operations
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from faultline.cluster.node import ClusterNode


# =============================================================================
# Node Types
# =============================================================================


@dataclass(frozen=True)
class NodeAddress:
    """Addresses of a cluster member.

    ``private_addr`` is used for cluster-internal traffic (and therefore by
    the firewall rules and leadership checks), ``public_addr`` for access
    from the test harness.
    """

    private_addr: str
    public_addr: str

    def to_dict(self) -> Dict[str, str]:
        return {"public_ip": self.public_addr, "ip": self.private_addr}

    def __str__(self) -> str:
        return f"node(private_addr={self.private_addr}, public_addr={self.public_addr})"


# =============================================================================
# Cluster Status
# =============================================================================


class ClusterState(str, Enum):
    """Aggregate cluster states reported by the status command."""
    ACTIVE = "active"
    DEGRADED = "degraded"


class StatusApplication(BaseModel):
    """Application running in the cluster."""
    model_config = ConfigDict(extra="ignore")

    name: str = ""


class StatusToken(BaseModel):
    """Cluster join token."""
    model_config = ConfigDict(extra="ignore")

    token: str = ""


class StatusNode(BaseModel):
    """A member as seen by the reporting node."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    addr: str = Field(default="", alias="advertise_ip")


class ClusterStatus(BaseModel):
    """Cluster status snapshot as perceived by a single node."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    application: StatusApplication = Field(default_factory=StatusApplication)
    cluster: str = Field(default="", alias="domain")
    state: str = ""
    token: StatusToken = Field(default_factory=StatusToken)
    nodes: List[StatusNode] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.state == ClusterState.ACTIVE.value

    @property
    def node_addrs(self) -> List[str]:
        return [n.addr for n in self.nodes]

    def in_sync_with(self, other: ClusterStatus) -> bool:
        """Two snapshots are in sync iff their aggregate states match."""
        return self.state == other.state


class StatusDocument(BaseModel):
    """Top-level JSON document printed by the status command."""
    model_config = ConfigDict(extra="ignore")

    cluster: ClusterStatus


# =============================================================================
# Partitions
# =============================================================================


class FirewallChain(str, Enum):
    """iptables chains used to drop peer traffic."""
    INPUT = "INPUT"
    OUTPUT = "OUTPUT"


class FirewallAction(str, Enum):
    """iptables actions for a drop rule."""
    INSERT = "-I"
    CHECK = "-C"
    DELETE = "-D"


@dataclass(frozen=True)
class FirewallRule:
    """Drop rule for traffic between a node and one peer.

    INPUT rules match on the peer as source, OUTPUT rules on the peer as
    destination.
    """

    chain: FirewallChain
    peer: str

    @property
    def match(self) -> str:
        return "-s" if self.chain == FirewallChain.INPUT else "-d"

    def render(self, action: FirewallAction, template: str) -> str:
        return template.format(
            action=action.value,
            chain=self.chain.value,
            match=self.match,
            peer=self.peer,
        )

    def __str__(self) -> str:
        return f"{self.chain.value} {self.match} {self.peer} -j DROP"


def peer_rules(peer: str) -> Tuple[FirewallRule, FirewallRule]:
    """The reciprocal pair of rules isolating a node from ``peer``."""
    return (
        FirewallRule(FirewallChain.INPUT, peer),
        FirewallRule(FirewallChain.OUTPUT, peer),
    )


@dataclass
class Partition:
    """Two disjoint node subsets created by isolating a single node.

    Indexing follows the ``[isolated, majority]`` order, so ``partition[1]``
    is the side expected to elect a new leader.
    """

    isolated: List["ClusterNode"]
    majority: List["ClusterNode"]

    def __getitem__(self, index: int) -> List["ClusterNode"]:
        return (self.isolated, self.majority)[index]

    def __iter__(self) -> Iterator[List["ClusterNode"]]:
        yield self.isolated
        yield self.majority

    def __len__(self) -> int:
        return 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isolated": [str(n) for n in self.isolated],
            "majority": [str(n) for n in self.majority],
        }


# =============================================================================
# Operations
# =============================================================================


class OperationStatus(str, Enum):
    """Terminal operation states. Anything else is still in progress."""
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Operation:
    """A long-running operation launched on a node."""

    operation_id: str
    node: str
    status: Optional[str] = None
    polls: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (OperationStatus.COMPLETED.value, OperationStatus.FAILED.value)

    def observe(self, status: str) -> None:
        """Record a polled status."""
        self.polls += 1
        self.status = status
        if self.is_terminal and self.completed_at is None:
            self.completed_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "node": self.node,
            "status": self.status,
            "polls": self.polls,
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }
