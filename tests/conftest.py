"""
Shared fixtures: a simulated cluster that answers the real command lines.

``FakeCluster`` keeps per-host iptables rules, the coordination key and
the operations launched on each host, and interprets the status, leader
lookup, firewall, operation and power commands issued through
``FakeChannel``. Elections and convergence can be delayed by a number of
queries to exercise the polling loops.
"""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

import pytest

from faultline.cluster.node import ClusterNode
from faultline.config import FaultlineConfig, RetryPolicyConfig, SSHConfig, TimeoutConfig
from faultline.errors import CommandError, ConnectionLostError, NodeOfflineError
from faultline.remote.channel import RemoteChannel
from faultline.types import NodeAddress


_IPTABLES = re.compile(r"^sudo iptables (-[ICD]) (INPUT|OUTPUT) (-[sd]) (\S+) -j DROP$")
_LEADER_LOOKUP = re.compile(r"gravity enter -- --notty etcdctl -- get /planet/cluster/(\S+)/master$")
_OPERATION_LAUNCH = re.compile(r"^sudo -E \S+/gravity (\w+)")
_OPERATION_STATUS = re.compile(r"--operation-id=(\S+) -q$")

STATUS_COMMAND = "sudo gravity status --output=json --system-log-file=./telekube-system.log"
POWER_COMMANDS = {
    "sudo shutdown -r now",
    "sudo reboot -f",
    "sudo shutdown -h now",
    "sudo poweroff -f",
}


def public_addr(private_addr: str) -> str:
    return "203.0.113." + private_addr.rsplit(".", 1)[1]


class FakeHost:
    """State of one simulated machine."""

    def __init__(self, addr: str):
        self.addr = addr
        self.rules: Set[Tuple[str, str, str]] = set()
        self.commands: List[str] = []
        self.power_cycles = 0
        # Commands still answered before a pending shutdown drops the session
        self.shutdown_in: Optional[int] = None


class FakeCluster:
    """A simulated cluster answering remote commands.

    Args:
        addrs: Private addresses, in cluster order.
        leader: Private address of the initial leader, or ``None``.
        election_delay: Leader lookups on the majority that still return
            the isolated leader before a new one is elected.
        convergence_delay: Status queries after healing that still report
            ``degraded``.
    """

    def __init__(
        self,
        addrs: List[str],
        leader: Optional[str] = None,
        name: str = "example.com",
        election_delay: int = 0,
        convergence_delay: int = 0,
    ):
        self.addrs = list(addrs)
        self.hosts: Dict[str, FakeHost] = {a: FakeHost(a) for a in addrs}
        self.leader = leader
        self.name = name
        self.election_delay = election_delay
        self.convergence_delay = convergence_delay
        self.elect_new_leader = True
        # Commands a graceful power command lets through before the host goes down
        self.shutdown_lag = 0

        # Per-host overrides
        self.claims: Dict[str, str] = {}
        self.states: Dict[str, str] = {}
        self.domains: Dict[str, str] = {}

        # Operations: id -> remaining statuses, the last one sticks
        self.operation_script: List[str] = ["in_progress", "completed"]
        self.operations: Dict[str, List[str]] = {}
        self.launch_output: Callable[[str], str] = lambda op_id: f"{op_id}\n"

        self._failures: List[list] = []
        self._election_lookups = 0
        self._pending_convergence = 0

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def rules(self, addr: str) -> Set[Tuple[str, str, str]]:
        return self.hosts[addr].rules

    def isolated(self, addr: str) -> bool:
        peers = [a for a in self.addrs if a != addr]
        rules = self.hosts[addr].rules
        return bool(peers) and all(
            ("INPUT", "-s", p) in rules and ("OUTPUT", "-d", p) in rules for p in peers
        )

    @property
    def partitioned(self) -> bool:
        return any(h.rules for h in self.hosts.values())

    def commands(self, addr: str) -> List[str]:
        return self.hosts[addr].commands

    # -------------------------------------------------------------------------
    # Fault injection
    # -------------------------------------------------------------------------

    def fail_on(
        self,
        pattern: str,
        addr: Optional[str] = None,
        error: Optional[Callable[[str], Exception]] = None,
        times: Optional[int] = None,
    ) -> None:
        """Fail commands containing ``pattern`` (on ``addr`` or anywhere).

        With ``times`` set, only that many matching commands fail.
        """
        factory = error or (lambda command: CommandError(command, 1, "injected failure"))
        self._failures.append([addr, pattern, factory, times])

    def clear_failures(self) -> None:
        self._failures.clear()

    # -------------------------------------------------------------------------
    # Command interpreter
    # -------------------------------------------------------------------------

    def handle(self, addr: str, command: str) -> str:
        host = self.hosts[addr]
        host.commands.append(command)

        if host.shutdown_in is not None:
            if host.shutdown_in == 0:
                host.shutdown_in = None
                raise ConnectionLostError(f"connection to {addr} closed by remote host")
            host.shutdown_in -= 1

        for failure in self._failures:
            target, pattern, factory, remaining = failure
            if remaining == 0:
                continue
            if (target is None or target == addr) and pattern in command:
                if remaining is not None:
                    failure[3] = remaining - 1
                raise factory(command)

        if command == "true":
            return ""
        if command == STATUS_COMMAND:
            return self._status(addr)
        if command in POWER_COMMANDS:
            host.power_cycles += 1
            if self.shutdown_lag:
                host.shutdown_in = self.shutdown_lag
                return ""
            raise ConnectionLostError(f"connection to {addr} closed by remote host")
        if "gravity system report" in command:
            return f"report of {addr}"

        match = _IPTABLES.match(command)
        if match:
            return self._iptables(host, *match.groups())
        match = _LEADER_LOOKUP.search(command)
        if match:
            return self._leader_lookup(addr, command, match.group(1))
        match = _OPERATION_STATUS.search(command)
        if match:
            return self._operation_status(command, match.group(1))
        match = _OPERATION_LAUNCH.match(command)
        if match:
            op_id = f"op-{len(self.operations) + 1}"
            self.operations[op_id] = list(self.operation_script)
            return self.launch_output(op_id)

        raise CommandError(command, 127, "command not found")

    def _status(self, addr: str) -> str:
        if addr in self.states:
            state = self.states[addr]
        elif self.partitioned:
            state = "degraded"
        elif self._pending_convergence > 0:
            self._pending_convergence -= 1
            state = "degraded"
        else:
            state = "active"
        document = {
            "cluster": {
                "application": {"name": "telekube"},
                "domain": self.domains.get(addr, self.name),
                "state": state,
                "token": {"token": "join-token"},
                "nodes": [{"advertise_ip": a} for a in self.addrs],
            }
        }
        return json.dumps(document)

    def _iptables(self, host: FakeHost, action: str, chain: str, match: str, peer: str) -> str:
        rule = (chain, match, peer)
        if action == "-I":
            host.rules.add(rule)
            return ""
        if rule not in host.rules:
            raise CommandError(
                f"sudo iptables {action} {chain} {match} {peer} -j DROP",
                1,
                "iptables: Bad rule (does a matching rule exist in that chain?).",
            )
        if action == "-D":
            host.rules.discard(rule)
            if not self.partitioned:
                self._pending_convergence = self.convergence_delay
        return ""

    def _leader_lookup(self, addr: str, command: str, cluster: str) -> str:
        if addr in self.claims:
            return self.claims[addr] + "\n"
        if cluster != self.name:
            raise CommandError(command, 4, "Error: 100: Key not found")
        if self.isolated(addr):
            # Cut off from the majority, the node keeps its own view
            return addr + "\n"
        if self.leader is not None and self.isolated(self.leader) and self.elect_new_leader:
            self._election_lookups += 1
            if self._election_lookups > self.election_delay:
                self.leader = next(a for a in self.addrs if not self.isolated(a))
                self._election_lookups = 0
        if self.leader is None:
            raise CommandError(command, 4, "Error: 100: Key not found")
        return self.leader + "\n"

    def _operation_status(self, command: str, op_id: str) -> str:
        script = self.operations.get(op_id)
        if script is None:
            raise CommandError(command, 1, f"operation {op_id} not found")
        status = script.pop(0) if len(script) > 1 else script[0]
        return status + "\n"


class FakeChannel(RemoteChannel):
    """In-memory channel delivering commands to a :class:`FakeCluster`."""

    def __init__(self, cluster: FakeCluster, addr: str):
        self.cluster = cluster
        self.addr = addr
        self.connects = 0
        self.envs: List[Dict[str, str]] = []
        self._connected = False
        self._offline = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def offline(self) -> bool:
        return self._offline

    async def connect(self, deadline: Optional[float] = None) -> None:
        if self._offline:
            raise NodeOfflineError(f"{self.addr} is offline")
        self.connects += 1
        self._connected = True

    async def run(self, command: str, env: Optional[Mapping[str, str]] = None) -> str:
        if self._offline:
            raise NodeOfflineError(f"{self.addr} is offline, cannot run {command!r}")
        if not self._connected:
            await self.connect()
        self.envs.append(dict(env or {}))
        # Yield like a real round trip
        await asyncio.sleep(0)
        try:
            return self.cluster.handle(self.addr, command)
        except ConnectionLostError:
            self._connected = False
            raise

    async def run_to_file(self, command: str, destination: Path) -> None:
        output = await self.run(command)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(output)

    def disconnect(self) -> None:
        self._connected = False

    def mark_offline(self) -> None:
        self._connected = False
        self._offline = True


# =============================================================================
# Fixtures
# =============================================================================


ADDRS = ["10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4"]


@pytest.fixture
def config(tmp_path):
    """Configuration with fast polling and a local state directory."""
    return FaultlineConfig(
        ssh=SSHConfig(reconnect_interval_seconds=0, reconnect_deadline_seconds=5),
        timeouts=TimeoutConfig(status=10.0, operation=10.0),
        leader_election=RetryPolicyConfig(attempts=20, delay_seconds=0),
        active_status=RetryPolicyConfig(attempts=20, delay_seconds=0),
        operation=RetryPolicyConfig(attempts=20, delay_seconds=0),
        state_dir=tmp_path / "state",
    )


@pytest.fixture
def fake_cluster():
    return FakeCluster(ADDRS, leader=ADDRS[0])


def make_nodes(cluster: FakeCluster, config: FaultlineConfig) -> List[ClusterNode]:
    return [
        ClusterNode(
            NodeAddress(private_addr=addr, public_addr=public_addr(addr)),
            FakeChannel(cluster, addr),
            config,
        )
        for addr in cluster.addrs
    ]


@pytest.fixture
def nodes(fake_cluster, config):
    return make_nodes(fake_cluster, config)
