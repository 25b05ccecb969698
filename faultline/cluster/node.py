"""
faultline Cluster Node

A single cluster member as seen from the test harness. The node is at the
same time a command target, a status source, a leadership participant and
the place where partition rules are installed; all of it goes through the
node's :class:`RemoteChannel`.
"""

from __future__ import annotations

import posixpath
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from faultline.config import FaultlineConfig, get_config
from faultline.errors import (
    CommandError,
    ConnectionLostError,
    FaultlineError,
    NodeOfflineError,
)
from faultline.operation import OperationPoller
from faultline.remote.channel import RemoteChannel, SSHChannel
from faultline.remote.parsers import Parser, parse_as_trimmed, parse_status
from faultline.types import (
    ClusterStatus,
    FirewallAction,
    FirewallRule,
    NodeAddress,
    Operation,
)
from faultline.wait.retry import Continue, Outcome, RetryPolicy, deadline_in, retry

logger = structlog.get_logger(__name__)

# iptables -C exit status when the rule does not exist
RULE_MISSING_EXIT_STATUS = 1


class ClusterNode:
    """
    Handle to one cluster member.

    Args:
        address: Private and public address of the node.
        channel: Command channel reaching the node.
        config: Command templates, timeouts and state directory. Defaults
                to the global configuration.
    """

    def __init__(
        self,
        address: NodeAddress,
        channel: RemoteChannel,
        config: Optional[FaultlineConfig] = None,
    ) -> None:
        self.address = address
        self.channel = channel
        self.config = config or get_config()
        self.install_dir = self.config.commands.install_dir
        self._log = logger.bind(
            private_addr=address.private_addr,
            public_addr=address.public_addr,
        )

    @classmethod
    def over_ssh(
        cls,
        private_addr: str,
        public_addr: str,
        config: Optional[FaultlineConfig] = None,
    ) -> ClusterNode:
        """Create a node reached over ssh on its public address."""
        config = config or get_config()
        return cls(
            NodeAddress(private_addr=private_addr, public_addr=public_addr),
            SSHChannel(public_addr, config.ssh),
            config,
        )

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @property
    def private_addr(self) -> str:
        return self.address.private_addr

    @property
    def public_addr(self) -> str:
        return self.address.public_addr

    @property
    def log(self) -> Any:
        """Logger bound to this node's addresses."""
        return self._log

    @property
    def offline(self) -> bool:
        """True once the node has been powered off."""
        return self.channel.offline

    def to_dict(self) -> Dict[str, str]:
        return self.address.to_dict()

    def __str__(self) -> str:
        return str(self.address)

    def __repr__(self) -> str:
        return f"ClusterNode({self.private_addr!r}, {self.public_addr!r})"

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def run(
        self,
        command: str,
        env: Optional[Mapping[str, str]] = None,
        parser: Optional[Parser] = None,
    ) -> Any:
        """Run ``command`` and return its output, parsed if a parser is given."""
        output = await self.channel.run(command, env)
        if parser is None:
            return output
        return parser(output)

    async def run_in_container(self, cmd: str, *args: str) -> str:
        """Run a command inside the node's container environment."""
        command = self.config.commands.enter_container.format(
            install_dir=self.install_dir,
            cmd=cmd,
            args=" ".join(args),
        )
        return await self.run(command, parser=parse_as_trimmed)

    # -------------------------------------------------------------------------
    # Status and leadership
    # -------------------------------------------------------------------------

    async def status(self) -> ClusterStatus:
        """Query the cluster status as this node sees it."""
        command = self.config.commands.status.format(
            log_file=self.config.commands.system_log_file,
        )
        try:
            return await self.run(command, parser=parse_status)
        except CommandError as e:
            self._log.warning(
                "node.status_failed",
                command=command,
                exit_code=e.exit_status,
            )
            raise

    async def leader_addr(self) -> str:
        """Private address of the leader according to this node."""
        status = await self.status()
        key = self.config.commands.leader_key.format(cluster=status.cluster)
        lookup = self.config.commands.leader_lookup.format(key=key)
        cmd, _, args = lookup.partition(" ")
        return await self.run_in_container(cmd, args)

    async def is_leader(self) -> bool:
        """True if the coordination layer names this node as leader.

        An unreachable node or a failed lookup counts as "not leader".
        """
        try:
            leader = await self.leader_addr()
        except FaultlineError as e:
            self._log.error("node.leader_lookup_failed", error=str(e))
            return False
        return leader == self.private_addr

    # -------------------------------------------------------------------------
    # Firewall
    # -------------------------------------------------------------------------

    async def firewall(self, action: FirewallAction, rule: FirewallRule) -> None:
        """Insert, check or delete a drop rule on this node."""
        command = rule.render(action, self.config.commands.firewall)
        await self.run(command)

    async def has_firewall_rule(self, rule: FirewallRule) -> bool:
        """True if ``rule`` is installed on this node.

        Only the "no such rule" exit status means absent. Any other check
        failure, such as a held xtables lock, is raised.
        """
        try:
            await self.firewall(FirewallAction.CHECK, rule)
        except CommandError as e:
            if e.exit_status != RULE_MISSING_EXIT_STATUS:
                raise
            return False
        return True

    # -------------------------------------------------------------------------
    # Power management
    # -------------------------------------------------------------------------

    async def reboot(self, graceful: bool = True) -> None:
        """Restart the machine and wait until it accepts connections again."""
        commands = self.config.commands
        command = commands.reboot if graceful else commands.reboot_forced
        try:
            await self.run(command)
        except ConnectionLostError:
            # The reboot may tear down the session before ssh returns
            self._log.debug("node.reboot_disconnected")
        else:
            await self._await_shutdown()

        self.channel.disconnect()
        await self.channel.connect(deadline_in(self.config.ssh.reconnect_deadline_seconds))
        self._log.info("node.rebooted", graceful=graceful)

    async def _await_shutdown(self) -> None:
        """Probe until the node stops answering.

        A graceful reboot returns before the machine goes down, and an
        early reconnect would still reach the old session.

        Raises:
            RetryDeadlineError: The node kept answering past the reconnect
                deadline.
        """

        async def attempt() -> Outcome:
            try:
                await self.channel.run("true")
            except ConnectionLostError:
                return None
            return Continue("node still accepts commands")

        policy = RetryPolicy(
            attempts=None,
            delay=self.config.ssh.reconnect_interval_seconds,
            deadline=deadline_in(self.config.ssh.reconnect_deadline_seconds),
        )
        await retry(policy, attempt, name=f"shutdown:{self.private_addr}")
        self._log.debug("node.went_down")

    async def power_off(self, graceful: bool = True) -> None:
        """Halt the machine and mark the node offline."""
        commands = self.config.commands
        command = commands.power_off if graceful else commands.power_off_forced
        try:
            await self.run(command)
        except ConnectionLostError:
            self._log.debug("node.power_off_disconnected")

        self.channel.mark_offline()
        self._log.info("node.powered_off", graceful=graceful)

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    async def collect_logs(self, prefix: str, *args: str) -> Path:
        """Store the node's system report under the state directory.

        Returns the local path of the report archive.
        """
        if self.offline:
            raise NodeOfflineError(f"cannot collect logs from an offline node {self}")

        path = (
            self.config.state_dir
            / "node-logs"
            / prefix
            / f"{self.private_addr}-logs.tgz"
        )
        command = self.config.commands.collect_logs.format(
            install_dir=self.install_dir,
            args=" ".join(args),
        )
        await self.channel.run_to_file(command, path)
        self._log.info("node.logs_collected", path=str(path))
        return path

    # -------------------------------------------------------------------------
    # Cluster membership operations
    # -------------------------------------------------------------------------

    def operation_command(self, command: str) -> str:
        """Full command line launching a long-running operation."""
        return self.config.commands.operation_launch.format(
            executable=posixpath.join(self.install_dir, "gravity"),
            command=command,
            log_path=posixpath.join(self.install_dir, "telekube-system.log"),
        )

    async def leave(self, graceful: bool = True) -> Operation:
        """Make this node leave the cluster."""
        command = "leave --confirm" if graceful else "leave --confirm --force"
        return await self._run_operation(command)

    async def remove(self, node: str, graceful: bool = True) -> Operation:
        """Ask the cluster to evict ``node``."""
        flags = "--confirm" if graceful else "--confirm --force"
        return await self._run_operation(f"remove {flags} {node}")

    async def _run_operation(self, command: str) -> Operation:
        return await OperationPoller(self.config).run(self, self.operation_command(command))


def build_cluster(
    addresses: Sequence[Tuple[str, str]],
    config: Optional[FaultlineConfig] = None,
) -> List[ClusterNode]:
    """Nodes reached over ssh, one per ``(private_addr, public_addr)`` pair.

    Order is preserved.
    """
    config = config or get_config()
    return [ClusterNode.over_ssh(private, public, config) for private, public in addresses]
