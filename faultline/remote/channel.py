"""
faultline Remote Execution Channel

Runs commands on cluster nodes through the system ``ssh`` client. Each
command is its own ssh invocation; the channel tracks whether the node is
currently reachable so that a dropped connection (for instance after a
reboot) is re-established, with a bounded wait, before the next command.
A node that was deliberately powered off is marked offline and every
later command fails immediately with :class:`NodeOfflineError`.
"""

from __future__ import annotations

import asyncio
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Mapping, Optional

import structlog

from faultline.config import SSHConfig
from faultline.errors import (
    CommandError,
    ConnectionLostError,
    NodeOfflineError,
)
from faultline.wait.retry import deadline_in, retry_with_interval

logger = structlog.get_logger(__name__)

# ssh reserves this exit status for its own failures
SSH_FAILURE_EXIT_STATUS = 255


def with_env(command: str, env: Optional[Mapping[str, str]] = None) -> str:
    """Prefix ``command`` with exports for the given environment overrides."""
    if not env:
        return command
    exports = " ".join(f"{key}={shlex.quote(value)}" for key, value in sorted(env.items()))
    return f"export {exports} && {command}"


class RemoteChannel(ABC):
    """
    Abstract command channel to a single node.

    Channels handle the low-level communication with a node:
    - Connection management across intentional disconnects
    - Command execution
    - Offline marking
    """

    @abstractmethod
    async def connect(self, deadline: Optional[float] = None) -> None:
        """
        Wait until the node accepts connections.

        Raises:
            RetryDeadlineError: If the node did not come up in time
        """
        pass

    @abstractmethod
    async def run(self, command: str, env: Optional[Mapping[str, str]] = None) -> str:
        """
        Run a command and return its standard output.

        Raises:
            CommandError: If the command exits with a non-zero status
            ConnectionLostError: If the node could not be reached
            NodeOfflineError: If the node was powered off
        """
        pass

    @abstractmethod
    async def run_to_file(self, command: str, destination: Path) -> None:
        """Run a command and stream its standard output into a local file."""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Forget the current connection; the next command reconnects."""
        pass

    @abstractmethod
    def mark_offline(self) -> None:
        """Mark the node as deliberately powered off."""
        pass

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass

    @property
    @abstractmethod
    def offline(self) -> bool:
        pass


class SSHChannel(RemoteChannel):
    """
    Command channel over the system ``ssh`` client.

    Args:
        host: Address used to reach the node (its public address).
        config: ssh user, port, key and timeouts.
    """

    def __init__(self, host: str, config: Optional[SSHConfig] = None) -> None:
        self.host = host
        self.config = config or SSHConfig()
        self._connected = False
        self._offline = False
        self._log = logger.bind(component="ssh", host=host)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def offline(self) -> bool:
        return self._offline

    @property
    def target(self) -> str:
        return f"{self.config.user}@{self.host}"

    def ssh_args(self, command: str) -> List[str]:
        """Full argument vector for running ``command`` on the node."""
        cfg = self.config
        args = [
            "ssh", "-q",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={int(cfg.connect_timeout_seconds)}",
            "-o", f"StrictHostKeyChecking={'yes' if cfg.strict_host_key_checking else 'no'}",
            "-p", str(cfg.port),
        ]
        if cfg.key_path is not None:
            args += ["-i", str(cfg.key_path)]
        for option in cfg.extra_options:
            args += ["-o", option]
        args += [self.target, command]
        return args

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, deadline: Optional[float] = None) -> None:
        if self._offline:
            raise NodeOfflineError(f"{self.host} is offline")
        if deadline is None:
            deadline = deadline_in(self.config.reconnect_deadline_seconds)

        await retry_with_interval(
            self._probe,
            interval=self.config.reconnect_interval_seconds,
            deadline=deadline,
            retry_on=(ConnectionLostError, CommandError),
            name=f"ssh-connect:{self.host}",
        )
        self._connected = True
        self._log.debug("ssh.connected")

    async def _probe(self) -> None:
        await self._exec("true")

    def disconnect(self) -> None:
        self._connected = False

    def mark_offline(self) -> None:
        self._connected = False
        self._offline = True
        self._log.info("ssh.offline")

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def run(self, command: str, env: Optional[Mapping[str, str]] = None) -> str:
        if self._offline:
            raise NodeOfflineError(f"{self.host} is offline, cannot run {command!r}")
        if not self._connected:
            await self.connect()
        return await self._exec(with_env(command, env))

    async def run_to_file(self, command: str, destination: Path) -> None:
        if self._offline:
            raise NodeOfflineError(f"{self.host} is offline, cannot run {command!r}")
        if not self._connected:
            await self.connect()

        destination.parent.mkdir(parents=True, exist_ok=True)
        with open(destination, "wb") as out:
            await self._exec(command, stdout=out)

    async def _exec(self, command: str, stdout: Optional[object] = None) -> str:
        log = self._log.bind(command=command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.ssh_args(command),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout if stdout is not None else asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            # FileNotFoundError: ssh client missing
            self._connected = False
            raise ConnectionLostError(f"failed to start ssh to {self.host}: {e}", cause=e) from e

        try:
            out, err = await asyncio.wait_for(
                proc.communicate(),
                timeout=self.config.command_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            await self._kill(proc)
            self._connected = False
            raise ConnectionLostError(
                f"{command!r} on {self.host} timed out after "
                f"{self.config.command_timeout_seconds}s",
                cause=e,
            ) from e
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        stderr = err.decode("utf-8", errors="replace") if err else ""
        if proc.returncode == SSH_FAILURE_EXIT_STATUS:
            self._connected = False
            log.debug("ssh.connection_failed", stderr=stderr[:200])
            raise ConnectionLostError(f"ssh to {self.host} failed: {stderr.strip()}")
        if proc.returncode != 0:
            raise CommandError(command, proc.returncode, stderr)

        log.debug("ssh.command_completed")
        return out.decode("utf-8", errors="replace") if out else ""

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
