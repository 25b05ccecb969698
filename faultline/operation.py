"""
faultline Async Operation Poller

Launches a command that starts a long-running operation on a node, takes
the operation id from the command's output and polls the operation status
on the same node until it completes or fails. Operations may legitimately
run for many minutes, hence the large attempt budget.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Mapping, Optional

import structlog

from faultline.config import FaultlineConfig, get_config
from faultline.errors import FaultlineError, OperationFailedError, ParseError
from faultline.remote.parsers import parse_as_trimmed
from faultline.types import Operation, OperationStatus
from faultline.wait.retry import (
    Abort,
    Continue,
    Outcome,
    Retryer,
    RetryPolicy,
    deadline_in,
)

if TYPE_CHECKING:
    from faultline.cluster.node import ClusterNode

logger = structlog.get_logger(__name__)

# Some versions print a sentence instead of the bare id
_QUOTED_ID = re.compile(r'"([^"\s]+)"')


def extract_operation_id(output: str) -> str:
    """Operation id from launch output.

    Accepts a bare token (``op-123``) or any sentence containing one
    double-quoted token (``launched operation "abc-def-456" for upgrade``).
    """
    match = _QUOTED_ID.search(output)
    if match:
        return match.group(1)
    operation_id = output.strip()
    if not operation_id or any(c.isspace() for c in operation_id):
        raise ParseError(f"no operation id in output {output!r}")
    return operation_id


class OperationPoller:
    """
    Launches and tracks long-running remote operations.

    Args:
        config: Retry budget (``operation``), deadline
                (``timeouts.operation``) and command templates.
    """

    def __init__(self, config: Optional[FaultlineConfig] = None) -> None:
        self.config = config or get_config()

    async def run(
        self,
        node: "ClusterNode",
        command: str,
        env: Optional[Mapping[str, str]] = None,
    ) -> Operation:
        """Launch ``command`` on ``node`` and wait for its operation to finish.

        Raises:
            OperationFailedError: The operation reported ``failed``.
            RetriesExhaustedError: No terminal status within the budget.
        """
        output = await node.run(command, env=env)
        operation = Operation(
            operation_id=extract_operation_id(output),
            node=str(node),
        )
        await self.wait(node, operation)
        return operation

    async def wait(self, node: "ClusterNode", operation: Operation) -> None:
        """Poll ``operation`` on ``node`` until a terminal status."""
        log = node.log.bind(operation_id=operation.operation_id)
        status_command = self.config.commands.operation_status.format(
            install_dir=node.install_dir,
            operation_id=operation.operation_id,
        )

        async def attempt() -> Outcome:
            try:
                response = await node.run(status_command, parser=parse_as_trimmed)
            except FaultlineError as e:
                log.debug("operation.status_unavailable", error=str(e))
                return Continue(f"{status_command}: {e}")

            operation.observe(response)
            if response == OperationStatus.COMPLETED.value:
                return None
            if response == OperationStatus.FAILED.value:
                return Abort(OperationFailedError(operation.operation_id, status_command, response))
            return Continue(f"non-final / unknown op status: {response!r}")

        policy = RetryPolicy.from_config(
            self.config.operation,
            deadline=deadline_in(self.config.timeouts.operation),
        )
        log.info("operation.started")
        await Retryer(policy, name=f"operation:{operation.operation_id}").run(attempt)
        log.info("operation.completed", polls=operation.polls)
