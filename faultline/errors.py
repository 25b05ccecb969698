"""
faultline Error Taxonomy

All errors raised by faultline derive from :class:`FaultlineError` and may
carry the underlying ``cause``. Retry loops translate the transient kinds
into keep-waiting outcomes; every other kind propagates to the caller.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class FaultlineError(Exception):
    """Base exception for faultline errors."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


# =============================================================================
# Remote execution
# =============================================================================


class TransportError(FaultlineError):
    """Error talking to a remote node."""
    pass


class ConnectionLostError(TransportError):
    """The connection to the node could not be established or was dropped."""
    pass


class CommandError(TransportError):
    """A remote command exited with a non-zero status."""

    def __init__(
        self,
        command: str,
        exit_status: int,
        stderr: str = "",
        cause: Optional[BaseException] = None,
    ):
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        message = f"{command!r} exited with status {exit_status}"
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message, cause=cause)


class NodeOfflineError(TransportError):
    """The node was deliberately powered off."""
    pass


class ParseError(TransportError):
    """Command output could not be parsed."""
    pass


class AggregateError(FaultlineError):
    """One or more tasks of a bulk action failed."""

    def __init__(self, errors: Sequence[BaseException]):
        self.errors: List[BaseException] = list(errors)
        details = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{len(self.errors)} error(s): {details}")


# =============================================================================
# Cluster state
# =============================================================================


class LeaderNotFoundError(FaultlineError):
    """No node claims leadership."""
    pass


class InconsistentStateError(FaultlineError):
    """Nodes disagree about the cluster state."""
    pass


class MultipleLeadersError(InconsistentStateError):
    """More than one node claims leadership at the same time."""
    pass


class ClusterStatusError(FaultlineError):
    """Cluster status is unavailable or unhealthy."""
    pass


# =============================================================================
# Fault injection
# =============================================================================


class PartitionError(FaultlineError):
    """A firewall rule could not be installed or removed."""

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        peer: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.rule = rule
        self.peer = peer
        super().__init__(message, cause=cause)


class PartitionRuleMissingError(PartitionError):
    """Healing found no matching rule to remove."""
    pass


# =============================================================================
# Operations and retries
# =============================================================================


class OperationFailedError(FaultlineError):
    """A long-running remote operation reported failure."""

    def __init__(self, operation_id: str, command: str, response: str):
        self.operation_id = operation_id
        self.command = command
        self.response = response
        super().__init__(
            f"operation {operation_id} failed: {command}: response={response!r}"
        )


class RetriesExhaustedError(FaultlineError):
    """The attempt budget was used up without success."""

    def __init__(self, attempts: int, last_reason: Optional[str]):
        self.attempts = attempts
        self.last_reason = last_reason
        super().__init__(
            f"retries exhausted after {attempts} attempt(s): {last_reason}"
        )


class RetryCancelledError(FaultlineError):
    """The retry loop was stopped before it could succeed."""

    def __init__(self, message: str, last_reason: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        self.last_reason = last_reason
        super().__init__(message, cause=cause)


class RetryDeadlineError(RetryCancelledError):
    """The retry deadline expired."""
    pass


# =============================================================================
# Orchestration
# =============================================================================


class FailoverError(FaultlineError):
    """A failover scenario stage failed."""

    def __init__(self, stage: str, message: str,
                 cause: Optional[BaseException] = None):
        self.stage = stage
        text = f"{stage}: {message}"
        if cause is not None:
            text = f"{text}: {cause}"
        super().__init__(text, cause=cause)
