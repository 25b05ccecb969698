"""
faultline Failover Orchestrator

Drives the leader failover scenario against a live cluster:

1. Find the current leader
2. Isolate it from every other node
3. Wait for the majority to elect a different leader
4. Verify that the majority partition is operational
5. Heal the partition
6. Wait until the old and the new leader agree on an active cluster

The whole scenario runs under one deadline (``timeouts.status``) and each
polling attempt under its own status timeout.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import structlog

from faultline.cluster.leader import get_leader
from faultline.cluster.node import ClusterNode
from faultline.cluster.status import (
    check_cluster_status,
    get_status,
    statuses_in_sync,
)
from faultline.config import FaultlineConfig, get_config
from faultline.errors import (
    FailoverError,
    FaultlineError,
    RetriesExhaustedError,
    RetryCancelledError,
)
from faultline.partition import PartitionController
from faultline.types import ClusterStatus, Partition
from faultline.wait.retry import (
    Continue,
    Outcome,
    Retryer,
    RetryPolicy,
    deadline_in,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Scenario state
# ---------------------------------------------------------------------------


class FailoverStage(str, Enum):
    """Scenario stages, in execution order."""

    FIND_LEADER = "find_leader"
    ISOLATE = "isolate"
    AWAIT_NEW_LEADER = "await_new_leader"
    VERIFY_PARTITION = "verify_partition"
    HEAL = "heal"
    AWAIT_CONVERGENCE = "await_convergence"


@dataclass
class FailoverContext:
    """State of one scenario run.

    Owns the cluster reference, the partition and the bound logger, and
    records what each stage found.
    """

    config: FaultlineConfig
    cluster: List[ClusterNode]
    deadline: Optional[float]
    scenario_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    stage: Optional[FailoverStage] = None
    old_leader: Optional[ClusterNode] = None
    new_leader: Optional[ClusterNode] = None
    partition: Optional[Partition] = None
    heal_attempted: bool = False
    final_status: Optional[ClusterStatus] = None
    started_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        self.log = logger.bind(scenario=self.scenario_id)

    @property
    def needs_heal(self) -> bool:
        """True while rules may still be installed on the old leader."""
        return self.partition is not None and not self.heal_attempted


@dataclass
class FailoverResult:
    """Outcome of a successful scenario."""

    old_leader: ClusterNode
    new_leader: ClusterNode
    partition: Partition
    status: ClusterStatus
    started_at: datetime
    completed_at: datetime = field(default_factory=datetime.now)

    @property
    def duration(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "old_leader": str(self.old_leader),
            "new_leader": str(self.new_leader),
            "partition": self.partition.to_dict(),
            "state": self.status.state,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration": self.duration,
        }


# ---------------------------------------------------------------------------
# FailoverScenario
# ---------------------------------------------------------------------------


class FailoverScenario:
    """Runs the leader failover scenario.

    Args:
        config: Timeouts, retry policies and failover settings. Defaults to
                the global configuration.
        controller: Partition controller; one is created from ``config``
                    when omitted.
    """

    def __init__(
        self,
        config: Optional[FaultlineConfig] = None,
        controller: Optional[PartitionController] = None,
    ) -> None:
        self.config = config or get_config()
        self.controller = controller or PartitionController(self.config)

    async def run(self, nodes: Sequence[ClusterNode]) -> FailoverResult:
        """Run all stages against ``nodes``.

        Raises:
            FailoverError: A stage failed or the scenario deadline expired.
                The underlying error is chained as the cause.
        """
        ctx = FailoverContext(
            config=self.config,
            cluster=list(nodes),
            deadline=deadline_in(self.config.timeouts.status),
        )
        ctx.log.info("failover.started", nodes=[str(n) for n in ctx.cluster])
        try:
            result = await self._run_within_deadline(ctx)
        except Exception as e:
            ctx.log.error(
                "failover.failed",
                stage=ctx.stage.value if ctx.stage else None,
                error=str(e),
            )
            if ctx.needs_heal and self.config.failover.heal_on_failure:
                await self._heal_after_failure(ctx)
            raise

        ctx.log.info("failover.completed", **result.to_dict())
        return result

    async def _run_within_deadline(self, ctx: FailoverContext) -> FailoverResult:
        scope = asyncio.timeout_at(ctx.deadline)
        try:
            async with scope:
                return await self._run_stages(ctx)
        except TimeoutError as e:
            if not scope.expired():
                raise
            stage = ctx.stage or FailoverStage.FIND_LEADER
            raise FailoverError(stage.value, "scenario deadline exceeded", cause=e) from e

    async def _run_stages(self, ctx: FailoverContext) -> FailoverResult:
        old_leader = await self._find_leader(ctx)
        partition = await self._isolate(ctx, old_leader)
        new_leader = await self._await_new_leader(ctx, old_leader, partition)
        await self._verify_partition(ctx, partition)
        await self._heal(ctx, old_leader)
        status = await self._await_convergence(ctx, old_leader, new_leader)

        return FailoverResult(
            old_leader=old_leader,
            new_leader=new_leader,
            partition=partition,
            status=status,
            started_at=ctx.started_at,
        )

    def _enter(self, ctx: FailoverContext, stage: FailoverStage) -> None:
        ctx.stage = stage
        ctx.log.info("failover.stage", stage=stage.value)

    def _policy(self, ctx: FailoverContext, name: str) -> RetryPolicy:
        return RetryPolicy.from_config(getattr(self.config, name), deadline=ctx.deadline)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _find_leader(self, ctx: FailoverContext) -> ClusterNode:
        stage = FailoverStage.FIND_LEADER
        self._enter(ctx, stage)
        try:
            leader = await get_leader(ctx.cluster)
        except FaultlineError as e:
            raise FailoverError(stage.value, "unable to find current leader", cause=e) from e
        ctx.old_leader = leader
        ctx.log.info("failover.leader_found", leader=str(leader))
        return leader

    async def _isolate(self, ctx: FailoverContext, old_leader: ClusterNode) -> Partition:
        stage = FailoverStage.ISOLATE
        self._enter(ctx, stage)
        try:
            partition = await self.controller.isolate(old_leader, ctx.cluster)
        except FaultlineError as e:
            # Partially installed rules are not tracked for cleanup
            raise FailoverError(stage.value, "failed to create network partition", cause=e) from e
        ctx.partition = partition
        ctx.log.info("failover.partitioned", **partition.to_dict())
        return partition

    async def _await_new_leader(
        self,
        ctx: FailoverContext,
        old_leader: ClusterNode,
        partition: Partition,
    ) -> ClusterNode:
        stage = FailoverStage.AWAIT_NEW_LEADER
        self._enter(ctx, stage)
        majority = partition.majority
        status_timeout = self.config.timeouts.status
        elected: List[ClusterNode] = []

        async def attempt() -> Outcome:
            try:
                async with asyncio.timeout(status_timeout):
                    leader = await get_leader(majority)
            except (FaultlineError, TimeoutError) as e:
                return Continue.because("new leader not yet elected: %s", e)
            if leader.private_addr == old_leader.private_addr:
                return Continue("new leader not yet elected")
            elected.append(leader)
            return None

        try:
            await Retryer(self._policy(ctx, "leader_election"), name="new-leader").run(attempt)
        except (RetriesExhaustedError, RetryCancelledError) as e:
            raise FailoverError(stage.value, "new leader was not elected", cause=e) from e
        new_leader = elected[-1]
        ctx.new_leader = new_leader
        ctx.log.info("failover.new_leader", leader=str(new_leader))
        return new_leader

    async def _verify_partition(self, ctx: FailoverContext, partition: Partition) -> None:
        stage = FailoverStage.VERIFY_PARTITION
        self._enter(ctx, stage)
        try:
            async with asyncio.timeout(self.config.timeouts.status):
                await check_cluster_status(
                    partition.majority,
                    healthy_states=self.config.failover.healthy_states,
                )
        except (FaultlineError, TimeoutError) as e:
            raise FailoverError(stage.value, "cluster partition is nonoperational", cause=e) from e

    async def _heal(self, ctx: FailoverContext, old_leader: ClusterNode) -> None:
        stage = FailoverStage.HEAL
        self._enter(ctx, stage)
        ctx.heal_attempted = True
        try:
            await self.controller.heal(old_leader, ctx.cluster)
        except FaultlineError as e:
            raise FailoverError(stage.value, "failed to remove network partition", cause=e) from e

    async def _await_convergence(
        self,
        ctx: FailoverContext,
        old_leader: ClusterNode,
        new_leader: ClusterNode,
    ) -> ClusterStatus:
        stage = FailoverStage.AWAIT_CONVERGENCE
        self._enter(ctx, stage)
        status_timeout = self.config.timeouts.status
        converged_state = self.config.failover.converged_state
        converged: List[ClusterStatus] = []

        async def fetch(node: ClusterNode) -> ClusterStatus:
            async with asyncio.timeout(status_timeout):
                return await get_status(node)

        async def attempt() -> Outcome:
            try:
                new_status = await fetch(new_leader)
            except (FaultlineError, TimeoutError) as e:
                return Continue.because("status is unavailable on new leader: %s", e)
            try:
                old_status = await fetch(old_leader)
            except (FaultlineError, TimeoutError) as e:
                return Continue.because("status is unavailable on old leader: %s", e)

            if not statuses_in_sync(new_status, old_status):
                return Continue.because(
                    "cluster status is not in sync: %s != %s",
                    new_status.state,
                    old_status.state,
                )
            if new_status.state != converged_state:
                return Continue.because("cluster status is not %s", converged_state)
            converged.append(new_status)
            return None

        try:
            await Retryer(self._policy(ctx, "active_status"), name="convergence").run(attempt)
        except (RetriesExhaustedError, RetryCancelledError) as e:
            raise FailoverError(stage.value, "cluster did not converge", cause=e) from e
        status = converged[-1]
        ctx.final_status = status
        return status

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def _heal_after_failure(self, ctx: FailoverContext) -> None:
        """Best-effort heal after a failed stage. Errors are logged only."""
        if ctx.partition is None:
            return
        target = ctx.partition.isolated[0]
        ctx.heal_attempted = True
        try:
            await self.controller.heal(target, ctx.cluster)
        except FaultlineError as e:
            ctx.log.error("failover.cleanup_failed", error=str(e))
            return
        ctx.log.warning("failover.cleanup_healed", target=str(target))


async def run_failover(
    nodes: Sequence[ClusterNode],
    config: Optional[FaultlineConfig] = None,
) -> FailoverResult:
    """Run the leader failover scenario against ``nodes``."""
    return await FailoverScenario(config).run(nodes)
