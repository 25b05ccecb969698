"""
faultline Failover Orchestrator Tests

End-to-end scenario runs against the simulated cluster.
"""

from __future__ import annotations

import asyncio

import pytest

from faultline.config import FailoverConfig, RetryPolicyConfig, TimeoutConfig
from faultline.errors import (
    ClusterStatusError,
    FailoverError,
    InconsistentStateError,
    LeaderNotFoundError,
    MultipleLeadersError,
    PartitionError,
    PartitionRuleMissingError,
    RetriesExhaustedError,
    RetryDeadlineError,
)
from faultline.failover import (
    FailoverResult,
    FailoverScenario,
    FailoverStage,
    run_failover,
)

from tests.conftest import ADDRS, FakeCluster, make_nodes


class TestFailoverScenario:
    """Test the full leader failover scenario."""

    @pytest.mark.asyncio
    async def test_four_node_failover(self, config):
        cluster = FakeCluster(ADDRS, leader=ADDRS[0], election_delay=2, convergence_delay=2)
        nodes = make_nodes(cluster, config)

        result = await FailoverScenario(config).run(nodes)

        assert isinstance(result, FailoverResult)
        assert result.old_leader is nodes[0]
        assert result.new_leader in nodes[1:]
        assert result.partition.isolated == [nodes[0]]
        assert result.partition.majority == nodes[1:]
        assert result.status.state == "active"
        assert not cluster.partitioned
        assert cluster.leader == result.new_leader.private_addr

    @pytest.mark.asyncio
    async def test_result_to_dict(self, nodes, config):
        result = await run_failover(nodes, config)
        data = result.to_dict()
        assert data["old_leader"] == str(nodes[0])
        assert data["state"] == "active"
        assert data["duration"] >= 0

    @pytest.mark.asyncio
    async def test_isolation_completes_before_polling(self, nodes, fake_cluster, config):
        await run_failover(nodes, config)

        commands = fake_cluster.commands(ADDRS[0])
        inserts = [i for i, c in enumerate(commands) if "iptables -I" in c]
        assert len(inserts) == 6
        # Old leader is not polled for status until the rules are gone
        deletes = [i for i, c in enumerate(commands) if "iptables -D" in c]
        status_after_isolation = [
            i for i, c in enumerate(commands)
            if "gravity status --output=json" in c and i > inserts[-1]
        ]
        assert min(status_after_isolation) > max(deletes)


class TestFailoverStageErrors:
    """Test stage failures and their error reporting."""

    @pytest.mark.asyncio
    async def test_no_leader(self, nodes, fake_cluster, config):
        fake_cluster.leader = None
        with pytest.raises(FailoverError) as exc_info:
            await run_failover(nodes, config)

        assert exc_info.value.stage == FailoverStage.FIND_LEADER.value
        assert isinstance(exc_info.value.__cause__, LeaderNotFoundError)
        assert not fake_cluster.partitioned

    @pytest.mark.asyncio
    async def test_multiple_leaders(self, nodes, fake_cluster, config):
        fake_cluster.claims = {ADDRS[3]: ADDRS[3]}
        with pytest.raises(FailoverError) as exc_info:
            await run_failover(nodes, config)

        assert exc_info.value.stage == FailoverStage.FIND_LEADER.value
        assert isinstance(exc_info.value.__cause__, MultipleLeadersError)

    @pytest.mark.asyncio
    async def test_isolation_failure(self, nodes, fake_cluster, config):
        fake_cluster.fail_on("-I INPUT -s 10.0.0.3")
        with pytest.raises(FailoverError, match="failed to create network partition") as exc_info:
            await run_failover(nodes, config)

        assert exc_info.value.stage == FailoverStage.ISOLATE.value
        assert isinstance(exc_info.value.__cause__, PartitionError)
        assert not any("iptables -D" in c for c in fake_cluster.commands(ADDRS[0]))

    @pytest.mark.asyncio
    async def test_new_leader_not_elected(self, nodes, fake_cluster, config):
        fake_cluster.elect_new_leader = False
        with pytest.raises(FailoverError, match="new leader was not elected") as exc_info:
            await run_failover(nodes, config)

        assert exc_info.value.stage == FailoverStage.AWAIT_NEW_LEADER.value
        cause = exc_info.value.__cause__
        assert isinstance(cause, RetriesExhaustedError)
        assert cause.attempts == config.leader_election.attempts
        assert "new leader not yet elected" in cause.last_reason
        # Cleaned up
        assert not fake_cluster.partitioned

    @pytest.mark.asyncio
    async def test_cleanup_heals_the_isolated_leader(self, config):
        cluster = FakeCluster(ADDRS, leader=ADDRS[2])
        cluster.elect_new_leader = False
        nodes = make_nodes(cluster, config)

        with pytest.raises(FailoverError):
            await run_failover(nodes, config)

        deletes = [c for c in cluster.commands(ADDRS[2]) if "iptables -D" in c]
        assert len(deletes) == 6
        assert not cluster.partitioned

    @pytest.mark.asyncio
    async def test_no_cleanup_when_disabled(self, nodes, fake_cluster, config):
        config.failover = FailoverConfig(heal_on_failure=False)
        fake_cluster.elect_new_leader = False
        with pytest.raises(FailoverError):
            await run_failover(nodes, config)

        assert fake_cluster.isolated(ADDRS[0])

    @pytest.mark.asyncio
    async def test_partition_nonoperational(self, nodes, fake_cluster, config):
        fake_cluster.states = {ADDRS[3]: "active"}
        with pytest.raises(FailoverError, match="cluster partition is nonoperational") as exc_info:
            await run_failover(nodes, config)

        assert exc_info.value.stage == FailoverStage.VERIFY_PARTITION.value
        assert isinstance(exc_info.value.__cause__, InconsistentStateError)
        assert not fake_cluster.partitioned

    @pytest.mark.asyncio
    async def test_partition_status_unavailable(self, nodes, fake_cluster, config):
        # Leader lookups need the status too, so only break it once B is elected
        original = fake_cluster._status

        def status(addr):
            if addr == ADDRS[2] and fake_cluster.leader != ADDRS[0]:
                return "{}"
            return original(addr)

        fake_cluster._status = status
        with pytest.raises(FailoverError) as exc_info:
            await run_failover(nodes, config)

        assert exc_info.value.stage == FailoverStage.VERIFY_PARTITION.value
        assert isinstance(exc_info.value.__cause__, ClusterStatusError)

    @pytest.mark.asyncio
    async def test_heal_failure(self, nodes, fake_cluster, config):
        fake_cluster.fail_on("iptables -C")
        with pytest.raises(FailoverError, match="failed to remove network partition") as exc_info:
            await run_failover(nodes, config)

        assert exc_info.value.stage == FailoverStage.HEAL.value
        assert isinstance(exc_info.value.__cause__, PartitionRuleMissingError)
        # No second heal attempt after a failed heal
        checks = [c for c in fake_cluster.commands(ADDRS[0]) if "iptables -C" in c]
        assert len(checks) == 1

    @pytest.mark.asyncio
    async def test_no_convergence(self, nodes, fake_cluster, config):
        config.active_status = RetryPolicyConfig(attempts=3, delay_seconds=0)
        fake_cluster.states = {ADDRS[0]: "degraded"}
        with pytest.raises(FailoverError, match="cluster did not converge") as exc_info:
            await run_failover(nodes, config)

        assert exc_info.value.stage == FailoverStage.AWAIT_CONVERGENCE.value
        cause = exc_info.value.__cause__
        assert isinstance(cause, RetriesExhaustedError)
        assert "not in sync" in cause.last_reason
        assert not fake_cluster.partitioned

    @pytest.mark.asyncio
    async def test_scenario_deadline(self, nodes, fake_cluster, config):
        config.timeouts = TimeoutConfig(status=0.3)
        config.leader_election = RetryPolicyConfig(attempts=1000, delay_seconds=0.05)
        fake_cluster.elect_new_leader = False

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(FailoverError) as exc_info:
            await run_failover(nodes, config)

        assert loop.time() - started < 5
        assert exc_info.value.stage == FailoverStage.AWAIT_NEW_LEADER.value
        assert isinstance(exc_info.value.__cause__, (RetryDeadlineError, TimeoutError))
        assert not fake_cluster.partitioned

    @pytest.mark.asyncio
    async def test_cancellation_skips_cleanup(self, nodes, fake_cluster, config):
        config.leader_election = RetryPolicyConfig(attempts=1000, delay_seconds=0.01)
        fake_cluster.elect_new_leader = False

        task = asyncio.create_task(run_failover(nodes, config))
        while not fake_cluster.isolated(ADDRS[0]):
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert fake_cluster.isolated(ADDRS[0])
