"""
Tests for the deployment orchestrator and deployment gate.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from pull_agent.deployment.orchestrator import DeploymentGate, DeploymentOrchestrator
from pull_agent.deployment.rollback import RollbackController
from pull_agent.deployment.state import AgentState
from pull_agent.exceptions import (
    CommandFailedError,
    CommandTimeoutError,
    DeploymentInProgressError,
)


def titles(notifier):
    return [c.args[0] for c in notifier.send.call_args_list]


@pytest.fixture
def orchestrator(
    repository_config, deployment_config, repository, containers, state, notifier, event_bus
):
    rollback = RollbackController(
        deployment_config, repository, containers, state, notifier, event_bus
    )
    return DeploymentOrchestrator(
        repository_config,
        deployment_config,
        repository,
        containers,
        rollback,
        state,
        notifier,
        event_bus,
    )


class TestDeploymentGate:
    """Test the at-most-one guard."""

    @pytest.mark.asyncio
    async def test_only_one_winner(self):
        gate = DeploymentGate()
        results = await asyncio.gather(*(gate.try_acquire() for _ in range(10)))
        assert results.count(True) == 1
        assert gate.in_progress

    @pytest.mark.asyncio
    async def test_release_and_acquire(self):
        gate = DeploymentGate()
        assert await gate.try_acquire()
        waiter = asyncio.create_task(gate.acquire())
        await asyncio.sleep(0)
        assert not waiter.done()
        await gate.release()
        await asyncio.wait_for(waiter, timeout=1)
        assert gate.in_progress


class TestDeploymentOrchestrator:
    """Test the deployment state machine."""

    @pytest.mark.asyncio
    async def test_successful_deployment(self, orchestrator, state, repository, notifier):
        deployment = await orchestrator.deploy("manual")

        assert deployment.status == "success"
        assert [p.name for p in deployment.phases] == ["pull", "build", "restart", "health"]
        assert all(p.status == "completed" for p in deployment.phases)
        assert deployment.previous_revision == "a" * 40
        assert deployment.new_revision == "b" * 40
        assert state.last_revision == "b" * 40
        assert state.consecutive_failures == 0
        assert state.history == [deployment]
        assert state.current_deployment is None
        assert titles(notifier) == ["Deployment Started", "Deployment Successful"]
        assert not orchestrator.is_deploying

    @pytest.mark.asyncio
    async def test_health_failure_rolls_back(
        self, orchestrator, state, repository, containers, notifier
    ):
        """A failed health check restores the prior revision."""
        containers.wait_healthy = AsyncMock(side_effect=[False, True])

        deployment = await orchestrator.deploy("webhook")

        assert deployment.status == "failed"
        assert deployment.error.startswith("health phase failed")
        assert deployment.rollback_status == "success"
        assert [p.name for p in deployment.phases][-1] == "rollback"
        repository.reset_hard.assert_awaited_once_with("a" * 40)
        assert repository.revision == "a" * 40
        assert state.last_revision == "a" * 40
        assert titles(notifier) == [
            "Deployment Started",
            "Rollback Completed",
            "Deployment Failed",
        ]

    @pytest.mark.asyncio
    async def test_pull_failure_resets_tree(self, orchestrator, repository, containers):
        repository.pull = AsyncMock(side_effect=CommandTimeoutError("git pull", 60))

        deployment = await orchestrator.deploy("poll")

        assert deployment.status == "failed"
        assert deployment.rollback_status == "success"
        assert [p.name for p in deployment.phases] == ["pull", "rollback"]
        repository.reset_hard.assert_awaited_once_with("a" * 40)
        containers.build.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pull_failure_without_rollback(self, orchestrator, repository):
        repository.pull = AsyncMock(side_effect=CommandFailedError("git pull", 1, "conflict"))

        deployment = await orchestrator.deploy("poll", skip_rollback=True)

        assert deployment.status == "failed"
        assert deployment.rollback_status == "skipped"
        repository.reset_hard.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_is_phase_failure(self, orchestrator, containers):
        containers.build = AsyncMock(side_effect=CommandTimeoutError("docker compose build", 600))

        deployment = await orchestrator.deploy("manual")

        assert deployment.status == "failed"
        build = deployment.phases[1]
        assert build.name == "build"
        assert build.status == "failed"
        assert "timed out" in build.error

    @pytest.mark.asyncio
    async def test_skip_rollback(self, orchestrator, repository, containers):
        containers.restart = AsyncMock(side_effect=CommandFailedError("up", 1))

        deployment = await orchestrator.deploy("manual", skip_rollback=True)

        assert deployment.rollback_status == "skipped"
        repository.reset_hard.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rollback_disabled(self, orchestrator, repository, containers):
        orchestrator.rollback_controller.config.rollback_enabled = False
        containers.restart = AsyncMock(side_effect=CommandFailedError("up", 1))

        deployment = await orchestrator.deploy("manual")

        assert deployment.rollback_status == "skipped"
        repository.reset_hard.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_consecutive_failures_escalate(self, orchestrator, state, repository, notifier):
        """The third failure in a row is critical; a success resets the counter."""
        repository.pull = AsyncMock(
            side_effect=[CommandFailedError("git pull", 1)] * 3 + [None]
        )

        for _ in range(3):
            deployment = await orchestrator.deploy("poll")
            assert deployment.status == "failed"

        assert state.consecutive_failures == 3
        assert titles(notifier).count("Deployment Failed") == 3
        assert titles(notifier).count("CRITICAL: Deployment Failures") == 1
        critical = [
            c for c in notifier.send.call_args_list if c.args[0].startswith("CRITICAL")
        ][0]
        assert critical.kwargs["severity"] == "critical"

        deployment = await orchestrator.deploy("poll")
        assert deployment.status == "success"
        assert state.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_mutual_exclusion(self, orchestrator, containers, state):
        release = asyncio.Event()

        async def slow_build():
            await release.wait()

        containers.build = AsyncMock(side_effect=slow_build)

        results = await asyncio.gather(
            orchestrator.request_deployment("webhook"),
            orchestrator.request_deployment("poll"),
            orchestrator.request_deployment("manual"),
        )
        accepted = [r for r in results if r.accepted]
        assert len(accepted) == 1
        assert all(r.message == "Deployment already in progress" for r in results if not r.accepted)

        with pytest.raises(DeploymentInProgressError):
            await orchestrator.deploy("poll")

        release.set()
        await orchestrator.wait_idle()
        assert len(state.history) == 1
        assert not orchestrator.is_deploying

    @pytest.mark.asyncio
    async def test_forced_request_is_queued(self, orchestrator, containers, state):
        release = asyncio.Event()
        calls = []

        async def build():
            calls.append("build")
            if len(calls) == 1:
                await release.wait()

        containers.build = AsyncMock(side_effect=build)

        first = await orchestrator.request_deployment("webhook")
        await asyncio.sleep(0)
        forced = await orchestrator.request_deployment("manual", force=True)

        assert first.accepted and not first.queued
        assert forced.accepted and forced.queued
        assert orchestrator.queued_count == 1

        release.set()
        await orchestrator.wait_idle()

        assert [d.trigger for d in state.history] == ["webhook", "manual"]
        assert all(d.status == "success" for d in state.history)
        assert state.history[0].ended_at <= state.history[1].started_at

    @pytest.mark.asyncio
    async def test_history_bound(
        self, repository_config, deployment_config, repository, containers, notifier
    ):
        state = AgentState(history_limit=3)
        rollback = RollbackController(deployment_config, repository, containers, state, notifier)
        orchestrator = DeploymentOrchestrator(
            repository_config, deployment_config, repository, containers, rollback, state, notifier
        )

        ids = [(await orchestrator.deploy("poll")).id for _ in range(5)]

        assert len(state.history) == 3
        assert [d.id for d in state.history] == ids[-3:]
        assert [d.id for d in state.recent_history(2)] == [ids[4], ids[3]]

    @pytest.mark.asyncio
    async def test_manual_rollback(self, orchestrator, repository, state, notifier):
        result = await orchestrator.manual_rollback("c" * 40)

        assert result.success
        assert repository.revision == "c" * 40
        assert state.last_revision == "c" * 40
        assert "Rollback Completed" in titles(notifier)
        assert not orchestrator.is_deploying

    @pytest.mark.asyncio
    async def test_manual_rollback_while_deploying(self, orchestrator, containers):
        release = asyncio.Event()

        async def slow_build():
            await release.wait()

        containers.build = AsyncMock(side_effect=slow_build)
        await orchestrator.request_deployment("manual")

        with pytest.raises(DeploymentInProgressError):
            await orchestrator.manual_rollback("c" * 40)

        release.set()
        await orchestrator.wait_idle()

    @pytest.mark.asyncio
    async def test_events_published(self, orchestrator, event_bus):
        subscription = event_bus.subscribe()
        await orchestrator.deploy("manual")

        events = []
        while not subscription.queue.empty():
            events.append(subscription.queue.get_nowait())
        subscription.close()

        assert events
        assert all(e.type == "deployment" for e in events)
        assert events[-1].data["status"] == "success"
