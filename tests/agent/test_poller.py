"""
Tests for the revision poller.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from pull_agent.config.settings import PollingConfig
from pull_agent.exceptions import DeploymentInProgressError
from pull_agent.models.deployment import Deployment
from pull_agent.triggers.poller import RevisionPoller


@pytest.fixture
def orchestrator():
    orch = Mock()
    orch.is_deploying = False
    deployment = Deployment(trigger="poll")
    deployment.finish("success")
    orch.deploy = AsyncMock(return_value=deployment)
    return orch


@pytest.fixture
def poller(repository, orchestrator, state):
    return RevisionPoller(
        PollingConfig(interval_seconds=60, initial_delay_seconds=0), repository, orchestrator, state
    )


class TestRevisionPoller:
    """Test polling decisions."""

    @pytest.mark.asyncio
    async def test_new_revision_deploys(self, poller, orchestrator, state):
        status = await poller.poll_once()

        assert status == "success"
        orchestrator.deploy.assert_awaited_once_with("poll")
        assert state.last_poll_at is not None

    @pytest.mark.asyncio
    async def test_up_to_date(self, poller, repository, orchestrator):
        repository.remote_revision = AsyncMock(return_value="a" * 40)

        assert await poller.poll_once() is None
        orchestrator.deploy.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_while_deploying(self, poller, repository, orchestrator, state):
        orchestrator.is_deploying = True

        assert await poller.poll_once() is None
        repository.remote_revision.assert_not_awaited()
        assert state.last_poll_at is not None

    @pytest.mark.asyncio
    async def test_unknown_remote(self, poller, repository, orchestrator):
        repository.remote_revision = AsyncMock(return_value=None)

        assert await poller.poll_once() is None
        orchestrator.deploy.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_race(self, poller, orchestrator):
        orchestrator.deploy = AsyncMock(side_effect=DeploymentInProgressError("123"))
        assert await poller.poll_once() is None

    def test_disabled(self, repository, orchestrator, state):
        poller = RevisionPoller(PollingConfig(interval_seconds=0), repository, orchestrator, state)
        assert not poller.enabled

    @pytest.mark.asyncio
    async def test_run_survives_errors_and_stops(self, repository, orchestrator, state):
        stop = asyncio.Event()
        polled = asyncio.Event()
        repository.current_revision = AsyncMock(side_effect=RuntimeError("git exploded"))

        async def after_poll():
            polled.set()
            stop.set()

        poller = RevisionPoller(
            PollingConfig(interval_seconds=60, initial_delay_seconds=0),
            repository,
            orchestrator,
            state,
            after_poll=after_poll,
        )
        await asyncio.wait_for(poller.run(stop), timeout=2)

        assert polled.is_set()
        orchestrator.deploy.assert_not_awaited()
