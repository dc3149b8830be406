"""
Tests for the rollback controller.
"""

from unittest.mock import AsyncMock

import pytest

from pull_agent.config.settings import DeploymentConfig
from pull_agent.deployment.rollback import RollbackController
from pull_agent.exceptions import CommandFailedError
from pull_agent.models.deployment import Deployment


@pytest.fixture
def controller(deployment_config, repository, containers, state, notifier):
    return RollbackController(deployment_config, repository, containers, state, notifier)


class TestRollbackController:
    """Test rollback to a known revision."""

    @pytest.mark.asyncio
    async def test_rollback_success(self, controller, repository, containers, state, notifier):
        result = await controller.rollback("c" * 40)

        assert result.success
        assert not result.skipped
        repository.reset_hard.assert_awaited_once_with("c" * 40)
        containers.build.assert_awaited_once()
        containers.restart.assert_awaited_once()
        assert state.last_revision == "c" * 40
        notifier.send.assert_called_once()
        assert notifier.send.call_args.args[0] == "Rollback Completed"
        assert notifier.send.call_args.kwargs["severity"] == "warning"

    @pytest.mark.asyncio
    async def test_rollback_health_failure(self, controller, containers, state, notifier):
        containers.wait_healthy = AsyncMock(return_value=False)

        result = await controller.rollback("c" * 40)

        assert not result.success
        assert result.error == "Health check failed after rollback"
        assert state.last_revision is None
        assert notifier.send.call_args.args[0] == "Rollback Failed"
        assert notifier.send.call_args.kwargs["severity"] == "critical"

    @pytest.mark.asyncio
    async def test_rollback_command_failure(self, controller, repository, containers):
        repository.reset_hard = AsyncMock(side_effect=CommandFailedError("git reset", 128))

        result = await controller.rollback("c" * 40)

        assert not result.success
        assert "git reset" in result.error
        containers.build.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_target_is_skipped(self, controller, repository, notifier):
        deployment = Deployment(trigger="manual")

        result = await controller.rollback(None, deployment)

        assert result.skipped
        assert not result.success
        assert deployment.rollback_status == "skipped"
        repository.reset_hard.assert_not_awaited()
        notifier.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_is_skipped(self, repository, containers, state, notifier):
        controller = RollbackController(
            DeploymentConfig(rollback_enabled=False), repository, containers, state, notifier
        )

        result = await controller.rollback("c" * 40)

        assert result.skipped
        assert result.error == "rollback disabled"
        repository.reset_hard.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_records_phase_on_deployment(self, controller, containers):
        deployment = Deployment(trigger="webhook")
        containers.wait_healthy = AsyncMock(return_value=False)

        await controller.rollback("c" * 40, deployment)

        phase = deployment.phases[-1]
        assert phase.name == "rollback"
        assert phase.status == "failed"
        assert deployment.rollback_status == "failed"
