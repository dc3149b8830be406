"""
Rollback of the application to a known-good revision.
"""

import logging
from typing import Optional

from pull_agent.audit import audit_deployment_action
from pull_agent.config.settings import DeploymentConfig
from pull_agent.deployment.containers import AppContainers
from pull_agent.deployment.state import AgentState
from pull_agent.events import EventBus
from pull_agent.exceptions import PullAgentError
from pull_agent.models.deployment import Deployment, RollbackResult
from pull_agent.notifications.dispatcher import NotificationDispatcher
from pull_agent.repository import GitRepository
from pull_agent.utils.log_sanitizer import sanitize_revision

logger = logging.getLogger(__name__)


class RollbackController:
    """
    Resets the working tree to a target revision and rebuilds the app.

    Callers must hold the deployment gate: the controller writes
    ``state.last_revision``.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        repository: GitRepository,
        containers: AppContainers,
        state: AgentState,
        notifier: NotificationDispatcher,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.containers = containers
        self.state = state
        self.notifier = notifier
        self.event_bus = event_bus

    @property
    def enabled(self) -> bool:
        return self.config.rollback_enabled

    async def rollback(
        self, target_revision: Optional[str], deployment: Optional[Deployment] = None
    ) -> RollbackResult:
        """
        Roll the application back to ``target_revision``.

        When a running deployment is given, a ``rollback`` phase is recorded
        on it and its ``rollback_status`` is set.

        Args:
            target_revision: Revision to restore
            deployment: Failed deployment being rolled back, if any

        Returns:
            RollbackResult; never raises for operational failures
        """
        if not self.enabled or not target_revision:
            reason = "rollback disabled" if not self.enabled else "no target revision"
            logger.warning(f"Skipping rollback: {reason}")
            if deployment is not None:
                deployment.rollback_status = "skipped"
            return RollbackResult(
                success=False, target_revision=target_revision, skipped=True, error=reason
            )

        short = sanitize_revision(target_revision)[:7]
        deployment_id = deployment.id if deployment is not None else None
        logger.warning(f"Rolling back to {short}")
        self._publish({"action": "rollback_started", "target": target_revision})
        audit_deployment_action(
            action="rollback_started",
            deployment_id=deployment_id,
            details={"target_revision": target_revision},
        )

        phase = deployment.start_phase("rollback") if deployment is not None else None
        error: Optional[str] = None
        try:
            await self.repository.reset_hard(target_revision)
            await self.containers.build()
            await self.containers.restart()
            if not await self.containers.wait_healthy():
                error = "Health check failed after rollback"
        except PullAgentError as e:
            error = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error during rollback to {short}")
            error = f"{type(e).__name__}: {e}"

        if error is None:
            self.state.last_revision = target_revision
            if phase is not None and deployment is not None:
                deployment.complete_phase(phase)
                deployment.rollback_status = "success"
            logger.info(f"Rollback to {short} completed")
            self.notifier.send(
                "Rollback Completed", f"Rolled back to commit {short}", severity="warning"
            )
        else:
            if phase is not None and deployment is not None:
                deployment.fail_phase(phase, error)
                deployment.rollback_status = "failed"
            logger.error(f"Rollback to {short} failed: {error}")
            self.notifier.send(
                "Rollback Failed",
                f"Could not roll back to {short}: {error}. Manual intervention required.",
                severity="critical",
            )

        audit_deployment_action(
            action="rollback_completed" if error is None else "rollback_failed",
            deployment_id=deployment_id,
            details={"target_revision": target_revision, "error": error},
            success=error is None,
        )
        self._publish(
            {"action": "rollback_finished", "target": target_revision, "success": error is None}
        )
        return RollbackResult(success=error is None, target_revision=target_revision, error=error)

    def _publish(self, data: dict) -> None:
        if self.event_bus is not None:
            self.event_bus.publish("deployment", data)
