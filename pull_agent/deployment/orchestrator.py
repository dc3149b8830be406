"""
Deployment orchestration: the deployment gate and the phase state machine.

Every trigger (webhook, poller, manual API call) enters through
``DeploymentOrchestrator.request_deployment`` or ``deploy``. At most one
deployment runs at a time; forced manual requests wait in a FIFO queue for
the running one to finish.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from pull_agent.audit import audit_deployment_action
from pull_agent.config.settings import DeploymentConfig, RepositoryConfig
from pull_agent.deployment.containers import AppContainers
from pull_agent.deployment.rollback import RollbackController
from pull_agent.deployment.state import AgentState
from pull_agent.events import EventBus
from pull_agent.exceptions import DeploymentInProgressError, PhaseFailedError
from pull_agent.logging_config import log_deployment_operation
from pull_agent.models.deployment import (
    Deployment,
    DeploymentOptions,
    DeploymentRequestResult,
    PhaseName,
    RollbackResult,
    TriggerSource,
)
from pull_agent.notifications.dispatcher import NotificationDispatcher
from pull_agent.repository import GitRepository
from pull_agent.utils.log_sanitizer import sanitize_revision

logger = logging.getLogger(__name__)


class DeploymentGate:
    """
    At-most-one-deployment guard.

    An asyncio lock protects the in-progress flag so that checking and
    setting it is a single atomic step; exactly one concurrent caller of
    ``try_acquire`` wins.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._in_progress = False
        self._free = asyncio.Event()
        self._free.set()

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def try_acquire(self) -> bool:
        async with self._lock:
            if self._in_progress:
                return False
            self._in_progress = True
            self._free.clear()
            return True

    async def acquire(self) -> None:
        """Wait until the gate is free, then take it."""
        while True:
            await self._free.wait()
            if await self.try_acquire():
                return

    async def release(self) -> None:
        async with self._lock:
            self._in_progress = False
            self._free.set()


class DeploymentOrchestrator:
    """Runs deployments of the tracked branch through pull, build, restart and health."""

    def __init__(
        self,
        repository_config: RepositoryConfig,
        config: DeploymentConfig,
        repository: GitRepository,
        containers: AppContainers,
        rollback: RollbackController,
        state: AgentState,
        notifier: NotificationDispatcher,
        event_bus: Optional[EventBus] = None,
        gate: Optional[DeploymentGate] = None,
    ) -> None:
        self.repository_config = repository_config
        self.config = config
        self.repository = repository
        self.containers = containers
        self.rollback_controller = rollback
        self.state = state
        self.notifier = notifier
        self.event_bus = event_bus
        self.gate = gate or DeploymentGate()

        self._queued: Deque[Tuple[TriggerSource, DeploymentOptions]] = deque()
        self._queue_task: Optional[asyncio.Task] = None

        # Track background tasks to prevent garbage collection
        self._background_tasks: set = set()

    @property
    def is_deploying(self) -> bool:
        return self.gate.in_progress

    @property
    def queued_count(self) -> int:
        return len(self._queued)

    def _track(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def request_deployment(
        self, trigger: TriggerSource, skip_rollback: bool = False, force: bool = False
    ) -> DeploymentRequestResult:
        """
        Start a deployment in the background if the gate is free.

        Args:
            trigger: What asked for the deployment
            skip_rollback: Do not roll back if this deployment fails
            force: When busy, queue behind the running deployment instead of refusing

        Returns:
            DeploymentRequestResult describing what happened
        """
        options = DeploymentOptions(skip_rollback=skip_rollback, force=force)

        if await self.gate.try_acquire():
            deployment = self._create(trigger, options)
            self._track(self._execute_and_release(deployment))
            return DeploymentRequestResult(
                accepted=True, deployment=deployment, message="Deployment triggered"
            )

        current = self.state.current_deployment
        if force:
            self._queued.append((trigger, options))
            logger.info(
                f"Deployment {current.id if current else ''} in progress, queued forced "
                f"{trigger} deployment ({len(self._queued)} waiting)"
            )
            if self._queue_task is None or self._queue_task.done():
                self._queue_task = self._track(self._drain_queue())
            return DeploymentRequestResult(
                accepted=True,
                queued=True,
                message="Deployment queued after the current deployment",
            )

        logger.info(f"Ignoring {trigger} deployment request: deployment already in progress")
        return DeploymentRequestResult(
            accepted=False,
            deployment=current,
            message="Deployment already in progress",
        )

    async def deploy(self, trigger: TriggerSource, skip_rollback: bool = False) -> Deployment:
        """
        Run a deployment to completion.

        Raises:
            DeploymentInProgressError: If another deployment holds the gate
        """
        if not await self.gate.try_acquire():
            current = self.state.current_deployment
            raise DeploymentInProgressError(current.id if current else None)
        deployment = self._create(trigger, DeploymentOptions(skip_rollback=skip_rollback))
        await self._execute_and_release(deployment)
        return deployment

    async def manual_rollback(self, target_revision: str) -> RollbackResult:
        """
        Roll back to ``target_revision`` while holding the deployment gate.

        Raises:
            DeploymentInProgressError: If a deployment is running
        """
        if not await self.gate.try_acquire():
            current = self.state.current_deployment
            raise DeploymentInProgressError(current.id if current else None)
        try:
            audit_deployment_action(
                action="manual_rollback",
                details={"target_revision": target_revision},
                user="api",
            )
            return await self.rollback_controller.rollback(target_revision)
        finally:
            await self.gate.release()

    async def wait_idle(self) -> None:
        """Wait for running and queued deployments to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _drain_queue(self) -> None:
        while self._queued:
            await self.gate.acquire()
            trigger, options = self._queued.popleft()
            deployment = self._create(trigger, options)
            await self._execute_and_release(deployment)

    def _create(self, trigger: TriggerSource, options: DeploymentOptions) -> Deployment:
        deployment = Deployment(
            trigger=trigger, previous_revision=self.state.last_revision, options=options
        )
        self.state.current_deployment = deployment
        return deployment

    async def _execute_and_release(self, deployment: Deployment) -> None:
        try:
            await self._execute(deployment)
        except Exception as e:
            # Bookkeeping failure after the phases; keep the gate consistent
            logger.exception(f"Deployment {deployment.id} crashed: {e}")
            if deployment.is_running:
                deployment.finish("failed", f"{type(e).__name__}: {e}")
                self.state.append_history(deployment)
        finally:
            if self.state.current_deployment is deployment:
                self.state.current_deployment = None
            await self.gate.release()

    async def _execute(self, deployment: Deployment) -> None:
        """Drive one deployment through its phases. Caller holds the gate."""
        if deployment.previous_revision is None:
            deployment.previous_revision = await self.repository.current_revision()

        log_deployment_operation(
            "started",
            deployment.id,
            {"trigger": deployment.trigger, "previous_revision": deployment.previous_revision},
        )
        audit_deployment_action(
            action="deployment_started",
            deployment_id=deployment.id,
            details={"trigger": deployment.trigger, "options": deployment.options.model_dump()},
            user=deployment.trigger,
        )
        self._publish(deployment)
        self.notifier.send(
            "Deployment Started",
            f"Deploying branch {self.repository_config.branch} (trigger: {deployment.trigger})",
            severity="info",
        )

        try:
            await self._run_phase(deployment, "pull", self._pull)
            await self._run_phase(deployment, "build", self.containers.build)
            await self._run_phase(deployment, "restart", self.containers.restart)
            await self._run_phase(deployment, "health", self._health)
        except PhaseFailedError as e:
            await self._handle_failure(deployment, e)
            return

        await self._handle_success(deployment)

    async def _run_phase(
        self, deployment: Deployment, name: PhaseName, action: Callable[[], Awaitable[Any]]
    ) -> None:
        phase = deployment.start_phase(name)
        self._publish(deployment)
        logger.info(f"Deployment {deployment.id}: phase {name} started")
        try:
            await action()
        except PhaseFailedError as e:
            deployment.fail_phase(phase, e.message)
            self._phase_event(deployment, name, success=False, error=e.message)
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            deployment.fail_phase(phase, error)
            self._phase_event(deployment, name, success=False, error=error)
            raise PhaseFailedError(name, error) from e
        deployment.complete_phase(phase)
        self._phase_event(deployment, name, success=True)

        if name == "pull":
            deployment.new_revision = await self.repository.current_revision()
            if deployment.new_revision:
                deployment.commit_info = await self.repository.commit_info(
                    deployment.new_revision
                )

    async def _pull(self) -> None:
        await self.repository.pull(timeout=self.config.pull_timeout_seconds)

    async def _health(self) -> None:
        if not await self.containers.wait_healthy():
            raise PhaseFailedError(
                "health",
                f"Health check failed after {self.config.health_check_timeout_seconds:g}s",
            )

    def _phase_event(
        self, deployment: Deployment, name: str, success: bool, error: Optional[str] = None
    ) -> None:
        details: Dict[str, Any] = {"phase": name}
        if error:
            details["error"] = error
        log_deployment_operation(
            f"phase {name} {'completed' if success else 'failed'}",
            deployment.id,
            details,
            level="INFO" if success else "ERROR",
        )
        audit_deployment_action(
            action="phase_completed" if success else "phase_failed",
            deployment_id=deployment.id,
            details=details,
            success=success,
            user=deployment.trigger,
        )
        self._publish(deployment)

    async def _handle_success(self, deployment: Deployment) -> None:
        deployment.finish("success")
        self.state.last_revision = deployment.new_revision or self.state.last_revision
        self.state.consecutive_failures = 0
        self.state.append_history(deployment)

        short = deployment.commit_info.short_sha if deployment.commit_info else ""
        if not short and deployment.new_revision:
            short = sanitize_revision(deployment.new_revision)[:7]
        message = deployment.commit_info.message if deployment.commit_info else ""
        duration = (deployment.duration_ms or 0) / 1000

        log_deployment_operation(
            "succeeded",
            deployment.id,
            {"revision": deployment.new_revision, "duration_ms": deployment.duration_ms},
        )
        audit_deployment_action(
            action="deployment_completed",
            deployment_id=deployment.id,
            details={"revision": deployment.new_revision, "duration_ms": deployment.duration_ms},
            success=True,
            user=deployment.trigger,
        )
        self._publish(deployment)
        self.notifier.send(
            "Deployment Successful",
            f"Commit {short} deployed in {duration:.1f}s\n{message}".rstrip(),
            severity="success",
        )

    async def _handle_failure(self, deployment: Deployment, error: PhaseFailedError) -> None:
        self.state.consecutive_failures += 1
        failures = self.state.consecutive_failures

        if deployment.options.skip_rollback:
            deployment.rollback_status = "skipped"
        elif not self.rollback_controller.enabled or not deployment.previous_revision:
            deployment.rollback_status = "skipped"
        else:
            await self.rollback_controller.rollback(deployment.previous_revision, deployment)

        deployment.finish("failed", f"{error.phase} phase failed: {error.message}")
        self.state.append_history(deployment)

        log_deployment_operation(
            "failed",
            deployment.id,
            {
                "phase": error.phase,
                "error": error.message,
                "rollback": deployment.rollback_status,
                "consecutive_failures": failures,
            },
            level="ERROR",
        )
        audit_deployment_action(
            action="deployment_failed",
            deployment_id=deployment.id,
            details={
                "phase": error.phase,
                "error": error.message,
                "rollback_status": deployment.rollback_status,
            },
            success=False,
            user=deployment.trigger,
        )
        self._publish(deployment)
        self.notifier.send(
            "Deployment Failed",
            f"Phase {error.phase} failed: {error.message}\n"
            f"Rollback: {deployment.rollback_status or 'not attempted'}",
            severity="error",
        )

        if failures >= self.config.max_consecutive_failures:
            logger.critical(f"{failures} consecutive deployment failures")
            self.notifier.send(
                "CRITICAL: Deployment Failures",
                f"{failures} consecutive deployments have failed. Manual intervention required.",
                severity="critical",
            )

    def _publish(self, deployment: Deployment) -> None:
        if self.event_bus is not None:
            self.event_bus.publish("deployment", deployment.model_dump(mode="json"))
