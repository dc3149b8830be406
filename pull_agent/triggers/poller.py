"""
Periodic remote revision polling.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from pull_agent.config.settings import PollingConfig
from pull_agent.deployment.orchestrator import DeploymentOrchestrator
from pull_agent.deployment.state import AgentState
from pull_agent.exceptions import DeploymentInProgressError
from pull_agent.repository import GitRepository
from pull_agent.utils.log_sanitizer import sanitize_revision

logger = logging.getLogger(__name__)


class RevisionPoller:
    """Deploys when the remote tracked branch moves away from the local checkout."""

    def __init__(
        self,
        config: PollingConfig,
        repository: GitRepository,
        orchestrator: DeploymentOrchestrator,
        state: AgentState,
        after_poll: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.orchestrator = orchestrator
        self.state = state
        self.after_poll = after_poll

    @property
    def enabled(self) -> bool:
        return self.config.interval_seconds > 0

    async def poll_once(self) -> Optional[str]:
        """
        Check for a new remote revision and deploy it.

        Returns:
            Status of the deployment that ran, or None if nothing was deployed
        """
        self.state.record_poll()
        if self.orchestrator.is_deploying:
            logger.debug("Deployment in progress, skipping poll")
            return None

        local = await self.repository.current_revision()
        remote = await self.repository.remote_revision()
        if not local or not remote:
            logger.warning("Could not determine local or remote revision, skipping poll")
            return None
        if local == remote:
            logger.debug(f"Up to date at {sanitize_revision(local)[:7]}")
            return None

        logger.info(
            f"New revision detected: {sanitize_revision(local)[:7]} -> "
            f"{sanitize_revision(remote)[:7]}"
        )
        try:
            deployment = await self.orchestrator.deploy("poll")
        except DeploymentInProgressError:
            logger.info("Deployment started by another trigger, skipping poll deployment")
            return None
        return deployment.status

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set. Errors are logged and the loop continues."""
        if not self.enabled:
            logger.info("Polling disabled")
            return

        logger.info(
            f"Polling every {self.config.interval_seconds}s "
            f"(first poll in {self.config.initial_delay_seconds}s)"
        )
        if await _wait(stop_event, self.config.initial_delay_seconds):
            return

        while not stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error while polling for updates: {e}", exc_info=True)

            if self.after_poll is not None:
                try:
                    await self.after_poll()
                except Exception as e:
                    logger.warning(f"Post-poll refresh failed: {e}")

            if await _wait(stop_event, self.config.interval_seconds):
                return


async def _wait(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; True if the stop event fired."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False
