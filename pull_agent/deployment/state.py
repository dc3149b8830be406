"""
Deployment state and its persistence.

AgentState is the in-memory record the orchestrator and rollback controller
mutate while holding the deployment gate. StateStore snapshots the durable
part of it (last revision and deployment history) to ``state.json``.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles  # type: ignore

from pull_agent.models.deployment import Deployment

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Deployment interrupted by agent restart"


class AgentState:
    """Runtime deployment state owned by the service."""

    def __init__(self, history_limit: int = 50) -> None:
        self.history_limit = history_limit
        self.last_revision: Optional[str] = None
        self.history: List[Deployment] = []
        self.consecutive_failures = 0
        self.last_poll_at: Optional[str] = None
        self.current_deployment: Optional[Deployment] = None

    @property
    def last_deployment(self) -> Optional[Deployment]:
        return self.history[-1] if self.history else None

    def append_history(self, deployment: Deployment) -> None:
        """Record a finished deployment, evicting the oldest beyond the limit."""
        self.history.append(deployment)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]

    def recent_history(self, limit: int = 20) -> List[Deployment]:
        """Deployments, most recent first."""
        if limit <= 0:
            return []
        return list(reversed(self.history[-limit:]))

    def record_poll(self) -> None:
        self.last_poll_at = datetime.now(timezone.utc).isoformat()


class StateStore:
    """
    Manages persistent storage of deployment state.

    The file holds ``{"lastRevision", "deploymentHistory", "savedAt"}`` and is
    replaced atomically on every save.
    """

    def __init__(self, state_file: Path) -> None:
        """
        Initialize the state store.

        Args:
            state_file: Location of state.json; parent directories are created on save
        """
        self.state_file = Path(state_file)

    def load(self, state: AgentState) -> bool:
        """
        Populate ``state`` from disk.

        An unreadable or malformed file is logged and ignored so the agent can
        start fresh. Deployments still marked running were interrupted by a
        restart and are marked failed.

        Returns:
            True if a snapshot was loaded
        """
        if not self.state_file.exists():
            logger.info(f"No saved state at {self.state_file}, starting fresh")
            return False

        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("state root is not an object")
            history = [Deployment(**item) for item in data.get("deploymentHistory", [])]
        except Exception as e:
            logger.warning(f"Failed to load state from {self.state_file}, starting fresh: {e}")
            return False

        interrupted = 0
        for deployment in history:
            if deployment.is_running:
                deployment.finish("failed", INTERRUPTED_MESSAGE)
                interrupted += 1

        state.last_revision = data.get("lastRevision")
        state.history = []
        for deployment in history:
            state.append_history(deployment)

        if interrupted:
            logger.warning(f"Marked {interrupted} interrupted deployment(s) as failed")
        logger.info(
            f"Loaded state: last revision {state.last_revision}, "
            f"{len(state.history)} deployments in history"
        )
        return True

    @staticmethod
    def snapshot(state: AgentState) -> Dict[str, Any]:
        return {
            "lastRevision": state.last_revision,
            "deploymentHistory": [d.model_dump(mode="json") for d in state.history],
            "savedAt": datetime.now(timezone.utc).isoformat(),
        }

    def save_sync(self, state: AgentState) -> bool:
        """Save state synchronously (used during shutdown)."""
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(self.snapshot(state), f, indent=2)
            temp_file.replace(self.state_file)
            logger.debug(f"Saved state with {len(state.history)} deployments")
            return True
        except Exception as e:
            logger.error(f"Failed to save state: {e}")
            return False

    async def save_async(self, state: AgentState) -> bool:
        """Save state asynchronously; failures are logged and reported, never raised."""
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.state_file.with_suffix(".tmp")
            async with aiofiles.open(temp_file, "w") as f:
                await f.write(json.dumps(self.snapshot(state), indent=2))

            # Atomic rename (still sync as it's a filesystem operation)
            temp_file.replace(self.state_file)
            logger.debug(f"Saved state with {len(state.history)} deployments")
            return True
        except Exception as e:
            logger.error(f"Failed to save state: {e}")
            return False
