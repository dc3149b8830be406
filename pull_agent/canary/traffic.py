"""
Traffic split between the stable and canary containers.
"""

import logging
import time
from pathlib import Path
from typing import Optional

from pull_agent.config.settings import NginxTrafficConfig
from pull_agent.exceptions import CanaryError, CommandError
from pull_agent.executor import CommandExecutor
from pull_agent.logging_config import log_canary_operation

logger = logging.getLogger(__name__)

NGINX_COMMAND_TIMEOUT = 30.0


class TrafficRouter:
    """Sends ``canary_percent`` of requests to the canary, the rest to stable."""

    name = "router"

    async def set_split(self, rollout_id: str, canary_percent: int) -> None:
        """
        Apply a traffic split.

        Raises:
            CanaryError: If the split could not be applied
        """
        raise NotImplementedError


class NoopTrafficRouter(TrafficRouter):
    """Records the requested split without routing anything."""

    name = "noop"

    def __init__(self) -> None:
        self.splits: dict = {}

    async def set_split(self, rollout_id: str, canary_percent: int) -> None:
        self.splits[rollout_id] = canary_percent
        logger.info(
            f"Traffic split for {rollout_id}: canary {canary_percent}%, "
            f"stable {100 - canary_percent}% (no router configured)"
        )


class NginxTrafficRouter(TrafficRouter):
    """
    Weighted nginx upstream.

    Rewrites an upstream include file, validates with ``nginx -t`` and reloads
    nginx inside its container. A rejected config is reverted to the previous
    file contents before the error is raised.
    """

    name = "nginx"

    def __init__(self, config: NginxTrafficConfig, executor: CommandExecutor):
        self.config = config
        self.executor = executor
        self.upstream_path = Path(config.upstream_path)

    def render(self, rollout_id: str, canary_percent: int) -> str:
        """Render the upstream block; a 0 or 100 split lists a single server."""
        lines = [
            f"# Managed by pull-agent (rollout {rollout_id}, canary {canary_percent}%)",
            f"upstream {self.config.upstream_name} {{",
        ]
        stable_weight = 100 - canary_percent
        if stable_weight > 0:
            lines.append(f"    server {self.config.stable_server} weight={stable_weight};")
        if canary_percent > 0:
            lines.append(f"    server {self.config.canary_server} weight={canary_percent};")
        lines.append("}")
        return "\n".join(lines) + "\n"

    async def set_split(self, rollout_id: str, canary_percent: int) -> None:
        if not 0 <= canary_percent <= 100:
            raise CanaryError(f"Invalid canary percentage: {canary_percent}")

        start_time = time.time()
        new_config = self.render(rollout_id, canary_percent)
        previous: Optional[str] = None
        if self.upstream_path.exists():
            previous = self.upstream_path.read_text()

        try:
            self.upstream_path.parent.mkdir(parents=True, exist_ok=True)
            # Write in place: nginx sees the file through a bind mount
            with open(self.upstream_path, "w") as f:
                f.write(new_config)
        except OSError as e:
            raise CanaryError(f"Failed to write nginx upstream {self.upstream_path}: {e}")

        try:
            await self._nginx("-t")
        except CommandError as e:
            self._restore(previous)
            log_canary_operation(
                "traffic_update_rejected", rollout_id, {"error": e.stderr or str(e)}, level="ERROR"
            )
            raise CanaryError(f"nginx rejected upstream config: {e.stderr or e}")

        try:
            await self._nginx("-s", "reload")
        except CommandError as e:
            self._restore(previous)
            raise CanaryError(f"nginx reload failed: {e}")

        duration_ms = int((time.time() - start_time) * 1000)
        log_canary_operation(
            "traffic_updated",
            rollout_id,
            {"canary_percent": canary_percent, "duration_ms": duration_ms},
        )

    async def _nginx(self, *args: str) -> None:
        await self.executor.run(
            ["docker", "exec", self.config.container_name, "nginx", *args],
            timeout=NGINX_COMMAND_TIMEOUT,
        )

    def _restore(self, previous: Optional[str]) -> None:
        try:
            if previous is None:
                self.upstream_path.unlink(missing_ok=True)
            else:
                with open(self.upstream_path, "w") as f:
                    f.write(previous)
            logger.warning(f"Restored previous nginx upstream {self.upstream_path}")
        except OSError as e:
            logger.error(f"Failed to restore nginx upstream {self.upstream_path}: {e}")
