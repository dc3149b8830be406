"""
Docker Compose CLI resolution.

Hosts ship either the v2 plugin (``docker compose``) or the standalone v1
binary (``docker-compose``). The resolver checks once through the command
executor, so detection never blocks the event loop, and reuses the answer
for every later build and restart.
"""

import asyncio
import logging
import shutil
from typing import List, Optional

from pull_agent.exceptions import CommandError
from pull_agent.executor import CommandExecutor

logger = logging.getLogger(__name__)

COMPOSE_V2 = ["docker", "compose"]
COMPOSE_V1 = ["docker-compose"]


class ComposeNotFoundError(CommandError):
    """Neither the compose plugin nor the standalone binary is installed."""

    def __init__(self, v2_error: Optional[str] = None):
        message = "Docker Compose is not available (tried 'docker compose' and 'docker-compose')"
        if v2_error:
            message += f"; docker compose version: {v2_error}"
        super().__init__(message, command="docker compose version")
        self.v2_error = v2_error


class ComposeResolver:
    """
    Detects the compose CLI once and builds compose command lines.

    Args:
        executor: Runs the ``docker compose version`` check
        detect_timeout: Seconds allowed for the version check
    """

    def __init__(self, executor: CommandExecutor, detect_timeout: float = 5) -> None:
        self.executor = executor
        self.detect_timeout = detect_timeout
        self._command: Optional[List[str]] = None
        self._lock = asyncio.Lock()

    @property
    def detected(self) -> Optional[List[str]]:
        return list(self._command) if self._command is not None else None

    def reset(self) -> None:
        self._command = None

    async def command(self) -> List[str]:
        """
        Raises:
            ComposeNotFoundError: If no compose CLI is available
        """
        async with self._lock:
            if self._command is None:
                self._command = await self._detect()
            return list(self._command)

    async def build(self, *args: str, compose_file: Optional[str] = None) -> List[str]:
        """Full argv for ``compose [-f file] args...``."""
        command = await self.command()
        if compose_file:
            command += ["-f", compose_file]
        return command + list(args)

    async def _detect(self) -> List[str]:
        v2_error: Optional[str] = None
        try:
            result = await self.executor.run(
                COMPOSE_V2 + ["version"], timeout=self.detect_timeout, check=False
            )
        except CommandError as e:
            v2_error = e.message
        else:
            if result.ok:
                logger.info("Using Docker Compose v2 (docker compose)")
                return list(COMPOSE_V2)
            v2_error = f"exit code {result.returncode}"
            if result.stderr.strip():
                v2_error += f": {result.stderr.strip()}"

        if shutil.which(COMPOSE_V1[0]):
            logger.info("Using Docker Compose v1 (docker-compose)")
            return list(COMPOSE_V1)

        logger.error(f"Docker Compose not found: {v2_error}")
        raise ComposeNotFoundError(v2_error)
