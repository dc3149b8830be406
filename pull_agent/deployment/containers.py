"""
Application container operations for deployments.

Build and restart go through docker compose; the health check combines a
container state lookup (Docker SDK) with an HTTP probe of the app's health
endpoint.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import docker
import httpx

from pull_agent.config.settings import AppConfig, DeploymentConfig
from pull_agent.executor import CommandExecutor
from pull_agent.utils.compose_command import ComposeResolver

logger = logging.getLogger(__name__)


def connect_docker() -> Optional[Any]:
    """Return a Docker client from the environment, or None if Docker is unreachable."""
    try:
        client = docker.from_env()
        logger.debug("Connected to Docker daemon successfully")
        return client
    except Exception as e:
        logger.warning(f"Failed to connect to Docker: {e}")
        return None


class AppContainers:
    """
    Build, restart and health-check the managed application.

    Args:
        app: Application container settings
        deployment: Timeouts and health polling settings
        executor: Runs docker compose
        repo_path: Working directory for docker compose
        docker_client: Docker SDK client; None skips the container state check
        http_client: Client used for the health probe (created per check when None)
        compose: Compose CLI resolver; one is created over ``executor`` when None
    """

    def __init__(
        self,
        app: AppConfig,
        deployment: DeploymentConfig,
        executor: CommandExecutor,
        repo_path: str,
        docker_client: Optional[Any] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        compose: Optional[ComposeResolver] = None,
    ) -> None:
        self.app = app
        self.deployment = deployment
        self.executor = executor
        self.repo_path = repo_path
        self.docker_client = docker_client
        self.http_client = http_client
        self.compose = compose or ComposeResolver(executor)

    async def build(self) -> None:
        """
        Rebuild the application image without cache.

        Raises:
            CommandError: If the build fails or times out
        """
        logger.info(f"Building service {self.app.compose_service}")
        command = await self.compose.build(
            "build", "--no-cache", self.app.compose_service, compose_file=self.app.compose_file
        )
        await self.executor.run(
            command,
            timeout=self.deployment.build_timeout_seconds,
            cwd=self.repo_path,
            stream_output=True,
        )

    async def restart(self) -> None:
        """
        Recreate the application container from the fresh image.

        Raises:
            CommandError: If compose up fails or times out
        """
        logger.info(f"Restarting service {self.app.compose_service}")
        command = await self.compose.build(
            "up", "-d", self.app.compose_service, compose_file=self.app.compose_file
        )
        await self.executor.run(
            command,
            timeout=self.deployment.restart_timeout_seconds,
            cwd=self.repo_path,
            stream_output=True,
        )

    def _find_container_state(self) -> Optional[bool]:
        """Blocking lookup: True/False for running, None when it cannot be determined."""
        if self.docker_client is None or not self.app.container_name:
            return None
        try:
            containers = self.docker_client.containers.list(
                all=True, filters={"name": self.app.container_name}
            )
        except Exception as e:
            logger.debug(f"Container state lookup failed: {e}")
            return None
        if not containers:
            return False
        return any(c.status == "running" for c in containers)

    async def container_running(self) -> Optional[bool]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._find_container_state)

    async def _probe(self, client: httpx.AsyncClient) -> bool:
        try:
            response = await client.get(
                self.app.health_check_url,
                timeout=self.deployment.health_request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.debug(f"Health probe failed: {e}")
            return False
        return 200 <= response.status_code < 300

    async def check_health(self) -> bool:
        """One health check: container running (when known) and the endpoint answers 2xx."""
        running = await self.container_running()
        if running is False:
            logger.debug(f"Container {self.app.container_name} is not running yet")
            return False

        if self.http_client is not None:
            return await self._probe(self.http_client)
        async with httpx.AsyncClient() as client:
            return await self._probe(client)

    async def wait_healthy(
        self, timeout: Optional[float] = None, interval: Optional[float] = None
    ) -> bool:
        """
        Poll the health check until it passes or the timeout elapses.

        Returns:
            True if the application became healthy in time
        """
        timeout = self.deployment.health_check_timeout_seconds if timeout is None else timeout
        interval = self.deployment.health_check_interval_seconds if interval is None else interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempt = 0

        while True:
            attempt += 1
            if await self.check_health():
                logger.info(f"Application healthy after {attempt} check(s)")
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.error(f"Application not healthy after {timeout:g}s ({attempt} checks)")
                return False
            await asyncio.sleep(min(interval, remaining))

    def _list_containers(self) -> List[Dict[str, Any]]:
        if self.docker_client is None:
            return []
        containers = self.docker_client.containers.list(all=True)
        result = []
        for container in containers:
            tags = getattr(container.image, "tags", None) or []
            image = tags[0] if tags else container.attrs.get("Config", {}).get("Image", "")
            result.append(
                {
                    "id": container.short_id,
                    "name": container.name,
                    "image": image,
                    "state": container.status,
                    "status": container.attrs.get("State", {}).get("Status", container.status),
                }
            )
        return result

    async def list_containers(self) -> List[Dict[str, Any]]:
        """
        List all containers on the host.

        Raises:
            docker.errors.DockerException: If the daemon request fails
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._list_containers)
