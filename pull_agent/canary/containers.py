"""
Docker operations for canary containers.

The canary runs next to the stable application container as
``<app>-canary``, cloned from the stable container's environment, labels,
network and volumes but with the canary image.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Optional

import docker
from docker.errors import DockerException, NotFound

from pull_agent.exceptions import CanaryError
from pull_agent.models.canary import CanaryRollout

logger = logging.getLogger(__name__)

CANARY_SUFFIX = "-canary"
STOP_TIMEOUT = 10


class CanaryContainers:
    """Container lifecycle hooks used by the canary controller."""

    async def deploy_canary(self, rollout: CanaryRollout) -> None:
        raise NotImplementedError

    async def remove_canary(self, rollout: CanaryRollout) -> None:
        raise NotImplementedError

    async def promote(self, rollout: CanaryRollout) -> None:
        """Run the canary image as the stable container."""
        raise NotImplementedError


def _run_config(
    attrs: Dict[str, Any], extra_labels: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """Translate ``docker inspect`` output into ``containers.run`` keyword arguments."""
    config = attrs.get("Config", {}) or {}
    host_config = attrs.get("HostConfig", {}) or {}
    networks = (attrs.get("NetworkSettings", {}) or {}).get("Networks", {}) or {}

    labels = dict(config.get("Labels") or {})
    if extra_labels:
        labels.update(extra_labels)

    kwargs: Dict[str, Any] = {
        "environment": list(config.get("Env") or []),
        "labels": labels,
        "detach": True,
    }
    if networks:
        kwargs["network"] = next(iter(networks))
    binds: List[str] = host_config.get("Binds") or []
    if binds:
        kwargs["volumes"] = binds
    restart_policy = host_config.get("RestartPolicy") or {}
    if restart_policy.get("Name"):
        kwargs["restart_policy"] = {"Name": restart_policy["Name"]}
    return kwargs


class DockerCanaryContainers(CanaryContainers):
    """
    Canary containers managed through the Docker SDK.

    Args:
        app_container: Name of the stable application container
        client: Docker client; connects from the environment when omitted
    """

    def __init__(self, app_container: str, client: Optional[Any] = None):
        self.app_container = app_container
        self._client = client

    @property
    def canary_name(self) -> str:
        return f"{self.app_container}{CANARY_SUFFIX}"

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise CanaryError(f"Docker is not available: {e}")
        return self._client

    async def _call(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args, **kwargs))
        except DockerException as e:
            raise CanaryError(f"Docker operation failed: {e}")

    def _find_stable(self) -> Any:
        try:
            return self.client.containers.get(self.app_container)
        except NotFound:
            pass
        for container in self.client.containers.list(all=True):
            if self.app_container in container.name and CANARY_SUFFIX not in container.name:
                return container
        raise CanaryError(f"Stable container not found: {self.app_container}")

    def _remove_named(self, name: str) -> bool:
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return False
        try:
            container.stop(timeout=STOP_TIMEOUT)
        except DockerException as e:
            logger.debug(f"Stopping {name} failed, removing anyway: {e}")
        container.remove(force=True)
        return True

    def _deploy_canary(self, rollout: CanaryRollout) -> str:
        if self._remove_named(self.canary_name):
            logger.info(f"Replaced existing canary container {self.canary_name}")
        stable = self._find_stable()
        kwargs = _run_config(
            stable.attrs,
            {"canary.deployment.id": rollout.id, "canary.stable.image": rollout.stable_image},
        )
        container = self.client.containers.run(
            rollout.canary_image, name=self.canary_name, **kwargs
        )
        return container.short_id

    def _promote(self, rollout: CanaryRollout) -> None:
        stable = self._find_stable()
        name = stable.name
        kwargs = _run_config(stable.attrs)
        kwargs["labels"].pop("canary.deployment.id", None)
        # Image must exist locally before the stable container is removed
        self.client.images.get(rollout.canary_image)
        self._remove_named(name)
        self.client.containers.run(rollout.canary_image, name=name, **kwargs)

    async def deploy_canary(self, rollout: CanaryRollout) -> None:
        container_id = await self._call(self._deploy_canary, rollout)
        logger.info(
            f"Canary container {self.canary_name} ({container_id}) started "
            f"with image {rollout.canary_image}"
        )

    async def remove_canary(self, rollout: CanaryRollout) -> None:
        removed = await self._call(self._remove_named, self.canary_name)
        if removed:
            logger.info(f"Removed canary container {self.canary_name}")
        else:
            logger.info(f"Canary container {self.canary_name} already gone")

    async def promote(self, rollout: CanaryRollout) -> None:
        await self._call(self._promote, rollout)
        logger.info(f"Stable container {self.app_container} now runs {rollout.canary_image}")
