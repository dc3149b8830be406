"""
Pull agent service.

Wires configuration into the deployment, trigger, canary and notification
components and runs them on a single event loop next to the HTTP API.
"""

import asyncio
import logging
import signal
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Set

from pull_agent import __version__
from pull_agent.audit import configure_audit_log
from pull_agent.canary import (
    CanaryController,
    DockerCanaryContainers,
    NginxTrafficRouter,
    NoopTrafficRouter,
    PrometheusMetricsProvider,
    SimulatedMetricsProvider,
)
from pull_agent.config.settings import PullAgentConfig
from pull_agent.deployment import (
    AgentState,
    AppContainers,
    DeploymentOrchestrator,
    RollbackController,
    StateStore,
    connect_docker,
)
from pull_agent.events import EventBus
from pull_agent.executor import CommandExecutor
from pull_agent.github import GitHubActionsClient
from pull_agent.logging_config import get_recent_log_buffer
from pull_agent.notifications import NotificationDispatcher
from pull_agent.repository import GitRepository
from pull_agent.triggers import RevisionPoller, WebhookHandler

logger = logging.getLogger(__name__)


class PullAgent:
    """
    GitOps pull agent.

    Owns the shared state and every long-running task: poller, state saver,
    notification worker, canary analysis loops and the API server.
    """

    def __init__(
        self,
        config: PullAgentConfig,
        docker_client: Optional[Any] = None,
        connect: bool = True,
    ):
        """
        Build the agent from configuration.

        Args:
            config: Loaded configuration
            docker_client: Docker SDK client; connected from the environment when omitted
            connect: Try to reach the Docker daemon when no client is given
        """
        self.config = config
        self._running = False
        self._start_time: Optional[datetime] = None
        self._shutdown_event = asyncio.Event()
        self._background_tasks: Set[asyncio.Task] = set()

        audit_path = config.logging.audit_log_path or str(
            Path(config.logging.log_dir) / "audit.jsonl"
        )
        configure_audit_log(audit_path)

        self.event_bus = EventBus()
        self.executor = CommandExecutor(self.event_bus, default_cwd=config.repository.path)
        self.repository = GitRepository(config.repository, self.executor)

        if docker_client is None and connect:
            docker_client = connect_docker()
        self.docker_client = docker_client

        self.containers = AppContainers(
            config.app,
            config.deployment,
            self.executor,
            config.repository.path,
            docker_client=docker_client,
        )
        self.notifier = NotificationDispatcher.from_config(config.notifications)

        self.state = AgentState(history_limit=config.deployment.history_limit)
        self.state_store = StateStore(config.state_file)

        self.rollback = RollbackController(
            config.deployment,
            self.repository,
            self.containers,
            self.state,
            self.notifier,
            self.event_bus,
        )
        self.orchestrator = DeploymentOrchestrator(
            config.repository,
            config.deployment,
            self.repository,
            self.containers,
            self.rollback,
            self.state,
            self.notifier,
            self.event_bus,
        )

        self.github = GitHubActionsClient(config.github, config.repository.branch)
        self.webhook = WebhookHandler(
            self.orchestrator,
            config.repository.branch,
            secret=config.security.webhook_secret,
            require_signature=config.security.require_webhook_signature,
            on_workflow_run=self.github.refresh_runs,
        )
        self.poller = RevisionPoller(
            config.polling,
            self.repository,
            self.orchestrator,
            self.state,
            after_poll=self.github.refresh_runs if self.github.enabled else None,
        )
        self.canary = self._build_canary_controller()

    def _build_canary_controller(self) -> CanaryController:
        settings = self.config.canary
        if settings.nginx.enabled:
            traffic = NginxTrafficRouter(settings.nginx, self.executor)
        else:
            traffic = NoopTrafficRouter()

        if settings.prometheus_url:
            metrics = PrometheusMetricsProvider(
                settings.prometheus_url, timeout=settings.prometheus_timeout_seconds
            )
        else:
            logger.warning("PROMETHEUS_URL not set, canary analysis uses simulated metrics")
            metrics = SimulatedMetricsProvider()

        return CanaryController(
            settings,
            traffic,
            DockerCanaryContainers(self.config.app.container_name, client=self.docker_client),
            metrics,
            self.notifier,
            self.event_bus,
        )

    # -- views shared by the API and the WebSocket stream --------------------

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return (datetime.now(timezone.utc) - self._start_time).total_seconds()

    def health_info(self) -> Dict[str, Any]:
        last = self.state.last_deployment
        return {
            "status": "healthy",
            "version": __version__,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "deploying": self.orchestrator.is_deploying,
            "last_revision": self.state.last_revision,
            "last_deployment": last.model_dump(mode="json") if last else None,
        }

    def status_info(self) -> Dict[str, Any]:
        cfg = self.config
        last = self.state.last_deployment
        current = self.state.current_deployment
        return {
            "config": {
                "repo": cfg.github.repo,
                "branch": cfg.repository.branch,
                "poll_interval_seconds": cfg.polling.interval_seconds,
                "app_container": cfg.app.container_name,
                "app_service": cfg.app.compose_service,
                "rollback_enabled": cfg.deployment.rollback_enabled,
                "webhook_secret_configured": bool(cfg.security.webhook_secret),
                "notifications": [channel.name for channel in self.notifier.channels],
                "github_actions": self.github.enabled,
            },
            "state": {
                "last_revision": self.state.last_revision,
                "last_deployment": last.model_dump(mode="json") if last else None,
                "current_deployment": current.model_dump(mode="json") if current else None,
                "deploying": self.orchestrator.is_deploying,
                "queued_deployments": self.orchestrator.queued_count,
                "consecutive_failures": self.state.consecutive_failures,
                "last_poll_at": self.state.last_poll_at,
            },
            "history": [d.model_dump(mode="json") for d in self.state.recent_history(10)],
        }

    # -- lifecycle ------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def start(self) -> None:
        """Start all agent services except the API server."""
        logger.info(f"Starting pull agent {__version__}...")
        self._running = True
        self._start_time = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        self.event_bus.bind_loop()
        get_recent_log_buffer().set_listener(
            lambda entry: self.event_bus.publish("log", entry)
        )

        self.state_store.load(self.state)
        if self.state.last_revision is None:
            self.state.last_revision = await self.repository.current_revision()

        await self.notifier.start()
        self._spawn(self.poller.run(self._shutdown_event))
        self._spawn(self._state_save_loop())
        if self.github.enabled:
            self._spawn(self.github.refresh_runs())

        logger.info(
            f"Pull agent started: tracking {self.config.repository.branch} "
            f"at {(self.state.last_revision or 'unknown')[:7]}"
        )

    async def _state_save_loop(self) -> None:
        interval = self.config.storage.save_interval_seconds
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.state_store.save_async(self.state)

    async def _start_api_server(self) -> None:
        """Serve the FastAPI app with uvicorn until shutdown."""
        import uvicorn

        from pull_agent.api.app import create_app

        app = create_app(self)
        config = uvicorn.Config(
            app,
            host=self.config.server.host,
            port=self.config.server.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting API server on {self.config.server.host}:{self.config.server.port}")
        serve_task = asyncio.create_task(server.serve())
        stop_task = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            server.should_exit = True
            await serve_task
        except Exception as e:
            logger.error(f"API server failed: {e}")
        finally:
            stop_task.cancel()
            # API exit stops the agent
            self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop all services and persist state."""
        logger.info("Stopping pull agent...")
        self._running = False
        self._shutdown_event.set()

        if self.orchestrator.is_deploying:
            logger.info("Waiting for the running deployment to finish...")
            await self.orchestrator.wait_idle()

        await self.canary.stop()

        tasks = list(self._background_tasks)
        if tasks:
            await asyncio.wait(tasks, timeout=10)
        for task in tasks:
            if not task.done():
                task.cancel()

        self.state_store.save_sync(self.state)
        await self.notifier.stop()
        await self.github.close()
        get_recent_log_buffer().set_listener(None)
        logger.info("Pull agent stopped")

    async def run(self) -> None:
        """Run the agent and its API until a shutdown signal."""
        loop = asyncio.get_running_loop()

        def handle_signal() -> None:
            logger.info("Shutdown signal received")
            self._shutdown_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle_signal)

        started = time.monotonic()
        try:
            await self.start()
            api_task = self._spawn(self._start_api_server())
            await self._shutdown_event.wait()
            await asyncio.wait([api_task], timeout=10)
        finally:
            await self.stop()
            logger.info(f"Pull agent ran for {time.monotonic() - started:.0f}s")
