"""
Pytest configuration and fixtures for pull agent tests.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from pull_agent.audit import configure_audit_log
from pull_agent.config.settings import DeploymentConfig, RepositoryConfig
from pull_agent.deployment.state import AgentState
from pull_agent.events import EventBus


@pytest.fixture(autouse=True)
def audit_log(tmp_path):
    """Keep the audit trail inside the test's temporary directory."""
    path = tmp_path / "audit.jsonl"
    configure_audit_log(str(path))
    yield path
    configure_audit_log(None)


@pytest.fixture
def notifier():
    """Notification dispatcher stand-in that records sent titles."""
    dispatcher = Mock()
    dispatcher.send = Mock(return_value=True)
    dispatcher.channels = []
    return dispatcher


@pytest.fixture
def repository():
    """Git repository mock at revision aaa that pulls to bbb."""
    repo = Mock()
    repo.branch = "main"
    repo.revision = "a" * 40

    async def current_revision():
        return repo.revision

    async def pull(timeout):
        repo.revision = "b" * 40

    async def reset_hard(revision, timeout=60):
        repo.revision = revision

    repo.current_revision = AsyncMock(side_effect=current_revision)
    repo.remote_revision = AsyncMock(return_value="b" * 40)
    repo.pull = AsyncMock(side_effect=pull)
    repo.reset_hard = AsyncMock(side_effect=reset_hard)
    repo.commit_info = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def containers():
    """Healthy application containers."""
    app = Mock()
    app.build = AsyncMock()
    app.restart = AsyncMock()
    app.wait_healthy = AsyncMock(return_value=True)
    return app


@pytest.fixture
def deployment_config():
    return DeploymentConfig(max_consecutive_failures=3, history_limit=50)


@pytest.fixture
def repository_config():
    return RepositoryConfig(path="/tmp/repo", branch="main")


@pytest.fixture
def state():
    return AgentState(history_limit=50)


@pytest.fixture
def event_bus():
    return EventBus()
