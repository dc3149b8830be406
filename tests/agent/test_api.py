"""
Tests for the HTTP API.
"""

import json
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from pull_agent.api import create_app
from pull_agent.canary import CanaryController, NoopTrafficRouter, SimulatedMetricsProvider
from pull_agent.config.settings import CanaryConfigSettings, PullAgentConfig
from pull_agent.exceptions import (
    CanaryError,
    CommandFailedError,
    DeploymentInProgressError,
    GitHubAPIError,
)
from pull_agent.models.deployment import Deployment, DeploymentRequestResult, RollbackResult
from pull_agent.service import PullAgent
from pull_agent.triggers.webhook import compute_signature

SECRET = {"X-Deploy-Secret": "s3cret"}

CANARY_BODY = {
    "deploymentId": "web-v2",
    "canaryImage": "app:v2",
    "stableImage": "app:v1",
    "initialPercent": 10,
    "targetPercent": 50,
}


@pytest.fixture
def agent(tmp_path):
    config = PullAgentConfig.from_dict(
        {
            "repository": {"path": str(tmp_path / "repo"), "branch": "main"},
            "security": {"webhook_secret": "whsec", "deploy_secret": "s3cret"},
            "storage": {"data_path": str(tmp_path / "data")},
            "logging": {"log_dir": str(tmp_path / "logs")},
        },
        environ={},
    )
    agent = PullAgent(config, connect=False)

    deployment = Deployment(trigger="manual")
    agent.orchestrator.request_deployment = AsyncMock(
        return_value=DeploymentRequestResult(
            accepted=True, deployment=deployment, message="Deployment triggered"
        )
    )
    agent.orchestrator.manual_rollback = AsyncMock(
        return_value=RollbackResult(success=True, target_revision="c" * 40)
    )

    canary_containers = Mock()
    canary_containers.deploy_canary = AsyncMock()
    canary_containers.remove_canary = AsyncMock()
    canary_containers.promote = AsyncMock()
    agent.canary_containers = canary_containers
    agent.canary = CanaryController(
        CanaryConfigSettings(),
        NoopTrafficRouter(),
        canary_containers,
        SimulatedMetricsProvider(),
        agent.notifier,
        agent.event_bus,
        run_analysis=False,
    )
    return agent


@pytest.fixture
def client(agent):
    with TestClient(create_app(agent)) as client:
        yield client


class TestSystemRoutes:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["deploying"] is False

    def test_status(self, client):
        data = client.get("/status").json()

        assert data["config"]["branch"] == "main"
        assert data["config"]["webhook_secret_configured"] is True
        assert "webhook_secret" not in data["config"]
        assert data["state"]["queued_deployments"] == 0
        assert data["history"] == []

    def test_history(self, client, agent):
        for _ in range(3):
            deployment = Deployment(trigger="poll")
            deployment.finish("success")
            agent.state.append_history(deployment)

        data = client.get("/history", params={"limit": 2}).json()

        assert len(data["deployments"]) == 2
        assert data["total"] == 3

    def test_logs(self, client):
        data = client.get("/logs", params={"limit": 5}).json()
        assert data["count"] == len(data["logs"])

    def test_containers_without_docker(self, client):
        assert client.get("/containers").status_code == 503


class TestDeploymentRoutes:
    """Test manual deploy and rollback."""

    def test_deploy_requires_secret(self, client, agent):
        response = client.post("/deploy", json={})

        assert response.status_code == 401
        agent.orchestrator.request_deployment.assert_not_awaited()

    def test_deploy_wrong_secret(self, client):
        response = client.post("/deploy", json={}, headers={"X-Deploy-Secret": "nope"})
        assert response.status_code == 401

    def test_deploy(self, client, agent):
        response = client.post("/deploy", json={"skip_rollback": True}, headers=SECRET)

        assert response.status_code == 202
        assert response.json()["queued"] is False
        assert "deployment_id" in response.json()
        agent.orchestrator.request_deployment.assert_awaited_once_with(
            "manual", skip_rollback=True, force=False
        )

    def test_deploy_secret_in_body(self, client):
        response = client.post("/deploy", json={"secret": "s3cret"})
        assert response.status_code == 202

    def test_deploy_busy(self, client, agent):
        agent.orchestrator.request_deployment.return_value = DeploymentRequestResult(
            accepted=False, message="Deployment already in progress"
        )

        response = client.post("/deploy", json={}, headers=SECRET)

        assert response.status_code == 409
        assert response.json()["detail"] == "Deployment already in progress"

    def test_deploy_forced_is_queued(self, client, agent):
        agent.orchestrator.request_deployment.return_value = DeploymentRequestResult(
            accepted=True, queued=True, message="Deployment queued after the current deployment"
        )

        response = client.post("/deploy", json={"force": True}, headers=SECRET)

        assert response.status_code == 202
        assert response.json()["queued"] is True

    def test_rollback(self, client, agent):
        response = client.post("/rollback", json={"commit": "c" * 40}, headers=SECRET)

        assert response.status_code == 200
        assert response.json() == {"message": "Rollback completed", "revision": "c" * 40}

    @pytest.mark.parametrize("body", [{}, {"commit": "not-a-sha"}, {"commit": "HEAD~1"}])
    def test_rollback_bad_commit(self, client, agent, body):
        response = client.post("/rollback", json=body, headers=SECRET)

        assert response.status_code == 400
        agent.orchestrator.manual_rollback.assert_not_awaited()

    def test_rollback_while_deploying(self, client, agent):
        agent.orchestrator.manual_rollback.side_effect = DeploymentInProgressError()
        response = client.post("/rollback", json={"commit": "abcd123"}, headers=SECRET)
        assert response.status_code == 409

    def test_rollback_failure(self, client, agent):
        agent.orchestrator.manual_rollback.return_value = RollbackResult(
            success=False, error="reset failed"
        )
        response = client.post("/rollback", json={"commit": "abcd123"}, headers=SECRET)
        assert response.status_code == 500

    def test_commits_failure(self, client, agent):
        agent.repository = Mock(branch="main")
        agent.repository.commit_history = AsyncMock(side_effect=CommandFailedError("git log", 128))

        assert client.get("/commits").status_code == 500

    def test_check_updates(self, client, agent):
        agent.repository = Mock()
        agent.repository.check_for_updates = AsyncMock(
            return_value={"branch": "main", "local": "a", "remote": "b", "has_updates": True}
        )

        assert client.get("/check-updates").json()["has_updates"] is True


class TestWebhookRoute:
    """Test GitHub webhook deliveries end to end."""

    def _post(self, client, payload, event="push", secret="whsec"):
        body = json.dumps(payload).encode()
        headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
        if secret:
            headers["X-Hub-Signature-256"] = compute_signature(secret, body)
        return client.post("/webhook/github", content=body, headers=headers)

    def test_push_to_tracked_branch(self, client, agent):
        response = self._post(client, {"ref": "refs/heads/main"})

        assert response.status_code == 202
        assert response.json()["message"] == "Deployment triggered"
        agent.orchestrator.request_deployment.assert_awaited_once_with("webhook")

    def test_push_to_other_branch(self, client, agent):
        response = self._post(client, {"ref": "refs/heads/feature"})

        assert response.status_code == 200
        assert response.json()["message"] == "Branch not tracked"
        agent.orchestrator.request_deployment.assert_not_awaited()

    def test_bad_signature(self, client, agent):
        response = self._post(client, {"ref": "refs/heads/main"}, secret="wrong")

        assert response.status_code == 401
        agent.orchestrator.request_deployment.assert_not_awaited()

    def test_missing_signature(self, client):
        response = self._post(client, {"ref": "refs/heads/main"}, secret=None)
        assert response.status_code == 401

    def test_ping(self, client):
        response = self._post(client, {"zen": "Keep it simple"}, event="ping")
        assert response.json() == {"message": "Pong!"}


class TestGitHubRoutes:
    def test_actions_disabled(self, client):
        assert client.get("/github/actions").json() == {"runs": [], "enabled": False}

    def test_logs_without_token(self, client):
        assert client.get("/github/actions/1/logs").status_code == 400

    def test_logs_redirect(self, client, agent):
        agent.github = Mock(enabled=True)
        agent.github.run_logs_url = AsyncMock(return_value="https://logs.example/1.zip")

        response = client.get("/github/actions/1/logs", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "https://logs.example/1.zip"

    def test_trigger_workflow_errors(self, client, agent):
        agent.github = Mock(enabled=True)
        agent.github.trigger_workflow = AsyncMock(
            side_effect=GitHubAPIError("GitHub API error: 404", status_code=404)
        )

        response = client.post(
            "/github/trigger-workflow", json={"workflow": "missing.yml"}, headers=SECRET
        )

        assert response.status_code == 404


class TestCanaryRoutes:
    """Test the canary lifecycle through the API."""

    def test_start_and_inspect(self, client):
        response = client.post("/canary/start", json=CANARY_BODY, headers=SECRET)

        assert response.status_code == 200
        rollout = response.json()["rollout"]
        assert rollout["id"] == "web-v2"
        assert rollout["status"] == "progressing"
        assert rollout["current_percent"] == 10

        listed = client.get("/canary").json()["rollouts"]
        assert [r["id"] for r in listed] == ["web-v2"]
        assert client.get("/canary/web-v2").json()["metrics"] == []
        assert client.get("/canary/web-v2/metrics").json() == {"metrics": [], "total": 0}

    def test_start_requires_secret(self, client):
        assert client.post("/canary/start", json=CANARY_BODY).status_code == 401

    def test_start_with_body_secret(self, client):
        body = dict(CANARY_BODY, secret="s3cret")
        assert client.post("/canary/start", json=body).status_code == 200

    def test_start_validation(self, client):
        body = dict(CANARY_BODY, initialPercent=80, targetPercent=50)

        response = client.post("/canary/start", json=body, headers=SECRET)

        assert response.status_code == 422

    def test_start_unknown_field(self, client):
        body = dict(CANARY_BODY, replicas=3)
        assert client.post("/canary/start", json=body, headers=SECRET).status_code == 422

    def test_duplicate_start(self, client):
        client.post("/canary/start", json=CANARY_BODY, headers=SECRET)
        response = client.post("/canary/start", json=CANARY_BODY, headers=SECRET)
        assert response.status_code == 409

    def test_start_failure(self, client, agent):
        agent.canary_containers.deploy_canary.side_effect = CanaryError("no such image")

        response = client.post("/canary/start", json=CANARY_BODY, headers=SECRET)

        assert response.status_code == 500
        assert "no such image" in response.json()["detail"]

    def test_unknown_rollout(self, client):
        assert client.get("/canary/nope").status_code == 404
        assert client.post("/canary/nope/pause", headers=SECRET).status_code == 404

    def test_control_flow(self, client):
        client.post("/canary/start", json=CANARY_BODY, headers=SECRET)

        assert client.post("/canary/web-v2/resume", headers=SECRET).status_code == 409
        paused = client.post("/canary/web-v2/pause", headers=SECRET)
        assert paused.json()["rollout"]["status"] == "paused"
        assert client.post("/canary/web-v2/progress", headers=SECRET).status_code == 409
        assert client.post("/canary/web-v2/resume", headers=SECRET).status_code == 200

        progressed = client.post("/canary/web-v2/progress", headers=SECRET)
        assert progressed.json()["rollout"]["current_percent"] == 20

    def test_rollback(self, client, agent):
        client.post("/canary/start", json=CANARY_BODY, headers=SECRET)

        response = client.post(
            "/canary/web-v2/rollback", json={"reason": "errors spiking"}, headers=SECRET
        )

        assert response.status_code == 200
        assert response.json()["rollout"]["status"] == "rolled_back"
        assert agent.canary.get("web-v2").rollback_reason == "errors spiking"
        assert agent.canary.traffic.splits["web-v2"] == 0

        # Rolling back twice is a no-op, promoting afterwards is not allowed
        assert client.post("/canary/web-v2/rollback", headers=SECRET).status_code == 200
        assert client.post("/canary/web-v2/promote", headers=SECRET).status_code == 409

    def test_promote(self, client, agent):
        client.post("/canary/start", json=CANARY_BODY, headers=SECRET)

        response = client.post("/canary/web-v2/promote", headers=SECRET)

        assert response.status_code == 200
        assert response.json()["rollout"]["status"] == "promoted"
        agent.canary_containers.promote.assert_awaited_once()


class TestEventStream:
    def test_state_then_events(self, client, agent):
        with client.websocket_connect("/ws") as websocket:
            first = websocket.receive_json()
            assert first["type"] == "state"
            assert first["data"]["config"]["branch"] == "main"

            agent.event_bus.publish("deployment", {"status": "running"})
            event = websocket.receive_json()

        assert event["type"] == "deployment"
        assert event["data"] == {"status": "running"}
