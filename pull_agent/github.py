"""
GitHub Actions client.

Keeps a cache of the latest workflow runs for the status page, refreshed after
each poll and on ``workflow_run`` webhooks.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from pull_agent.config.settings import GitHubConfig
from pull_agent.exceptions import GitHubAPIError

logger = logging.getLogger(__name__)

RUNS_PER_PAGE = 10


class WorkflowRun(BaseModel):
    """Subset of a GitHub workflow run shown by the agent."""

    id: int
    name: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    branch: Optional[str] = None
    commit: Optional[str] = None
    actor: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_api(cls, run: Dict[str, Any]) -> "WorkflowRun":
        return cls(
            id=run["id"],
            name=run.get("name"),
            status=run.get("status"),
            conclusion=run.get("conclusion"),
            branch=run.get("head_branch"),
            commit=run.get("head_sha"),
            actor=(run.get("actor") or {}).get("login"),
            created_at=run.get("created_at"),
            updated_at=run.get("updated_at"),
            url=run.get("html_url"),
        )


class GitHubActionsClient:
    """
    Read workflow runs and dispatch workflows for the tracked repository.

    Args:
        config: GitHub repository and token
        branch: Ref used for workflow dispatch
        client: Optional pre-built client (tests pass one with a mock transport)
    """

    def __init__(
        self, config: GitHubConfig, branch: str, client: Optional[httpx.AsyncClient] = None
    ):
        self.config = config
        self.branch = branch
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._runs: List[WorkflowRun] = []

    @property
    def enabled(self) -> bool:
        return bool(self.config.token and self.config.repo)

    @property
    def runs(self) -> List[WorkflowRun]:
        """Last successfully fetched runs."""
        return list(self._runs)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.token}",
            "Accept": "application/vnd.github.v3+json",
        }

    def _url(self, path: str) -> str:
        return f"{self.config.api_url.rstrip('/')}/repos/{self.config.repo}{path}"

    async def refresh_runs(self) -> List[WorkflowRun]:
        """
        Fetch the latest workflow runs into the cache.

        Failures are logged and the previous cache is kept.
        """
        if not self.enabled:
            return []
        try:
            response = await self._client.get(
                self._url("/actions/runs"),
                params={"per_page": RUNS_PER_PAGE},
                headers=self._headers(),
            )
            response.raise_for_status()
            data = response.json()
            self._runs = [WorkflowRun.from_api(run) for run in data.get("workflow_runs", [])]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Failed to get GitHub Actions runs: {e}")
        return self.runs

    async def run_logs_url(self, run_id: int) -> str:
        """
        Resolve the download URL for a run's logs.

        GitHub answers with a redirect to a short-lived archive URL; the
        redirect target is returned without downloading it.

        Raises:
            GitHubAPIError: If GitHub is not configured or the run is unknown
        """
        if not self.enabled:
            raise GitHubAPIError("GitHub token not configured")
        try:
            response = await self._client.get(
                self._url(f"/actions/runs/{run_id}/logs"),
                headers=self._headers(),
                follow_redirects=False,
            )
        except httpx.HTTPError as e:
            raise GitHubAPIError(f"GitHub API request failed: {e}")
        if response.is_redirect and "location" in response.headers:
            return response.headers["location"]
        if response.is_success:
            return str(response.url)
        raise GitHubAPIError(
            f"GitHub API error: {response.status_code}", status_code=response.status_code
        )

    async def trigger_workflow(
        self, workflow: str, inputs: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Dispatch a workflow on the tracked branch.

        Args:
            workflow: Workflow file name or id
            inputs: Workflow inputs

        Raises:
            GitHubAPIError: If GitHub is not configured or rejects the dispatch
        """
        if not self.enabled:
            raise GitHubAPIError("GitHub token not configured")
        try:
            response = await self._client.post(
                self._url(f"/actions/workflows/{workflow}/dispatches"),
                json={"ref": self.branch, "inputs": inputs or {}},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise GitHubAPIError(f"GitHub API request failed: {e}")
        if not response.is_success:
            raise GitHubAPIError(
                f"GitHub API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        logger.info(f"GitHub workflow {workflow} triggered on {self.branch}")

    async def close(self) -> None:
        await self._client.aclose()
