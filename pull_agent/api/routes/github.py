"""
GitHub Actions routes - workflow runs, run logs and workflow dispatch.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse

from pull_agent.exceptions import GitHubAPIError

from .dependencies import get_agent, http_error, require_deploy_secret
from .models import WorkflowTriggerRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/github", tags=["github"])


def _require_github(agent: Any) -> None:
    if not agent.github.enabled:
        raise HTTPException(status_code=400, detail="GitHub token not configured")


@router.get("/actions")
async def list_runs(agent: Any = Depends(get_agent)) -> Dict[str, Any]:
    """Recent workflow runs (refreshed on every call)."""
    if not agent.github.enabled:
        return {"runs": [], "enabled": False}
    runs = await agent.github.refresh_runs()
    return {"runs": [run.model_dump() for run in runs], "enabled": True}


@router.get("/actions/{run_id}/logs")
async def run_logs(run_id: int, agent: Any = Depends(get_agent)) -> RedirectResponse:
    _require_github(agent)
    try:
        url = await agent.github.run_logs_url(run_id)
    except GitHubAPIError as e:
        raise http_error(e)
    return RedirectResponse(url=url, status_code=302)


@router.post("/trigger-workflow")
async def trigger_workflow(
    request: WorkflowTriggerRequest,
    agent: Any = Depends(get_agent),
    _user: str = Depends(require_deploy_secret),
) -> Dict[str, Any]:
    """Dispatch a workflow on the tracked branch."""
    _require_github(agent)
    try:
        await agent.github.trigger_workflow(request.workflow, request.inputs)
    except GitHubAPIError as e:
        logger.error(f"Failed to trigger workflow: {e}")
        raise http_error(e)
    return {"message": "Workflow triggered", "workflow": request.workflow}
