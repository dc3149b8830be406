"""
Deployment routes - manual deploy and rollback, update checks, commit history.
"""

import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from pull_agent.exceptions import CommandError, DeploymentInProgressError
from pull_agent.utils.log_sanitizer import sanitize_revision

from .dependencies import get_agent, http_error, require_deploy_secret
from .models import DeployRequest, RollbackRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["deployment"])

REVISION_RE = re.compile(r"^[0-9a-fA-F]{4,40}$")


@router.post("/deploy")
async def deploy(
    request: Optional[DeployRequest] = None,
    agent: Any = Depends(get_agent),
    _user: str = Depends(require_deploy_secret),
) -> JSONResponse:
    """
    Trigger a deployment of the tracked branch.

    Without ``force`` a running deployment makes this a 409. With ``force``
    the request is queued behind it.
    """
    request = request or DeployRequest()
    result = await agent.orchestrator.request_deployment(
        "manual", skip_rollback=request.skip_rollback, force=request.force
    )
    if not result.accepted:
        raise HTTPException(status_code=409, detail=result.message)

    body: Dict[str, Any] = {"message": result.message, "queued": result.queued}
    if result.deployment is not None:
        body["deployment_id"] = result.deployment.id
    return JSONResponse(status_code=202, content=body)


@router.post("/rollback")
async def rollback(
    request: Optional[RollbackRequest] = None,
    agent: Any = Depends(get_agent),
    _user: str = Depends(require_deploy_secret),
) -> Dict[str, Any]:
    """Roll the application back to a given commit."""
    commit = request.commit if request else None
    if not commit:
        raise HTTPException(status_code=400, detail="Commit hash required")
    if not REVISION_RE.match(commit):
        raise HTTPException(status_code=400, detail="Invalid commit hash")

    logger.info(f"Manual rollback to {sanitize_revision(commit)[:7]} requested")
    try:
        result = await agent.orchestrator.manual_rollback(commit)
    except DeploymentInProgressError as e:
        raise http_error(e)

    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or "Rollback failed")
    return {"message": "Rollback completed", "revision": result.target_revision}


@router.get("/check-updates")
async def check_updates(agent: Any = Depends(get_agent)) -> Dict[str, Any]:
    """Compare the local revision with the remote tracked branch."""
    return await agent.repository.check_for_updates()


@router.get("/commits")
async def commits(
    limit: int = Query(20, ge=1, le=100),
    agent: Any = Depends(get_agent),
) -> Dict[str, Any]:
    try:
        history = await agent.repository.commit_history(limit)
    except CommandError as e:
        logger.error(f"Failed to read commit history: {e}")
        raise HTTPException(status_code=500, detail="Failed to read commit history")
    return {
        "branch": agent.repository.branch,
        "commits": [c.model_dump() for c in history],
    }
