"""
Canary routes - start, control and inspect progressive rollouts.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import ValidationError

from pull_agent.exceptions import CanaryError
from pull_agent.models.canary import CanaryConfig
from pull_agent.utils.log_sanitizer import sanitize_identifier

from .dependencies import get_agent, http_error, require_deploy_secret
from .models import CanaryRollbackRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/canary", tags=["canary"])

DETAIL_SAMPLES = 20


def _rollout_detail(rollout: Any) -> Dict[str, Any]:
    data = rollout.model_dump(mode="json", exclude={"metrics"})
    data["metrics"] = [s.model_dump(mode="json") for s in rollout.metrics[-DETAIL_SAMPLES:]]
    return data


@router.post("/start")
async def start_canary(
    payload: Dict[str, Any] = Body(...),
    agent: Any = Depends(get_agent),
    user: str = Depends(require_deploy_secret),
) -> Dict[str, Any]:
    """
    Start a canary rollout.

    The body is a CanaryConfig (snake_case or camelCase keys) plus an
    optional ``secret``.
    """
    payload.pop("secret", None)
    try:
        config = CanaryConfig.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json(include_url=False)))

    try:
        rollout = await agent.canary.start(config, user=user)
    except CanaryError as e:
        raise http_error(e)

    if rollout.status == "failed":
        raise HTTPException(status_code=500, detail=rollout.error or "Canary start failed")
    return {"message": "Canary deployment started", "rollout": _rollout_detail(rollout)}


@router.get("")
async def list_canaries(agent: Any = Depends(get_agent)) -> Dict[str, Any]:
    return {"rollouts": [r.summary() for r in agent.canary.list()]}


@router.get("/{rollout_id}")
async def get_canary(rollout_id: str, agent: Any = Depends(get_agent)) -> Dict[str, Any]:
    """Rollout state with its most recent metric samples."""
    try:
        rollout = agent.canary.get(rollout_id)
    except CanaryError as e:
        raise http_error(e)
    return _rollout_detail(rollout)


@router.get("/{rollout_id}/metrics")
async def get_canary_metrics(
    rollout_id: str,
    limit: int = Query(50, ge=1, le=1000),
    agent: Any = Depends(get_agent),
) -> Dict[str, Any]:
    try:
        rollout = agent.canary.get(rollout_id)
    except CanaryError as e:
        raise http_error(e)
    samples = rollout.metrics[-limit:]
    return {
        "metrics": [s.model_dump(mode="json") for s in samples],
        "total": len(rollout.metrics),
    }


async def _control(agent: Any, action: str, rollout_id: str, user: str) -> Dict[str, Any]:
    logger.info(f"Canary {action} requested for {sanitize_identifier(rollout_id)}")
    try:
        rollout = await getattr(agent.canary, action)(rollout_id, user=user)
    except CanaryError as e:
        raise http_error(e)
    return {"message": f"Canary {action} applied", "rollout": rollout.summary()}


@router.post("/{rollout_id}/progress")
async def progress_canary(
    rollout_id: str,
    agent: Any = Depends(get_agent),
    user: str = Depends(require_deploy_secret),
) -> Dict[str, Any]:
    return await _control(agent, "progress", rollout_id, user)


@router.post("/{rollout_id}/pause")
async def pause_canary(
    rollout_id: str,
    agent: Any = Depends(get_agent),
    user: str = Depends(require_deploy_secret),
) -> Dict[str, Any]:
    return await _control(agent, "pause", rollout_id, user)


@router.post("/{rollout_id}/resume")
async def resume_canary(
    rollout_id: str,
    agent: Any = Depends(get_agent),
    user: str = Depends(require_deploy_secret),
) -> Dict[str, Any]:
    return await _control(agent, "resume", rollout_id, user)


@router.post("/{rollout_id}/promote")
async def promote_canary(
    rollout_id: str,
    agent: Any = Depends(get_agent),
    user: str = Depends(require_deploy_secret),
) -> Dict[str, Any]:
    """Replace the stable container with the canary image."""
    try:
        rollout = await agent.canary.promote(rollout_id, user=user)
    except CanaryError as e:
        raise http_error(e)
    if rollout.status == "failed":
        raise HTTPException(status_code=500, detail=rollout.error or "Promotion failed")
    return {"message": "Canary promoted", "rollout": rollout.summary()}


@router.post("/{rollout_id}/rollback")
async def rollback_canary(
    rollout_id: str,
    request: Optional[CanaryRollbackRequest] = None,
    agent: Any = Depends(get_agent),
    user: str = Depends(require_deploy_secret),
) -> Dict[str, Any]:
    """Send all traffic back to stable and remove the canary."""
    reason = (request.reason if request else None) or "Manual rollback"
    try:
        rollout = await agent.canary.rollback(rollout_id, reason=reason, user=user)
    except CanaryError as e:
        raise http_error(e)
    if rollout.status == "failed":
        raise HTTPException(status_code=500, detail=rollout.error or "Rollback failed")
    return {"message": "Canary rolled back", "rollout": rollout.summary()}
