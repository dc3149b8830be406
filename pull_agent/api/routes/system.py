"""
System routes - agent health, status, history, logs and containers.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from pull_agent.logging_config import get_recent_log_buffer

from .dependencies import get_agent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(agent: Any = Depends(get_agent)) -> Dict[str, Any]:
    """Liveness of the agent itself (not of the managed application)."""
    return agent.health_info()


@router.get("/status")
async def status(agent: Any = Depends(get_agent)) -> Dict[str, Any]:
    return agent.status_info()


@router.get("/history")
async def history(
    limit: int = Query(20, ge=1, le=500),
    agent: Any = Depends(get_agent),
) -> Dict[str, Any]:
    """Deployments, most recent first."""
    deployments = agent.state.recent_history(limit)
    return {
        "deployments": [d.model_dump(mode="json") for d in deployments],
        "total": len(agent.state.history),
    }


@router.get("/logs")
async def logs(limit: int = Query(100, ge=1, le=500)) -> Dict[str, Any]:
    records = get_recent_log_buffer().recent(limit)
    return {"logs": records, "count": len(records)}


@router.get("/containers")
async def containers(agent: Any = Depends(get_agent)) -> Dict[str, Any]:
    """List containers on the host."""
    if agent.docker_client is None:
        raise HTTPException(status_code=503, detail="Docker is not available")
    try:
        items = await agent.containers.list_containers()
    except Exception as e:
        logger.error(f"Failed to list containers: {e}")
        raise HTTPException(status_code=503, detail=f"Failed to list containers: {e}")
    return {"containers": items}
