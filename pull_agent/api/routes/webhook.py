"""
GitHub webhook receiver.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from pull_agent.exceptions import WebhookAuthenticationError

from .dependencies import get_agent, http_error

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


@router.post("/webhook/github")
async def github_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(None),
    x_hub_signature_256: Optional[str] = Header(None),
    agent: Any = Depends(get_agent),
) -> JSONResponse:
    """
    Receive a GitHub webhook delivery.

    The signature is checked against the raw body, so the body is read here
    rather than parsed by FastAPI.
    """
    body = await request.body()
    try:
        response = await agent.webhook.handle(x_github_event, body, x_hub_signature_256)
    except WebhookAuthenticationError as e:
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected webhook from {client}: {e.message}")
        raise http_error(e)
    return JSONResponse(status_code=response.status_code, content=response.body)
