"""
Shared dependencies for route modules.

- Agent instance access
- Deploy secret verification for mutating endpoints
- Translation of domain errors into HTTP errors
"""

import hmac
import json
import logging
from typing import Any, Optional

from fastapi import Header, HTTPException, Request

from pull_agent.exceptions import (
    CanaryAlreadyExistsError,
    CanaryError,
    CanaryNotFoundError,
    DeploymentInProgressError,
    GitHubAPIError,
    InvalidCanaryTransitionError,
    PullAgentError,
    WebhookAuthenticationError,
)

logger = logging.getLogger(__name__)

DEPLOY_SECRET_HEADER = "X-Deploy-Secret"


def get_agent(request: Request) -> Any:
    """
    Get the agent instance from app state.

    Raises:
        HTTPException: If the agent is not available
    """
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(status_code=500, detail="Agent not initialized")
    return agent


async def _body_secret(request: Request) -> Optional[str]:
    body = await request.body()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("secret"), str):
        return payload["secret"]
    return None


async def require_deploy_secret(
    request: Request,
    x_deploy_secret: Optional[str] = Header(None),
) -> str:
    """
    Verify the deploy secret for mutating endpoints.

    The secret is read from the ``X-Deploy-Secret`` header, falling back to a
    ``secret`` field in the JSON body. With no deploy secret configured the
    endpoints are open.

    Returns:
        Identity recorded in the audit log

    Raises:
        HTTPException: 401 if the secret is missing or wrong
    """
    agent = get_agent(request)
    expected = agent.config.security.deploy_secret
    if not expected:
        return "api"

    provided = x_deploy_secret or await _body_secret(request)
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected {request.method} {request.url.path} from {client}: bad secret")
        raise HTTPException(status_code=401, detail="Invalid deploy secret")
    return "api"


def http_error(error: PullAgentError) -> HTTPException:
    """Map a domain error to the HTTP error returned to the caller."""
    if isinstance(error, WebhookAuthenticationError):
        return HTTPException(status_code=401, detail=error.message)
    if isinstance(error, CanaryNotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(
        error,
        (CanaryAlreadyExistsError, InvalidCanaryTransitionError, DeploymentInProgressError),
    ):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, GitHubAPIError):
        if error.status_code == 404:
            return HTTPException(status_code=404, detail=error.message)
        return HTTPException(status_code=502, detail=error.message)
    if isinstance(error, CanaryError):
        return HTTPException(status_code=500, detail=error.message)
    return HTTPException(status_code=400, detail=error.message)
