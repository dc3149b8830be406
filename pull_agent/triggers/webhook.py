"""
GitHub webhook verification and dispatch.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field

from pull_agent.deployment.orchestrator import DeploymentOrchestrator
from pull_agent.exceptions import WebhookAuthenticationError
from pull_agent.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


class WebhookResponse(BaseModel):
    """HTTP status and JSON body to return to GitHub."""

    status_code: int = 200
    body: Dict[str, Any] = Field(default_factory=dict)


def compute_signature(secret: str, body: bytes) -> str:
    """Return the ``sha256=<hex>`` signature GitHub sends for ``body``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(
    secret: Optional[str],
    body: bytes,
    signature: Optional[str],
    require_signature: bool = False,
) -> None:
    """
    Verify the X-Hub-Signature-256 header against the raw body.

    With no secret configured the request is accepted with a warning, unless
    ``require_signature`` is set.

    Raises:
        WebhookAuthenticationError: If the signature is missing or does not match
    """
    if not secret:
        if require_signature:
            raise WebhookAuthenticationError("Webhook secret not configured")
        logger.warning("No webhook secret configured, skipping signature verification")
        return

    if not signature:
        raise WebhookAuthenticationError("Missing signature")

    expected = compute_signature(secret, body)
    if not hmac.compare_digest(signature.encode(), expected.encode()):
        raise WebhookAuthenticationError("Invalid signature")


class WebhookHandler:
    """
    Turns verified GitHub events into deployment requests.

    Args:
        orchestrator: Deployment entry point
        branch: Tracked branch name
        secret: Shared HMAC secret
        require_signature: Reject requests when no secret is configured
        on_workflow_run: Called (in the background) to refresh cached Actions runs
    """

    def __init__(
        self,
        orchestrator: DeploymentOrchestrator,
        branch: str,
        secret: Optional[str] = None,
        require_signature: bool = False,
        on_workflow_run: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.branch = branch
        self.secret = secret
        self.require_signature = require_signature
        self.on_workflow_run = on_workflow_run
        self._background_tasks: set = set()

    async def handle(
        self, event: Optional[str], body: bytes, signature: Optional[str]
    ) -> WebhookResponse:
        """
        Verify and dispatch one webhook delivery.

        Raises:
            WebhookAuthenticationError: On signature failure; nothing else happens
        """
        logger.info(f"Received GitHub webhook: {sanitize_for_log(event)}")
        try:
            verify_signature(self.secret, body, signature, self.require_signature)
        except WebhookAuthenticationError:
            logger.warning("Invalid webhook signature")
            raise

        if event in ("push", "workflow_run"):
            try:
                payload = json.loads(body or b"{}")
            except (ValueError, UnicodeDecodeError):
                return WebhookResponse(status_code=400, body={"error": "Malformed JSON payload"})
            if not isinstance(payload, dict):
                return WebhookResponse(status_code=400, body={"error": "Malformed JSON payload"})

            if event == "push":
                return await self._handle_push(payload)
            return self._handle_workflow_run(payload)

        if event == "ping":
            logger.info("Webhook ping received")
            return WebhookResponse(body={"message": "Pong!"})

        return WebhookResponse(body={"message": "Event not handled", "event": event})

    async def _handle_push(self, payload: Dict[str, Any]) -> WebhookResponse:
        ref = payload.get("ref") or ""
        branch = ref[len("refs/heads/") :] if ref.startswith("refs/heads/") else ref

        if branch != self.branch:
            logger.info(
                f"Push to non-tracked branch {sanitize_for_log(branch)} (tracking {self.branch})"
            )
            return WebhookResponse(body={"message": "Branch not tracked", "branch": branch})

        logger.info(f"Push to tracked branch {branch} detected")
        result = await self.orchestrator.request_deployment("webhook")
        if not result.accepted:
            return WebhookResponse(
                status_code=202,
                body={"message": "Deployment already in progress", "branch": branch},
            )
        return WebhookResponse(
            status_code=202,
            body={
                "message": "Deployment triggered",
                "branch": branch,
                "deployment_id": result.deployment.id if result.deployment else None,
            },
        )

    def _handle_workflow_run(self, payload: Dict[str, Any]) -> WebhookResponse:
        run = payload.get("workflow_run") or {}
        logger.info(
            f"Workflow run event: action={sanitize_for_log(payload.get('action'))} "
            f"name={sanitize_for_log(run.get('name'))} "
            f"conclusion={sanitize_for_log(run.get('conclusion'))}"
        )
        if self.on_workflow_run is not None:
            task = asyncio.create_task(self._refresh_actions())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)
        return WebhookResponse(body={"message": "Workflow event received"})

    async def _refresh_actions(self) -> None:
        try:
            await self.on_workflow_run()  # type: ignore[misc]
        except Exception as e:
            logger.warning(f"Failed to refresh GitHub Actions runs: {e}")
