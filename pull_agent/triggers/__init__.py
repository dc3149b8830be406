"""
Deployment triggers: GitHub webhooks and revision polling.
"""

from pull_agent.triggers.poller import RevisionPoller
from pull_agent.triggers.webhook import (
    WebhookHandler,
    WebhookResponse,
    compute_signature,
    verify_signature,
)

__all__ = [
    "RevisionPoller",
    "WebhookHandler",
    "WebhookResponse",
    "compute_signature",
    "verify_signature",
]
