"""
Ephemeral event models: outbound notifications and event-bus messages.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal

from pydantic import BaseModel, Field

Severity = Literal["info", "success", "warning", "error", "critical"]
AgentEventType = Literal["state", "log", "output", "deployment", "canary"]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class NotificationEvent(BaseModel):
    """A human-facing message fanned out to notification channels."""

    title: str = Field(..., description="Short headline")
    body: str = Field(default="", description="Message body")
    severity: Severity = Field(default="info")
    timestamp: str = Field(default_factory=_utc_now)


class AgentEvent(BaseModel):
    """A message published on the event bus for live observers."""

    type: AgentEventType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=_utc_now)
