"""
Notification channels.

Each channel turns a NotificationEvent into one HTTP request. Channels raise
on delivery failure; isolation between channels is the dispatcher's job.
"""

import logging
import time
from typing import Any, Dict

import httpx

from pull_agent.models.notification import NotificationEvent

logger = logging.getLogger(__name__)

SLACK_COLORS = {
    "success": "good",
    "error": "danger",
    "critical": "danger",
}

TELEGRAM_EMOJI = {
    "success": "✅",
    "error": "❌",
    "critical": "🚨",
    "warning": "⚠️",
}


class NotificationChannel:
    """Base class for a delivery target."""

    name = "channel"

    def build_payload(self, event: NotificationEvent) -> Dict[str, Any]:
        raise NotImplementedError

    @property
    def url(self) -> str:
        raise NotImplementedError

    async def send(self, client: httpx.AsyncClient, event: NotificationEvent) -> None:
        """
        Deliver ``event``.

        Raises:
            httpx.HTTPError: On transport failure or a non-2xx response
        """
        response = await client.post(self.url, json=self.build_payload(event))
        response.raise_for_status()


class WebhookChannel(NotificationChannel):
    """Generic JSON webhook."""

    name = "webhook"

    def __init__(self, url: str):
        self._url = url

    @property
    def url(self) -> str:
        return self._url

    def build_payload(self, event: NotificationEvent) -> Dict[str, Any]:
        return {
            "title": event.title,
            "message": event.body,
            "status": event.severity,
            "timestamp": event.timestamp,
        }


class SlackChannel(NotificationChannel):
    """Slack incoming webhook using a single colored attachment."""

    name = "slack"

    def __init__(self, webhook_url: str):
        self._url = webhook_url

    @property
    def url(self) -> str:
        return self._url

    def build_payload(self, event: NotificationEvent) -> Dict[str, Any]:
        return {
            "attachments": [
                {
                    "color": SLACK_COLORS.get(event.severity, "warning"),
                    "title": event.title,
                    "text": event.body,
                    "footer": "Pull Agent",
                    "ts": int(time.time()),
                }
            ]
        }


class TelegramChannel(NotificationChannel):
    """Telegram bot ``sendMessage`` with Markdown formatting."""

    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str, api_url: str = "https://api.telegram.org"):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_url = api_url.rstrip("/")

    @property
    def url(self) -> str:
        return f"{self.api_url}/bot{self.bot_token}/sendMessage"

    def build_payload(self, event: NotificationEvent) -> Dict[str, Any]:
        emoji = TELEGRAM_EMOJI.get(event.severity, "ℹ️")
        return {
            "chat_id": self.chat_id,
            "text": f"{emoji} *{event.title}*\n\n{event.body}",
            "parse_mode": "Markdown",
        }
