"""
Outbound notifications (generic webhook, Slack, Telegram).
"""

from pull_agent.notifications.channels import (
    NotificationChannel,
    SlackChannel,
    TelegramChannel,
    WebhookChannel,
)
from pull_agent.notifications.dispatcher import NotificationDispatcher, channels_from_config

__all__ = [
    "NotificationChannel",
    "NotificationDispatcher",
    "SlackChannel",
    "TelegramChannel",
    "WebhookChannel",
    "channels_from_config",
]
