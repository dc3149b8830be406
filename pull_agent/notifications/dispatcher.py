"""
Fire-and-forget notification fan-out.

``notify`` only enqueues; a single worker task drains the queue and delivers
each event to every configured channel concurrently.
"""

import asyncio
import logging
from typing import List, Optional

import httpx

from pull_agent.config.settings import NotificationConfig
from pull_agent.models.notification import NotificationEvent, Severity
from pull_agent.notifications.channels import (
    NotificationChannel,
    SlackChannel,
    TelegramChannel,
    WebhookChannel,
)

logger = logging.getLogger(__name__)


def channels_from_config(config: NotificationConfig) -> List[NotificationChannel]:
    """Build the channel list for every configured target."""
    channels: List[NotificationChannel] = []
    if config.webhook_url:
        channels.append(WebhookChannel(config.webhook_url))
    if config.slack_webhook_url:
        channels.append(SlackChannel(config.slack_webhook_url))
    if config.telegram_bot_token and config.telegram_chat_id:
        channels.append(TelegramChannel(config.telegram_bot_token, config.telegram_chat_id))
    return channels


class NotificationDispatcher:
    """Queues NotificationEvents and delivers them in the background."""

    def __init__(
        self,
        channels: List[NotificationChannel],
        queue_size: int = 100,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.channels = channels
        self.timeout = timeout
        self._queue: "asyncio.Queue[NotificationEvent]" = asyncio.Queue(maxsize=queue_size)
        self._client = client
        self._owns_client = client is None
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    @classmethod
    def from_config(cls, config: NotificationConfig) -> "NotificationDispatcher":
        return cls(
            channels_from_config(config),
            queue_size=config.queue_size,
            timeout=config.timeout_seconds,
        )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def notify(self, event: NotificationEvent) -> bool:
        """
        Enqueue an event for delivery.

        Returns:
            False if the event was dropped because the queue is full
        """
        if not self.channels:
            logger.debug(f"No notification channels configured, skipping: {event.title}")
            return True
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Notification queue full, dropping: {event.title}")
            return False

    def send(self, title: str, body: str = "", severity: Severity = "info") -> bool:
        """Shorthand for notify(NotificationEvent(...))."""
        return self.notify(NotificationEvent(title=title, body=body, severity=severity))

    async def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        self._worker = asyncio.create_task(self._run())
        logger.info(
            f"Notification dispatcher started with channels: "
            f"{', '.join(c.name for c in self.channels) or 'none'}"
        )

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Deliver what is already queued (bounded by drain_timeout), then stop."""
        if self._worker is not None:
            if not self._worker.done():
                try:
                    await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Dropping {self._queue.qsize()} undelivered notifications on shutdown"
                    )
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.deliver(event)
            except Exception as e:
                logger.error(f"Unexpected error delivering notification: {e}")
            finally:
                self._queue.task_done()

    async def deliver(self, event: NotificationEvent) -> None:
        """Send one event to all channels; a failing channel never affects the others."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        results = await asyncio.gather(
            *(channel.send(self._client, event) for channel in self.channels),
            return_exceptions=True,
        )
        for channel, result in zip(self.channels, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to send {channel.name} notification: {result}")
