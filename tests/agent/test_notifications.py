"""
Tests for notification channels and the dispatcher.
"""

import httpx
import pytest

from pull_agent.config.settings import NotificationConfig
from pull_agent.models.notification import NotificationEvent
from pull_agent.notifications import NotificationDispatcher
from pull_agent.notifications.channels import SlackChannel, TelegramChannel, WebhookChannel
from pull_agent.notifications.dispatcher import channels_from_config


@pytest.fixture
def event():
    return NotificationEvent(
        title="Deployment Failed",
        body="health phase failed",
        severity="error",
        timestamp="2024-01-01T12:00:00+00:00",
    )


class TestChannels:
    """Test per-channel payloads."""

    def test_webhook_payload(self, event):
        payload = WebhookChannel("http://hooks.local/x").build_payload(event)
        assert payload == {
            "title": "Deployment Failed",
            "message": "health phase failed",
            "status": "error",
            "timestamp": "2024-01-01T12:00:00+00:00",
        }

    def test_slack_colors(self, event):
        channel = SlackChannel("http://slack.local/x")

        attachment = channel.build_payload(event)["attachments"][0]
        assert attachment["color"] == "danger"
        assert attachment["title"] == "Deployment Failed"
        assert attachment["footer"] == "Pull Agent"

        ok = event.model_copy(update={"severity": "success"})
        assert channel.build_payload(ok)["attachments"][0]["color"] == "good"
        info = event.model_copy(update={"severity": "info"})
        assert channel.build_payload(info)["attachments"][0]["color"] == "warning"

    def test_telegram_payload(self, event):
        channel = TelegramChannel("123:abc", "-100")

        payload = channel.build_payload(event)

        assert channel.url == "https://api.telegram.org/bot123:abc/sendMessage"
        assert payload["chat_id"] == "-100"
        assert payload["parse_mode"] == "Markdown"
        assert payload["text"] == "❌ *Deployment Failed*\n\nhealth phase failed"

    def test_channels_from_config(self):
        config = NotificationConfig(
            webhook_url="http://hooks.local/x",
            slack_webhook_url="http://slack.local/x",
            telegram_bot_token="123:abc",
        )

        channels = channels_from_config(config)

        # Telegram needs both token and chat id
        assert [c.name for c in channels] == ["webhook", "slack"]


class TestNotificationDispatcher:
    """Test queueing and fan-out."""

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_others(self, event):
        requests = []

        def handler(request):
            requests.append(str(request.url))
            if "fail" in str(request.url):
                return httpx.Response(500)
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = NotificationDispatcher(
            [WebhookChannel("http://hooks.local/fail"), SlackChannel("http://slack.local/ok")],
            client=client,
        )

        await dispatcher.deliver(event)
        await client.aclose()

        assert sorted(requests) == ["http://hooks.local/fail", "http://slack.local/ok"]

    @pytest.mark.asyncio
    async def test_transport_error_is_contained(self, event):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = NotificationDispatcher([WebhookChannel("http://hooks.local/x")], client=client)

        await dispatcher.deliver(event)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_worker_delivers_queued_events(self):
        titles = []

        def handler(request):
            titles.append(request.read().decode())
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = NotificationDispatcher([WebhookChannel("http://hooks.local/x")], client=client)

        await dispatcher.start()
        assert dispatcher.send("Deployment Started", "abc1234")
        assert dispatcher.send("Deployment Successful", "abc1234", severity="success")
        await dispatcher.stop()
        await client.aclose()

        assert len(titles) == 2
        assert "Deployment Started" in titles[0]
        assert "Deployment Successful" in titles[1]

    def test_full_queue_drops(self):
        dispatcher = NotificationDispatcher([WebhookChannel("http://hooks.local/x")], queue_size=2)

        results = [dispatcher.send(f"event {i}") for i in range(4)]

        assert results == [True, True, False, False]
        assert dispatcher.dropped == 2
        assert dispatcher.pending == 2

    def test_no_channels(self):
        dispatcher = NotificationDispatcher([])
        assert dispatcher.send("anything")
        assert dispatcher.pending == 0
