"""
Unit Tests for SlackNotifier

Tests:
- Message formatting
- Webhook selection
- Delivery success and failure
"""

import json

import httpx
import pytest

from support_engine.models.escalation import EscalationPriority, NotificationField, NotificationPayload
from support_engine.tools.notifier import SlackNotifier


@pytest.fixture
def payload():
    return NotificationPayload(
        text="🚨 緊急エスカレーション\n新規エスカレーション - 技術サポート",
        channel="#tech-support",
        priority_tag=EscalationPriority.URGENT,
        fields=[NotificationField(title="システム", value="API")],
        conversation_link="https://support.example.com/conversations/conv-1",
        escalation_id="ESC-20240501-0A1B2C3D",
        mentions=["@oncall"],
    )


def make_notifier(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SlackNotifier(http_client=client, **kwargs)


# ============================================================================
# Formatting Tests
# ============================================================================

class TestFormatMessage:
    """Tests for Slack message formatting."""

    def test_urgent_message(self, payload):
        message = SlackNotifier.format_message("#tech-support", payload)

        assert message["channel"] == "#tech-support"
        assert message["text"].startswith("@oncall 🚨 緊急エスカレーション")
        attachment = message["attachments"][0]
        assert attachment["color"] == "danger"
        assert attachment["title"] == "エスカレーション ESC-20240501-0A1B2C3D"
        assert attachment["fields"] == [{"title": "システム", "value": "API", "short": True}]
        assert attachment["actions"][0]["url"] == "https://support.example.com/conversations/conv-1"

    def test_normal_priority_color(self, payload):
        normal = payload.model_copy(update={"priority_tag": EscalationPriority.NORMAL, "mentions": []})
        message = SlackNotifier.format_message("#general-support", normal)

        assert message["attachments"][0]["color"] == "good"
        assert message["text"] == normal.text


# ============================================================================
# Delivery Tests
# ============================================================================

class TestSend:
    """Tests for webhook delivery."""

    @pytest.mark.asyncio
    async def test_posts_to_default_webhook(self, payload):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="ok")

        notifier = make_notifier(handler, webhook_url="https://hooks.slack.test/default")

        assert await notifier.send("#tech-support", payload) is True
        assert str(requests[0].url) == "https://hooks.slack.test/default"
        assert json.loads(requests[0].content)["channel"] == "#tech-support"
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_channel_specific_webhook(self, payload):
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(200)

        notifier = make_notifier(
            handler,
            webhook_url="https://hooks.slack.test/default",
            webhooks={"#urgent-support": "https://hooks.slack.test/urgent"},
        )
        await notifier.send("#urgent-support", payload)
        await notifier.send("#tech-support", payload)

        assert urls == ["https://hooks.slack.test/urgent", "https://hooks.slack.test/default"]
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_http_error_returns_false(self, payload):
        notifier = make_notifier(lambda request: httpx.Response(500), webhook_url="https://hooks.slack.test/x")

        assert await notifier.send("#tech-support", payload) is False
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_missing_webhook_returns_false(self, payload, escalation_settings):
        def handler(request):
            raise AssertionError("no request expected")

        notifier = make_notifier(handler, settings=escalation_settings)

        assert await notifier.send("#tech-support", payload) is False
        await notifier.aclose()
