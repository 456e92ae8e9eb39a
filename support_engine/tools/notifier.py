"""Slack incoming-webhook notifier"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from support_engine.config.settings import EscalationConfig, config
from support_engine.contracts.collaborators import Notifier
from support_engine.models.escalation import EscalationPriority, NotificationPayload

logger = logging.getLogger(__name__)

PRIORITY_COLORS = {
    EscalationPriority.URGENT: "danger",
    EscalationPriority.HIGH: "danger",
    EscalationPriority.MEDIUM: "warning",
    EscalationPriority.NORMAL: "good",
}


class SlackNotifier(Notifier):
    """Posts escalation notices to Slack.

    Uses one webhook per channel when ``webhooks`` maps it, otherwise the
    default webhook with a channel override.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        webhooks: Optional[Dict[str, str]] = None,
        settings: Optional[EscalationConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        settings = settings or config.escalation
        self.webhook_url = webhook_url or settings.slack_webhook_url
        self.webhooks = webhooks or {}
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    def webhook_for(self, channel: str) -> Optional[str]:
        return self.webhooks.get(channel, self.webhook_url)

    @staticmethod
    def format_message(channel: str, payload: NotificationPayload) -> Dict[str, Any]:
        """Slack attachment message for a payload"""
        text = payload.text
        if payload.mentions:
            text = f"{' '.join(payload.mentions)} {text}"
        return {
            "channel": channel,
            "text": text,
            "attachments": [
                {
                    "color": PRIORITY_COLORS.get(payload.priority_tag, "warning"),
                    "title": f"エスカレーション {payload.escalation_id}",
                    "fields": [f.model_dump() for f in payload.fields],
                    "footer": f"priority: {payload.priority_tag.value}",
                    "ts": int(datetime.now(timezone.utc).timestamp()),
                    "actions": [
                        {"type": "button", "text": "会話履歴を確認", "url": payload.conversation_link}
                    ],
                }
            ],
        }

    async def send(self, channel: str, payload: NotificationPayload) -> bool:
        url = self.webhook_for(channel)
        if not url:
            logger.warning(f"No Slack webhook configured for {channel}")
            return False

        try:
            response = await self.client.post(url, json=self.format_message(channel, payload))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Slack notification to {channel} failed: {e}")
            return False

        logger.info(f"Slack notification sent to {channel} for {payload.escalation_id}")
        return True

    async def aclose(self) -> None:
        await self.client.aclose()
