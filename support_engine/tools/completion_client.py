"""
Completion Client - HTTP text completion collaborator

Strictly optional: every heuristic path in the engine works without it.
Connection failures and timeouts are retried a few times; anything else,
including a malformed response body, surfaces as ExternalServiceError for
the caller's fallback.
"""

import logging
from typing import Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from support_engine.config.settings import CompletionConfig, config
from support_engine.contracts.collaborators import CompletionClient
from support_engine.models.conversation import ConversationTurn
from support_engine.utils.error_handling import ExternalServiceError

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
API_VERSION = "2023-06-01"


def build_messages(history: list[ConversationTurn], user_message: str) -> list[dict]:
    """Chat messages from the most recent turns plus the new user message."""
    messages = []
    for turn in history[-HISTORY_LIMIT:]:
        if not turn.content.strip():
            continue
        role = "user" if turn.is_user else "assistant"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n" + turn.content
        else:
            messages.append({"role": role, "content": turn.content})
    if messages and messages[-1]["role"] == "user":
        messages[-1]["content"] += "\n" + user_message
    else:
        messages.append({"role": "user", "content": user_message})
    return messages


class HttpCompletionClient(CompletionClient):
    """Messages-API completion over httpx."""

    def __init__(
        self,
        settings: Optional[CompletionConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        temperature: float = 0.7,
    ):
        self.settings = settings or config.completion
        self.temperature = temperature
        self.client = http_client or httpx.AsyncClient(timeout=self.settings.timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.settings.api_key)

    async def complete(
        self,
        system_prompt: str,
        history: list[ConversationTurn],
        user_message: str,
    ) -> str:
        if not self.configured:
            raise ExternalServiceError("Completion API key is not configured")

        body = {
            "model": self.settings.model,
            "max_tokens": self.settings.max_tokens,
            "temperature": self.temperature,
            "system": system_prompt,
            "messages": build_messages(history, user_message),
        }
        try:
            data = await self._post(body)
        except httpx.HTTPError as e:
            logger.error(f"[COMPLETION] Request failed: {e}")
            raise ExternalServiceError(f"Completion request failed: {e}") from e
        except ValueError as e:
            logger.error(f"[COMPLETION] Response body is not JSON: {e}")
            raise ExternalServiceError(f"Completion response is not JSON: {e}") from e

        try:
            text = "\n".join(
                block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
            ).strip()
        except (AttributeError, TypeError) as e:
            logger.error(f"[COMPLETION] Unexpected response shape: {e}")
            raise ExternalServiceError(f"Unexpected completion response shape: {e}") from e
        if not text:
            raise ExternalServiceError("Completion response contained no text")
        return text

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _post(self, body: dict) -> dict:
        response = await self.client.post(
            self.settings.api_url,
            json=body,
            headers={
                "x-api-key": self.settings.api_key or "",
                "anthropic-version": API_VERSION,
                "content-type": "application/json",
            },
        )
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self.client.aclose()
