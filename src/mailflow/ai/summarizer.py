"""Digest summarizer backed by Claude.

Calls Claude with forced tool_choice so the response is always a structured
summarize_for_digest tool call. The anthropic SDK handles transient retries
(429, 5xx, connection errors); anything left after that surfaces as
SummarizationError so the digest job is retried by the queue.

Usage:
    summarizer = ClaudeDigestSummarizer(anthropic.AsyncAnthropic(), config.models)
    summary = await summarizer.summarize("Newsletters", message)
    if summary is None:
        ...  # not worth surfacing
"""

import time
from dataclasses import dataclass
from typing import Any, Protocol

import anthropic

from mailflow.ai.prompts import (
    DIGEST_SUMMARY_SYSTEM_PROMPT,
    SUMMARIZE_FOR_DIGEST_TOOL,
    build_digest_user_message,
)
from mailflow.config_schema import ModelsConfig
from mailflow.core.errors import SummarizationError
from mailflow.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MessageToSummarize:
    id: str
    from_address: str
    subject: str
    content: str
    to: str = ""


@dataclass(frozen=True)
class DigestSummary:
    """Stored form is {"content": ...}."""

    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content}


class Summarizer(Protocol):
    async def summarize(
        self, rule_name: str, message: MessageToSummarize
    ) -> DigestSummary | None:
        """Summarize a message, or return None when it is not worth surfacing."""
        ...


class ClaudeDigestSummarizer:
    """Summarizer using the Anthropic Messages API."""

    def __init__(self, client: anthropic.AsyncAnthropic, config: ModelsConfig):
        self._client = client
        self._model = config.digest_summary
        self._max_tokens = config.max_tokens

    async def summarize(
        self, rule_name: str, message: MessageToSummarize
    ) -> DigestSummary | None:
        """Summarize one email for the digest.

        Raises:
            SummarizationError: If the API fails after SDK retries or returns no tool call
        """
        user_message = build_digest_user_message(
            rule_name=rule_name,
            from_address=message.from_address,
            to=message.to,
            subject=message.subject,
            content=message.content,
        )

        start_time = time.monotonic()
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=DIGEST_SUMMARY_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": user_message}],
                tools=[SUMMARIZE_FOR_DIGEST_TOOL],
                tool_choice={"type": "tool", "name": SUMMARIZE_FOR_DIGEST_TOOL["name"]},
            )
        except anthropic.RateLimitError as e:
            logger.error("digest_summary_rate_limited", message_id=message.id, error=str(e))
            raise SummarizationError(f"Rate limited summarizing {message.id}: {e}") from e
        except anthropic.APIConnectionError as e:
            logger.error("digest_summary_connection_error", message_id=message.id, error=str(e))
            raise SummarizationError(f"Connection error summarizing {message.id}: {e}") from e
        except anthropic.APIStatusError as e:
            logger.error(
                "digest_summary_api_error",
                message_id=message.id,
                status_code=e.status_code,
                error=str(e),
            )
            raise SummarizationError(
                f"API status error {e.status_code} summarizing {message.id}: {e.message}"
            ) from e

        tool_call = _extract_tool_call(response)
        if tool_call is None:
            raise SummarizationError(
                f"No summarize_for_digest tool call in response for {message.id}"
            )

        logger.debug(
            "digest_summary_complete",
            message_id=message.id,
            duration_ms=int((time.monotonic() - start_time) * 1000),
            worth_including=tool_call.get("worth_including"),
        )

        content = (tool_call.get("content") or "").strip()
        if not tool_call.get("worth_including", True) or not content:
            return None
        return DigestSummary(content=content)


def _extract_tool_call(response: Any) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == SUMMARIZE_FOR_DIGEST_TOOL["name"]:
            return block.input
    return None
