"""Tests for the Claude digest summarizer.

The Anthropic client is mocked; responses are built from SimpleNamespace
content blocks shaped like the SDK's.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import pytest

from mailflow.ai.prompts import MAX_CONTENT_CHARS, build_digest_user_message
from mailflow.ai.summarizer import ClaudeDigestSummarizer, DigestSummary, MessageToSummarize
from mailflow.config_schema import ModelsConfig
from mailflow.core.errors import SummarizationError

MESSAGE = MessageToSummarize(
    id="m1",
    from_address="Bob <bob@example.com>",
    subject="Invoice 42",
    content="Invoice 42 for $120 is due on 1 March.",
    to="jane@example.com",
)


def _tool_response(**tool_input) -> SimpleNamespace:
    return SimpleNamespace(
        content=[
            SimpleNamespace(type="text", text="Summarizing"),
            SimpleNamespace(type="tool_use", name="summarize_for_digest", input=tool_input),
        ]
    )


@pytest.fixture
def client() -> MagicMock:
    c = MagicMock()
    c.messages.create = AsyncMock()
    return c


@pytest.fixture
def summarizer(client) -> ClaudeDigestSummarizer:
    return ClaudeDigestSummarizer(client, ModelsConfig(digest_summary="claude-test", max_tokens=256))


class TestSummarize:
    async def test_returns_summary(self, summarizer, client):
        client.messages.create.return_value = _tool_response(
            worth_including=True, content="  Invoice 42 ($120) due 1 March.  "
        )

        summary = await summarizer.summarize("Receipts", MESSAGE)

        assert summary == DigestSummary(content="Invoice 42 ($120) due 1 March.")
        assert summary.to_dict() == {"content": "Invoice 42 ($120) due 1 March."}

    async def test_forces_tool_call(self, summarizer, client):
        client.messages.create.return_value = _tool_response(worth_including=True, content="x")

        await summarizer.summarize("Receipts", MESSAGE)

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["max_tokens"] == 256
        assert kwargs["tool_choice"] == {"type": "tool", "name": "summarize_for_digest"}
        user_message = kwargs["messages"][0]["content"]
        assert "Rule: Receipts" in user_message
        assert "<email_body>\nInvoice 42" in user_message

    async def test_not_worth_including(self, summarizer, client):
        client.messages.create.return_value = _tool_response(
            worth_including=False, content="Tracking pixel only"
        )
        assert await summarizer.summarize("Receipts", MESSAGE) is None

    async def test_empty_content(self, summarizer, client):
        client.messages.create.return_value = _tool_response(worth_including=True, content="  ")
        assert await summarizer.summarize("Receipts", MESSAGE) is None

    async def test_missing_tool_call(self, summarizer, client):
        client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="no tool")]
        )

        with pytest.raises(SummarizationError, match="No summarize_for_digest"):
            await summarizer.summarize("Receipts", MESSAGE)


class TestApiErrors:
    async def test_rate_limit(self, summarizer, client):
        client.messages.create.side_effect = anthropic.RateLimitError(
            message="rate limited",
            response=MagicMock(status_code=429, headers={}),
            body=None,
        )

        with pytest.raises(SummarizationError, match="Rate limited"):
            await summarizer.summarize("Receipts", MESSAGE)

    async def test_connection_error(self, summarizer, client):
        client.messages.create.side_effect = anthropic.APIConnectionError(request=MagicMock())

        with pytest.raises(SummarizationError, match="Connection error"):
            await summarizer.summarize("Receipts", MESSAGE)

    async def test_status_error(self, summarizer, client):
        client.messages.create.side_effect = anthropic.InternalServerError(
            message="overloaded",
            response=MagicMock(status_code=529, headers={}),
            body=None,
        )

        with pytest.raises(SummarizationError, match="529"):
            await summarizer.summarize("Receipts", MESSAGE)


def test_user_message_truncates_long_bodies():
    message = build_digest_user_message(
        rule_name="News",
        from_address="a@example.com",
        to="",
        subject="",
        content="x" * (MAX_CONTENT_CHARS + 100),
    )

    assert "[truncated]" in message
    assert "To: (not given)" in message
    assert "Subject: (no subject)" in message
