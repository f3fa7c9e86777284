"""Tests for the Microsoft Graph client and mail provider.

The requests session is mocked; no network calls are made.
"""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from mailflow.config_schema import ProviderConfig
from mailflow.core.errors import (
    AuthenticationError,
    MessageNotFoundError,
    ProviderError,
    RateLimitExceeded,
)
from mailflow.core.rate_limiter import TokenBucket
from mailflow.db.store import Account
from mailflow.providers.base import EmailMessage, MessageFilter
from mailflow.providers.graph import (
    GraphClient,
    GraphMailProvider,
    GraphProviderFactory,
    build_message_filter_query,
    parse_graph_message,
)

ACCOUNT = Account(id="acct-1", email="jane@example.com", provider="outlook", access_token="tok")

GRAPH_MESSAGE = {
    "id": "AAMk-1",
    "conversationId": "conv-1",
    "subject": "Quarterly report",
    "from": {"emailAddress": {"name": "Bob Smith", "address": "bob@example.com"}},
    "toRecipients": [
        {"emailAddress": {"address": "jane@example.com"}},
        {"emailAddress": {"address": "team@example.com"}},
    ],
    "receivedDateTime": "2026-02-03T10:15:00Z",
    "bodyPreview": "Numbers attached",
    "body": {"contentType": "text", "content": "Full numbers attached"},
    "isRead": False,
    "categories": ["Finance"],
}


def _response(status: int, body: dict[str, Any] | None = None, headers=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.content = b"{}" if body is not None else b""
    response.json.return_value = body or {}
    response.text = ""
    return response


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session) -> GraphClient:
    return GraphClient(
        access_token="tok",
        rate_bucket=TokenBucket(rate=1000.0, capacity=100),
        base_url="https://graph.test/v1.0/",
        max_retries=2,
        retry_delays=[0.5, 1.0],
        session=session,
    )


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("mailflow.providers.graph.time.sleep") as sleep:
        yield sleep


# ---------------------------------------------------------------------------
# GraphClient
# ---------------------------------------------------------------------------


class TestGraphClient:
    def test_request_sends_auth_and_immutable_ids(self, client, session):
        session.request.return_value = _response(200, {"value": []})

        assert client.get("me/messages", params={"$top": 5}) == {"value": []}

        kwargs = session.request.call_args.kwargs
        assert kwargs["url"] == "https://graph.test/v1.0/me/messages"
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["headers"]["Prefer"] == 'IdType="ImmutableId"'
        assert kwargs["params"] == {"$top": 5}

    def test_full_url_used_as_is(self, client, session):
        session.request.return_value = _response(200, {})
        client.get("https://graph.test/v1.0/me/messages?$skiptoken=x")
        assert session.request.call_args.kwargs["url"].endswith("$skiptoken=x")

    def test_no_content(self, client, session):
        session.request.return_value = _response(202)
        assert client.post("/me/sendMail", json={}) == {}

    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (401, AuthenticationError),
            (404, MessageNotFoundError),
            (400, ProviderError),
        ],
    )
    def test_error_mapping(self, client, session, status, error):
        session.request.return_value = _response(status, {"error": {"code": "X", "message": "m"}})

        with pytest.raises(error):
            client.get("/me/messages/1")

        assert session.request.call_count == 1

    def test_server_errors_retried(self, client, session, no_sleep):
        session.request.side_effect = [_response(503, {}), _response(200, {"id": "1"})]

        assert client.get("/me/messages/1") == {"id": "1"}
        assert no_sleep.call_count == 1

    def test_retries_exhausted(self, client, session):
        session.request.return_value = _response(500, {"error": {"message": "down"}})

        with pytest.raises(ProviderError) as exc_info:
            client.get("/me/messages/1")

        assert exc_info.value.status_code == 500
        assert session.request.call_count == 3

    def test_throttling_honours_retry_after(self, client, session, no_sleep):
        session.request.return_value = _response(429, {}, headers={"Retry-After": "10"})

        with pytest.raises(RateLimitExceeded) as exc_info:
            client.get("/me/messages")

        assert exc_info.value.retry_after == 10.0
        delays = [call.args[0] for call in no_sleep.call_args_list]
        assert all(8.0 <= d <= 12.0 for d in delays)

    def test_network_error_becomes_provider_error(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError("reset")

        with pytest.raises(ProviderError):
            client.get("/me/messages")

        assert session.request.call_count == 3

    def test_batch_chunks_by_twenty(self, client, session):
        session.request.return_value = _response(200, {"responses": [{"id": "0", "status": 200}]})
        operations = [{"id": str(i), "method": "GET", "url": f"/me/messages/{i}"} for i in range(25)]

        responses = client.batch_request(operations)

        assert session.request.call_count == 2
        first_chunk = session.request.call_args_list[0].kwargs["json"]["requests"]
        assert len(first_chunk) == 20
        assert len(responses) == 2


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def test_parse_graph_message():
    message = parse_graph_message(GRAPH_MESSAGE)

    assert message.id == "AAMk-1"
    assert message.thread_id == "conv-1"
    assert message.from_address == "Bob Smith <bob@example.com>"
    assert message.to == "jane@example.com, team@example.com"
    assert message.content == "Full numbers attached"
    assert message.received_at == datetime(2026, 2, 3, 10, 15, tzinfo=UTC)
    assert message.labels == ["Finance"]


def test_filter_query():
    query = build_message_filter_query(
        MessageFilter(
            start_date=datetime(2026, 1, 1, tzinfo=UTC),
            end_date=datetime(2026, 1, 31, 23, 59, 59),
            only_unread=True,
        )
    )

    assert query == (
        "receivedDateTime ge 2026-01-01T00:00:00Z and "
        "receivedDateTime le 2026-01-31T23:59:59Z and isRead eq false"
    )


# ---------------------------------------------------------------------------
# GraphMailProvider
# ---------------------------------------------------------------------------


@pytest.fixture
def graph_client() -> MagicMock:
    return MagicMock(spec=GraphClient)


@pytest.fixture
def provider(graph_client) -> GraphMailProvider:
    return GraphMailProvider(graph_client, ACCOUNT)


class TestGraphMailProvider:
    async def test_first_page_uses_filter(self, provider, graph_client):
        graph_client.request.return_value = {
            "value": [GRAPH_MESSAGE],
            "@odata.nextLink": "https://graph.test/next",
        }

        page = await provider.fetch_messages(
            MessageFilter(start_date=datetime(2026, 1, 1, tzinfo=UTC)), max_results=100
        )

        assert [m.id for m in page.messages] == ["AAMk-1"]
        assert page.next_page_token == "https://graph.test/next"
        params = graph_client.request.call_args.kwargs["params"]
        assert params["$top"] == 50
        assert params["$orderby"] == "receivedDateTime desc"

    async def test_next_page_follows_link(self, provider, graph_client):
        graph_client.request.return_value = {"value": []}

        page = await provider.fetch_messages(
            MessageFilter(start_date=datetime(2026, 1, 1, tzinfo=UTC)),
            page_token="https://graph.test/next",
        )

        graph_client.request.assert_called_once_with("GET", "https://graph.test/next")
        assert page.next_page_token is None

    async def test_get_message_not_found(self, provider, graph_client):
        graph_client.request.side_effect = MessageNotFoundError("gone")
        assert await provider.get_message("m1") is None

    async def test_batch_keeps_request_order_and_drops_missing(self, provider, graph_client):
        graph_client.batch_request.return_value = [
            {"id": "2", "status": 200, "body": {**GRAPH_MESSAGE, "id": "c"}},
            {"id": "1", "status": 404, "body": {}},
            {"id": "0", "status": 200, "body": {**GRAPH_MESSAGE, "id": "a"}},
        ]

        messages = await provider.get_messages_batch(["a", "b", "c"])

        assert [m.id for m in messages] == ["a", "c"]

    async def test_archive_moves_whole_conversation(self, provider, graph_client):
        graph_client.request.return_value = {"value": [{"id": "m1"}, {"id": "m2"}]}

        await provider.archive_thread("conv-1", "m1")

        operations = graph_client.batch_request.call_args.args[0]
        assert [op["url"] for op in operations] == ["/me/messages/m1/move", "/me/messages/m2/move"]
        assert operations[0]["body"] == {"destinationId": "archive"}

    async def test_label_is_not_duplicated(self, provider, graph_client):
        graph_client.request.return_value = {"categories": ["News"]}

        await provider.label_message("m1", "News")

        graph_client.request.assert_called_once()

    async def test_label_appends_category(self, provider, graph_client):
        graph_client.request.side_effect = [{"categories": ["Finance"]}, {}]

        await provider.label_message("m1", "News")

        assert graph_client.request.call_args.args == ("PATCH", "/me/messages/m1")
        assert graph_client.request.call_args.kwargs["json"] == {"categories": ["Finance", "News"]}

    async def test_send_html(self, provider, graph_client):
        graph_client.request.return_value = {}

        await provider.send_email_with_html("jane@example.com", "Digest", "<p>hi</p>")

        body = graph_client.request.call_args.kwargs["json"]
        assert body["message"]["body"] == {"contentType": "HTML", "content": "<p>hi</p>"}
        assert body["message"]["toRecipients"] == [
            {"emailAddress": {"address": "jane@example.com"}}
        ]

    async def test_draft_reply_returns_id(self, provider, graph_client):
        graph_client.request.return_value = {"id": "draft-9"}
        message = EmailMessage(id="m1", thread_id="t1", from_address="bob@example.com")

        assert await provider.draft_reply(message, "Thanks") == "draft-9"


# ---------------------------------------------------------------------------
# GraphProviderFactory
# ---------------------------------------------------------------------------


class TestProviderFactory:
    def test_creates_provider_sharing_bucket(self):
        factory = GraphProviderFactory(ProviderConfig())

        first = factory.create(ACCOUNT)
        second = factory.create(ACCOUNT)

        assert isinstance(first, GraphMailProvider)
        assert first._client._rate_bucket is second._client._rate_bucket

    def test_unsupported_provider(self):
        gmail = Account(id="g", email="j@gmail.com", provider="google", access_token="t")
        with pytest.raises(ProviderError, match="not supported"):
            GraphProviderFactory(ProviderConfig()).create(gmail)

    def test_missing_token(self):
        account = Account(id="a", email="j@example.com", provider="outlook")
        with pytest.raises(AuthenticationError):
            GraphProviderFactory(ProviderConfig()).create(account)
