"""Microsoft Graph mail provider.

GraphClient is a blocking requests-based client with:
- Automatic retry with exponential backoff (and jitter) for transient errors
- Retry-After handling for 429 responses
- Proactive per-mailbox rate limiting through a shared TokenBucket
- Error mapping: 401 -> AuthenticationError, 404 -> MessageNotFoundError,
  429 -> RateLimitExceeded, anything else -> ProviderError

GraphMailProvider implements EmailProvider on top of it, running each blocking
call in a worker thread. The access token comes from the account row; refreshing
it is handled outside this service.

Usage:
    factory = GraphProviderFactory(config.provider, BucketRegistry())
    provider = factory.create(account)      # fresh per job invocation
    page = await provider.fetch_messages(MessageFilter(start_date=...))
"""

import asyncio
import random
import time
from datetime import datetime
from typing import Any

import requests

from mailflow.config_schema import ProviderConfig
from mailflow.core.errors import (
    AuthenticationError,
    MessageNotFoundError,
    ProviderError,
    RateLimitExceeded,
)
from mailflow.core.logging import get_logger
from mailflow.core.rate_limiter import BucketRegistry, TokenBucket
from mailflow.core.timeutil import ensure_utc, parse_iso
from mailflow.db.store import Account
from mailflow.providers.base import EmailMessage, MessageFilter, MessagePage

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Graph caps $batch requests at 20 operations
BATCH_MAX_SIZE = 20

MESSAGE_FIELDS = (
    "id,conversationId,subject,from,toRecipients,receivedDateTime,"
    "bodyPreview,body,isRead,categories"
)

# Well-known Outlook folder names accepted as move destinations
ARCHIVE_FOLDER = "archive"
JUNK_FOLDER = "junkemail"


class GraphClient:
    """Microsoft Graph API client for one mailbox.

    Attributes:
        base_url: Graph API base URL
        max_retries: Maximum number of retry attempts for transient errors
        retry_delays: Delay (seconds) before each retry; the last value repeats
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        access_token: str,
        rate_bucket: TokenBucket,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self._access_token = access_token
        self._rate_bucket = rate_bucket
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Prefer": 'IdType="ImmutableId"',
        }

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint  # Already a full URL (e.g., @odata.nextLink)
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _raise_for_error(self, response: requests.Response, method: str, endpoint: str) -> None:
        """Translate an error response into the mailflow exception hierarchy."""
        try:
            error_info = response.json().get("error", {})
            error_code = error_info.get("code", "unknown")
            error_message = error_info.get("message", response.text)
        except ValueError:
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "graph_api_error",
            method=method,
            endpoint=endpoint[:200],
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        status = response.status_code
        if status == 401:
            raise AuthenticationError(
                f"Microsoft Graph rejected the access token (401): {error_message}. "
                "Refresh the account's token and retry."
            )
        if status == 404:
            raise MessageNotFoundError(
                f"Resource not found (404): {error_message}",
                message_id=endpoint,
            )
        if status == 429:
            raise RateLimitExceeded(
                f"Rate limit exceeded (429) for {endpoint}",
                retry_after=self._parse_retry_after(response),
            )
        raise ProviderError(
            f"Graph API error ({status}): {error_message}",
            status_code=status,
            error_code=error_code,
        )

    @staticmethod
    def _parse_retry_after(response: requests.Response) -> float | None:
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None
        try:
            return float(retry_after)
        except ValueError:
            return None

    def _get_retry_delay(self, response: requests.Response | None, attempt: int) -> float:
        """Backoff delay with ±20% jitter; 429 responses honour Retry-After."""
        base_delay = None
        if response is not None and response.status_code == 429:
            base_delay = self._parse_retry_after(response)
        if base_delay is None:
            base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]

        jitter = base_delay * 0.2 * (2 * random.random() - 1)
        return base_delay + jitter

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make a request with retry logic.

        Returns:
            Parsed JSON response ({} for 202/204)

        Raises:
            AuthenticationError, MessageNotFoundError, RateLimitExceeded, ProviderError
        """
        url = self._make_url(endpoint)

        for attempt in range(self.max_retries + 1):
            self._rate_bucket.consume_sync()
            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    params=params,
                    json=json,
                    timeout=self.timeout,
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "graph_request_network_retry",
                        method=method,
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e),
                    )
                    time.sleep(delay)
                    continue
                raise ProviderError(
                    f"Request to Microsoft Graph failed after {self.max_retries} retries: {e}",
                    status_code=None,
                ) from e

            if response.status_code < 400:
                if response.status_code in (202, 204) or not response.content:
                    return {}
                return response.json()

            retryable = response.status_code == 429 or response.status_code >= 500
            if retryable and attempt < self.max_retries:
                delay = self._get_retry_delay(response, attempt)
                logger.warning(
                    "graph_request_retry",
                    method=method,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                )
                time.sleep(delay)
                continue

            self._raise_for_error(response, method, endpoint)

        raise ProviderError(f"Request to {endpoint} failed after {self.max_retries} retries")

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    def post(self, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("POST", endpoint, json=json)

    def patch(self, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("PATCH", endpoint, json=json)

    def batch_request(self, operations: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Execute operations through $batch, chunked to BATCH_MAX_SIZE.

        Each operation needs 'id', 'method' and 'url'; 'body' is optional.

        Returns:
            Raw responses ({'id', 'status', 'body'}) across all chunks
        """
        responses: list[dict[str, Any]] = []
        for chunk_start in range(0, len(operations), BATCH_MAX_SIZE):
            chunk = operations[chunk_start : chunk_start + BATCH_MAX_SIZE]
            payload = []
            for op in chunk:
                entry: dict[str, Any] = {"id": op["id"], "method": op["method"], "url": op["url"]}
                if op.get("body") is not None:
                    entry["body"] = op["body"]
                    entry["headers"] = {"Content-Type": "application/json"}
                payload.append(entry)

            result = self.post("/$batch", json={"requests": payload})
            responses.extend(result.get("responses", []))

        return responses


def _recipients(addresses: str | None) -> list[dict[str, Any]]:
    if not addresses:
        return []
    return [
        {"emailAddress": {"address": address.strip()}}
        for address in addresses.split(",")
        if address.strip()
    ]


def _format_address(entry: dict[str, Any] | None) -> str:
    email_address = (entry or {}).get("emailAddress", {})
    address = email_address.get("address", "")
    name = email_address.get("name")
    if name and name != address:
        return f"{name} <{address}>"
    return address


def parse_graph_message(data: dict[str, Any]) -> EmailMessage:
    """Convert a Graph message resource into an EmailMessage."""
    body = data.get("body") or {}
    received = data.get("receivedDateTime")
    return EmailMessage(
        id=data.get("id", ""),
        thread_id=data.get("conversationId", ""),
        from_address=_format_address(data.get("from")),
        to=", ".join(
            r.get("emailAddress", {}).get("address", "") for r in data.get("toRecipients", [])
        ),
        subject=data.get("subject") or "",
        content=body.get("content") or data.get("bodyPreview") or "",
        snippet=data.get("bodyPreview") or "",
        received_at=parse_iso(received.replace("Z", "+00:00")) if received else None,
        is_read=bool(data.get("isRead", False)),
        labels=list(data.get("categories") or []),
    )


def build_message_filter_query(message_filter: MessageFilter) -> str:
    """Build the OData $filter for a date range scan."""

    def _odata_time(value: datetime) -> str:
        return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")

    clauses = [f"receivedDateTime ge {_odata_time(message_filter.start_date)}"]
    if message_filter.end_date:
        clauses.append(f"receivedDateTime le {_odata_time(message_filter.end_date)}")
    if message_filter.only_unread:
        clauses.append("isRead eq false")
    return " and ".join(clauses)


class GraphMailProvider:
    """EmailProvider over Microsoft Graph for one account."""

    def __init__(self, client: GraphClient, account: Account):
        self._client = client
        self._account = account

    async def _call(self, method: str, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        return await asyncio.to_thread(self._client.request, method, endpoint, **kwargs)

    async def fetch_messages(
        self,
        message_filter: MessageFilter,
        page_token: str | None = None,
        max_results: int = 25,
    ) -> MessagePage:
        if page_token:
            # nextLink already carries the filter, ordering and page size
            response = await self._call("GET", page_token)
        else:
            response = await self._call(
                "GET",
                "/me/mailFolders/inbox/messages",
                params={
                    "$filter": build_message_filter_query(message_filter),
                    "$orderby": "receivedDateTime desc",
                    "$top": min(max_results, 50),
                    "$select": MESSAGE_FIELDS,
                },
            )

        messages = [parse_graph_message(item) for item in response.get("value", [])]
        return MessagePage(messages=messages, next_page_token=response.get("@odata.nextLink"))

    async def get_messages_batch(self, message_ids: list[str]) -> list[EmailMessage]:
        if not message_ids:
            return []

        operations = [
            {"id": str(i), "method": "GET", "url": f"/me/messages/{mid}?$select={MESSAGE_FIELDS}"}
            for i, mid in enumerate(message_ids)
        ]
        responses = await asyncio.to_thread(self._client.batch_request, operations)

        by_index: dict[int, EmailMessage] = {}
        for resp in responses:
            status = resp.get("status", 0)
            if 200 <= status < 300:
                by_index[int(resp["id"])] = parse_graph_message(resp.get("body", {}))
            elif status != 404:
                logger.warning(
                    "graph_batch_item_failed",
                    account_id=self._account.id,
                    status=status,
                )
        return [by_index[i] for i in sorted(by_index)]

    async def get_message(self, message_id: str) -> EmailMessage | None:
        try:
            data = await self._call(
                "GET", f"/me/messages/{message_id}", params={"$select": MESSAGE_FIELDS}
            )
        except MessageNotFoundError:
            return None
        return parse_graph_message(data)

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None:
        await self._send(to, subject, body, "Text", cc=cc, bcc=bcc)

    async def send_email_with_html(self, to: str, subject: str, html: str) -> None:
        await self._send(to, subject, html, "HTML")

    async def _send(
        self,
        to: str,
        subject: str,
        content: str,
        content_type: str,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None:
        message: dict[str, Any] = {
            "subject": subject,
            "body": {"contentType": content_type, "content": content},
            "toRecipients": _recipients(to),
        }
        if cc:
            message["ccRecipients"] = _recipients(cc)
        if bcc:
            message["bccRecipients"] = _recipients(bcc)
        await self._call("POST", "/me/sendMail", json={"message": message, "saveToSentItems": True})

    async def archive_thread(self, thread_id: str, message_id: str) -> None:
        response = await self._call(
            "GET",
            "/me/messages",
            params={"$filter": f"conversationId eq '{thread_id}'", "$select": "id"},
        )
        ids = [item["id"] for item in response.get("value", [])] or [message_id]
        operations = [
            {
                "id": str(i),
                "method": "POST",
                "url": f"/me/messages/{mid}/move",
                "body": {"destinationId": ARCHIVE_FOLDER},
            }
            for i, mid in enumerate(ids)
        ]
        await asyncio.to_thread(self._client.batch_request, operations)

    async def label_message(self, message_id: str, label: str) -> None:
        data = await self._call(
            "GET", f"/me/messages/{message_id}", params={"$select": "categories"}
        )
        categories = list(data.get("categories") or [])
        if label not in categories:
            categories.append(label)
            await self._call("PATCH", f"/me/messages/{message_id}", json={"categories": categories})

    async def reply_to_message(self, message: EmailMessage, content: str) -> None:
        await self._call("POST", f"/me/messages/{message.id}/reply", json={"comment": content})

    async def forward_message(
        self, message: EmailMessage, to: str, content: str | None = None
    ) -> None:
        await self._call(
            "POST",
            f"/me/messages/{message.id}/forward",
            json={"comment": content or "", "toRecipients": _recipients(to)},
        )

    async def draft_reply(self, message: EmailMessage, content: str) -> str | None:
        draft = await self._call(
            "POST", f"/me/messages/{message.id}/createReply", json={"comment": content}
        )
        return draft.get("id")

    async def mark_spam(self, message: EmailMessage) -> None:
        await self.move_to_folder(message, JUNK_FOLDER)

    async def mark_read(self, message: EmailMessage) -> None:
        await self._call("PATCH", f"/me/messages/{message.id}", json={"isRead": True})

    async def move_to_folder(self, message: EmailMessage, folder_id: str) -> None:
        await self._call(
            "POST", f"/me/messages/{message.id}/move", json={"destinationId": folder_id}
        )


class GraphProviderFactory:
    """Builds a GraphMailProvider per account, sharing one rate bucket per mailbox."""

    SUPPORTED_PROVIDERS = frozenset({"outlook"})

    def __init__(self, config: ProviderConfig, buckets: BucketRegistry | None = None):
        self._config = config
        self._buckets = buckets or BucketRegistry(
            rate=config.rate_per_second, capacity=config.burst_capacity
        )

    def create(self, account: Account) -> GraphMailProvider:
        if account.provider not in self.SUPPORTED_PROVIDERS:
            raise ProviderError(
                f"Provider '{account.provider}' for account {account.id} is not supported. "
                f"Supported providers: {', '.join(sorted(self.SUPPORTED_PROVIDERS))}.",
                status_code=400,
            )
        if not account.access_token:
            raise AuthenticationError(
                f"Account {account.id} has no access token. "
                "Reconnect the mailbox to store fresh credentials."
            )

        client = GraphClient(
            access_token=account.access_token,
            rate_bucket=self._buckets.get(f"graph:{account.id}"),
            base_url=self._config.graph_base_url,
            max_retries=self._config.max_retries,
            timeout=self._config.request_timeout_seconds,
        )
        return GraphMailProvider(client, account)
