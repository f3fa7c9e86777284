"""Mail provider abstraction.

Engines talk to a mailbox only through EmailProvider. A ProviderFactory
builds a provider for an account; callers ask the factory for a new provider
on every job invocation instead of caching one, so the credentials a long
running bulk job uses are always the ones currently stored for the account.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from mailflow.db.store import Account


@dataclass
class EmailMessage:
    """Provider-neutral message.

    Attributes:
        id: Provider message id
        thread_id: Provider conversation/thread id
        from_address: Sender, "Display Name <address>" when a name is known
        to: Comma-separated recipients
        subject: Subject line
        content: Message body (plain text or HTML, as the provider returns it)
        snippet: Short preview text
        received_at: When the message arrived
        is_read: Read flag
        labels: Provider labels/categories
    """

    id: str
    thread_id: str
    from_address: str
    subject: str = ""
    content: str = ""
    to: str = ""
    snippet: str = ""
    received_at: datetime | None = None
    is_read: bool = False
    labels: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MessageFilter:
    """Date range and flags for a paginated mailbox scan."""

    start_date: datetime
    end_date: datetime | None = None
    only_unread: bool = False


@dataclass
class MessagePage:
    """One page of messages. next_page_token is None on the last page."""

    messages: list[EmailMessage]
    next_page_token: str | None = None


class EmailProvider(Protocol):
    """Capabilities the orchestration layer needs from a mailbox."""

    async def fetch_messages(
        self,
        message_filter: MessageFilter,
        page_token: str | None = None,
        max_results: int = 25,
    ) -> MessagePage:
        """Fetch one page. page_token is opaque and passed back unmodified."""
        ...

    async def get_messages_batch(self, message_ids: list[str]) -> list[EmailMessage]:
        """Fetch several messages by id; ids that no longer exist are omitted."""
        ...

    async def get_message(self, message_id: str) -> EmailMessage | None:
        """Fetch one message, or None if it no longer exists."""
        ...

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> None: ...

    async def send_email_with_html(self, to: str, subject: str, html: str) -> None: ...

    async def archive_thread(self, thread_id: str, message_id: str) -> None: ...

    async def label_message(self, message_id: str, label: str) -> None: ...

    async def reply_to_message(self, message: EmailMessage, content: str) -> None: ...

    async def forward_message(
        self, message: EmailMessage, to: str, content: str | None = None
    ) -> None: ...

    async def draft_reply(self, message: EmailMessage, content: str) -> str | None:
        """Create a reply draft and return its id."""
        ...

    async def mark_spam(self, message: EmailMessage) -> None: ...

    async def mark_read(self, message: EmailMessage) -> None: ...

    async def move_to_folder(self, message: EmailMessage, folder_id: str) -> None: ...


class ProviderFactory(Protocol):
    """Builds a provider for an account."""

    def create(self, account: Account) -> EmailProvider:
        """Build a fresh provider.

        Raises:
            AuthenticationError: If the account has no usable credentials
            ProviderError: If the account's provider is not supported
        """
        ...
