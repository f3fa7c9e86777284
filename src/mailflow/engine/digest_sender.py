"""Digest delivery.

One run per account:

1. Claim every PENDING digest (PENDING -> PROCESSING) before any slow I/O,
   so a concurrent run cannot pick the same digests.
2. Fetch the referenced messages in batches, pausing between batches.
3. Group the items by rule, render one HTML email and send it to the
   account's own address.
4. In one transaction: advance the delivery schedule, mark the digests SENT
   and redact every item's content.

If anything fails after the claim and before the email is sent, including a
timeout that cancels the run, the claimed digests are marked FAILED with
their content intact and DigestError is raised. Once the email is sent the
digests are never marked FAILED: recording the delivery is retried, and if
it keeps failing they stay PROCESSING and are not claimed again.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable

from mailflow.config_schema import DigestConfig
from mailflow.core.errors import DatabaseError, DigestError, NotFoundError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import utc_now
from mailflow.db.store import DatabaseStore, Digest, DigestItem, DigestSchedule
from mailflow.engine.addresses import extract_name_from_email
from mailflow.engine.digest_render import (
    DigestContent,
    DigestEntry,
    generate_digest_subject,
    render_digest_html,
)
from mailflow.engine.results import JobResult
from mailflow.engine.schedule import calculate_next_occurrence
from mailflow.providers.base import EmailMessage, EmailProvider, ProviderFactory

logger = get_logger(__name__)

NOTHING_TO_SEND = "No digests to process"
NOTHING_GROUPED = "No executed rules found, skipping digest email"
SENT = "Digest email sent successfully"

FINALIZE_ATTEMPTS = 3
FINALIZE_RETRY_DELAY_SECONDS = 0.5


class DigestSender:
    """Builds and delivers an account's pending digests."""

    def __init__(
        self,
        store: DatabaseStore,
        providers: ProviderFactory,
        config: DigestConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._providers = providers
        self._config = config
        self._sleep = sleep

    async def send(self, account_id: str, force: bool = False) -> JobResult:
        """Send the account's digest.

        Args:
            account_id: Account whose pending digests are sent
            force: Run even when nothing is pending

        Raises:
            NotFoundError: If the account does not exist (nothing is claimed)
            DigestError: If fetching, rendering, sending or recording fails
        """
        account = await self._store.get_account(account_id)
        if account is None:
            raise NotFoundError(
                f"Account {account_id} not found", entity="account", entity_id=account_id
            )

        provider = self._providers.create(account)
        schedule = await self._store.get_digest_schedule(account_id)

        digests = await self._store.claim_pending_digests(account_id)
        if not digests and not force:
            logger.info("digest_nothing_to_send", account_id=account_id)
            return JobResult.ok(NOTHING_TO_SEND)

        digest_ids = [d.id for d in digests]
        logger.info(
            "digest_send_started",
            account_id=account_id,
            digests=len(digests),
            force=force,
        )

        try:
            messages = await self._fetch_messages(provider, digests)
            content = self._group_items(digests, messages)

            if not content:
                await self._store.finalize_sent_digests(digest_ids, utc_now())
                logger.info("digest_nothing_grouped", account_id=account_id, digests=len(digests))
                return JobResult.ok(NOTHING_GROUPED, digest_ids=digest_ids)

            subject = generate_digest_subject(content)
            html = render_digest_html(content, account_id, self._config.base_url)
            await provider.send_email_with_html(account.email, subject, html)
        except asyncio.CancelledError:
            logger.error("digest_send_interrupted", account_id=account_id, digest_ids=digest_ids)
            await asyncio.shield(self._store.mark_digests_failed(digest_ids))
            raise
        except Exception as e:
            await self._store.mark_digests_failed(digest_ids)
            logger.error(
                "digest_send_failed",
                account_id=account_id,
                digest_ids=digest_ids,
                error=str(e),
            )
            raise DigestError(f"Error sending digest email for account {account_id}: {e}") from e

        logger.info(
            "digest_email_sent",
            account_id=account_id,
            entries=content.total_entries,
            rules=len(content.sections),
        )
        # Delivered: from here on the digests are never marked FAILED
        await asyncio.shield(self._finalize_delivered(account_id, digest_ids, schedule))
        return JobResult.ok(SENT, digest_ids=digest_ids, entries=content.total_entries)

    async def _finalize_delivered(
        self, account_id: str, digest_ids: list[str], schedule: DigestSchedule | None
    ) -> None:
        """Mark delivered digests SENT and redact them, retrying the transaction.

        If every attempt fails the digests stay PROCESSING with their content,
        no later run claims them again, and DigestError is raised.
        """
        for attempt in range(1, FINALIZE_ATTEMPTS + 1):
            sent_at = utc_now()
            try:
                await self._store.finalize_sent_digests(
                    digest_ids,
                    sent_at,
                    schedule_id=schedule.id if schedule else None,
                    next_occurrence_at=calculate_next_occurrence(schedule, sent_at)
                    if schedule
                    else None,
                )
                return
            except DatabaseError as e:
                logger.warning(
                    "digest_finalize_retry",
                    account_id=account_id,
                    digest_ids=digest_ids,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt == FINALIZE_ATTEMPTS:
                    logger.error(
                        "digest_finalize_failed_after_send",
                        account_id=account_id,
                        digest_ids=digest_ids,
                    )
                    raise DigestError(
                        f"Digest email for account {account_id} was sent but could not be "
                        f"recorded; digests {digest_ids} remain PROCESSING: {e}"
                    ) from e
                await self._sleep(FINALIZE_RETRY_DELAY_SECONDS * attempt)

    async def _fetch_messages(
        self, provider: EmailProvider, digests: list[Digest]
    ) -> dict[str, EmailMessage]:
        message_ids = list(
            dict.fromkeys(item.message_id for digest in digests for item in digest.items)
        )
        batch_size = self._config.fetch_batch_size
        messages: dict[str, EmailMessage] = {}
        for start in range(0, len(message_ids), batch_size):
            batch = message_ids[start : start + batch_size]
            for message in await provider.get_messages_batch(batch):
                messages[message.id] = message
            if start + batch_size < len(message_ids):
                await self._sleep(self._config.fetch_batch_delay_seconds)

        logger.debug("digest_messages_fetched", requested=len(message_ids), found=len(messages))
        return messages

    def _group_items(
        self, digests: list[Digest], messages: dict[str, EmailMessage]
    ) -> DigestContent:
        content = DigestContent()
        for digest in digests:
            for item in digest.items:
                message = messages.get(item.message_id)
                if message is None:
                    logger.warning("digest_message_missing", message_id=item.message_id)
                    continue

                summary = _parse_item_content(item)
                if summary is None:
                    continue

                content.add(
                    item.rule_name or self._config.cold_email_rule_name,
                    DigestEntry(
                        content=summary,
                        sender=extract_name_from_email(message.from_address),
                        subject=message.subject or "",
                    ),
                )
        return content


def _parse_item_content(item: DigestItem) -> str | None:
    """Stored summary text, or None (logged) if the item content is unusable."""
    try:
        data = json.loads(item.content)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(
            "digest_item_content_unparseable",
            message_id=item.message_id,
            digest_id=item.digest_id,
            error=str(e),
        )
        return None

    if not isinstance(data, dict) or not isinstance(data.get("content"), str):
        logger.warning(
            "digest_item_content_invalid",
            message_id=item.message_id,
            digest_id=item.digest_id,
        )
        return None
    return data["content"]
