"""Digest aggregation.

Messages handled by a DIGEST rule action (or flagged by cold-email
detection) are summarized one at a time and collected into the account's
pending digest. Aggregation is idempotent per message: re-running it for a
message that is already in the pending digest rewrites that item instead of
adding a second one.

Skipped without an item:
- mail sent by the system itself or by the account's assistant address
- messages whose rule cannot be determined
- messages the summarizer judges not worth surfacing
"""

import json

from mailflow.ai.summarizer import MessageToSummarize, Summarizer
from mailflow.config_schema import DigestConfig
from mailflow.core.errors import NotFoundError
from mailflow.core.logging import get_logger
from mailflow.db.store import DatabaseStore
from mailflow.engine.addresses import extract_email_address, is_assistant_email
from mailflow.engine.results import JobResult
from mailflow.jobs.payloads import (
    DIGEST_ADD_ITEM,
    DigestAddItemPayload,
    DigestMessage,
    dump_payload,
)
from mailflow.providers.base import EmailMessage
from mailflow.queue.base import JobQueue

logger = get_logger(__name__)


def digest_concurrency_key(account_id: str) -> str:
    return f"digest:{account_id}"


class DigestAggregator:
    """Summarizes messages into an account's pending digest."""

    def __init__(self, store: DatabaseStore, summarizer: Summarizer, config: DigestConfig):
        self._store = store
        self._summarizer = summarizer
        self._config = config

    async def add_item(self, payload: DigestAddItemPayload) -> JobResult:
        """Summarize one message and upsert it into the pending digest.

        Raises:
            NotFoundError: If the account or the referenced executed action is missing
            SummarizationError: If the summarizer fails (the queue retries)
        """
        message = payload.message
        account = await self._store.get_account(payload.account_id)
        if account is None:
            raise NotFoundError(
                f"Account {payload.account_id} not found",
                entity="account",
                entity_id=payload.account_id,
            )

        sender = extract_email_address(message.from_address)
        system_address = extract_email_address(self._config.system_from_email)
        if system_address and sender == system_address:
            logger.info("digest_item_skipped_system_sender", message_id=message.id)
            return JobResult.skip("Email from system")

        if is_assistant_email(account.email, message.from_address, account.assistant_email):
            logger.info("digest_item_skipped_assistant_sender", message_id=message.id)
            return JobResult.skip("Email from assistant")

        rule_name = await self._resolve_rule_name(payload)
        if not rule_name:
            logger.warning(
                "digest_rule_name_not_found",
                account_id=payload.account_id,
                action_id=payload.action_id,
            )
            return JobResult.skip("Rule name not found")

        summary = await self._summarizer.summarize(
            rule_name,
            MessageToSummarize(
                id=message.id,
                from_address=message.from_address,
                subject=message.subject,
                content=message.content,
                to=message.to or "",
            ),
        )
        if summary is None or not summary.content:
            logger.info("digest_item_not_worth_summarizing", message_id=message.id)
            return JobResult.skip("Not worth summarizing")

        write = await self._store.add_digest_item(
            account_id=payload.account_id,
            message_id=message.id,
            thread_id=message.thread_id,
            content=json.dumps(summary.to_dict()),
            action_id=payload.action_id,
            cold_email_id=payload.cold_email_id,
        )
        logger.info(
            "digest_item_saved",
            account_id=payload.account_id,
            message_id=message.id,
            digest_id=write.digest_id,
            created=write.created,
        )
        return JobResult.ok(digest_id=write.digest_id, item_id=write.item_id, created=write.created)

    async def _resolve_rule_name(self, payload: DigestAddItemPayload) -> str | None:
        if payload.action_id:
            executed = await self._store.get_executed_action(payload.action_id)
            if executed is None:
                raise NotFoundError(
                    f"Executed action {payload.action_id} not found",
                    entity="executed_action",
                    entity_id=payload.action_id,
                )
            return executed.rule_name
        if payload.cold_email_id:
            return self._config.cold_email_rule_name
        return None


def build_digest_message(message: EmailMessage) -> DigestMessage:
    return DigestMessage(
        id=message.id,
        thread_id=message.thread_id,
        from_address=message.from_address,
        to=message.to or "",
        subject=message.subject or "",
        content=message.content or message.snippet or "",
    )


async def enqueue_digest_item(
    queue: JobQueue,
    account_id: str,
    message: EmailMessage,
    action_id: str | None = None,
    cold_email_id: str | None = None,
    concurrency_limit: int = 3,
) -> str | None:
    """Queue a message for digest aggregation.

    Never raises: a digest entry is not worth failing the caller's rule run.

    Returns:
        Queue job id, or None if the enqueue failed
    """
    try:
        payload = DigestAddItemPayload(
            account_id=account_id,
            action_id=action_id,
            cold_email_id=cold_email_id,
            message=build_digest_message(message),
        )
        return await queue.enqueue(
            DIGEST_ADD_ITEM,
            dump_payload(payload),
            concurrency_key=digest_concurrency_key(account_id),
            concurrency_limit=concurrency_limit,
        )
    except Exception as e:
        logger.error(
            "digest_item_enqueue_failed",
            account_id=account_id,
            message_id=message.id,
            error=str(e),
        )
        return None
