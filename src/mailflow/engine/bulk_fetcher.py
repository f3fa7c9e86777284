"""Bulk fetcher: one page of a mailbox scan per invocation.

Each invocation fetches a single bounded page and records it, together with
the threads it selects, before enqueueing one worker job per thread. It then
re-enqueues itself with the provider's next-page token, so a long scan is a
chain of short jobs and never one long call. Fetchers for one account are
serialized by the queue (concurrency limit 1) because page tokens cannot be
shared.

A provider is built fresh for every page so each page uses the credentials
currently stored for the account.
"""

from typing import Any

from mailflow.config_schema import BulkConfig
from mailflow.core.errors import NotFoundError, ProviderError
from mailflow.core.logging import get_logger
from mailflow.db.store import DatabaseStore
from mailflow.engine.addresses import extract_email_address
from mailflow.engine.bulk_jobs import (
    BulkJobManager,
    fetch_idempotency_key,
    fetcher_concurrency_key,
    worker_concurrency_key,
)
from mailflow.jobs.payloads import (
    BULK_FETCH,
    BULK_WORKER,
    BulkFetchPayload,
    BulkWorkerPayload,
    dump_payload,
)
from mailflow.providers.base import EmailMessage, MessageFilter, ProviderFactory
from mailflow.queue.base import JobQueue, JobRequest

logger = get_logger(__name__)


def worker_idempotency_key(job_id: str, thread_id: str) -> str:
    return f"bulk-worker-{job_id}-{thread_id}"


def select_messages_to_process(
    messages: list[EmailMessage],
    processed_thread_ids: set[str],
    ignored_senders: set[str],
) -> list[EmailMessage]:
    """Messages worth a worker job, one per thread.

    Drops messages without an id, threads that already have an applied (or
    applying) rule and mail from ignored senders. Messages arrive newest
    first, so the first one seen for a thread is its latest message.
    """
    selected: list[EmailMessage] = []
    seen_threads: set[str] = set()
    for message in messages:
        if not message.id:
            logger.warning("bulk_message_without_id", thread_id=message.thread_id)
            continue
        thread_id = message.thread_id or message.id
        if thread_id in seen_threads:
            continue
        seen_threads.add(thread_id)

        if thread_id in processed_thread_ids:
            logger.debug("bulk_thread_already_processed", thread_id=thread_id)
            continue
        if extract_email_address(message.from_address) in ignored_senders:
            logger.debug("bulk_sender_ignored", thread_id=thread_id)
            continue
        selected.append(message)
    return selected


class BulkFetcher:
    """Fetches one page of a bulk job and fans it out to workers."""

    def __init__(
        self,
        store: DatabaseStore,
        queue: JobQueue,
        providers: ProviderFactory,
        jobs: BulkJobManager,
        config: BulkConfig,
    ):
        self._store = store
        self._queue = queue
        self._providers = providers
        self._jobs = jobs
        self._config = config
        self._ignored_senders = set(config.ignored_senders)

    async def fetch(
        self, payload: BulkFetchPayload, attempt: int = 1, max_attempts: int = 3
    ) -> dict[str, Any]:
        """Process one page.

        Returns:
            Dict with status "cancelled", "continuing" or "complete"

        Raises:
            NotFoundError: If the account does not exist
            ProviderError: If the page cannot be fetched (retried by the queue)
        """
        try:
            return await self._fetch_page(payload)
        except Exception as e:
            if attempt >= max_attempts:
                logger.error(
                    "bulk_fetch_failed",
                    job_id=payload.job_id,
                    page=payload.page_count,
                    attempts=attempt,
                    error=str(e),
                )
                await self._store.update_bulk_job_status(
                    payload.job_id, "FAILED", error=f"Fetching page {payload.page_count + 1}: {e}"
                )
            raise

    async def _fetch_page(self, payload: BulkFetchPayload) -> dict[str, Any]:
        job_id = payload.job_id
        page_count = payload.page_count

        job = await self._store.get_bulk_job(job_id)
        if job is None or job.is_terminal:
            logger.info(
                "bulk_fetch_stopped",
                job_id=job_id,
                status=job.status if job else None,
                page=page_count,
            )
            return {"status": "cancelled", "page_count": page_count}

        account = await self._store.get_account(payload.account_id)
        if account is None:
            raise NotFoundError(
                f"Account {payload.account_id} not found",
                entity="account",
                entity_id=payload.account_id,
            )

        provider = self._providers.create(account)
        page = await provider.fetch_messages(
            MessageFilter(
                start_date=payload.start_date,
                end_date=payload.end_date,
                only_unread=payload.only_unread,
            ),
            page_token=payload.page_token,
            max_results=self._config.page_size,
        )

        # A continuation token that yields nothing and ends the scan is a provider hiccup
        if payload.page_token and not page.messages and not page.next_page_token:
            raise ProviderError(
                f"Empty page returned for a continuation token (page {page_count + 1})"
            )

        if payload.force_reprocess:
            processed_threads: set[str] = set()
        else:
            processed_threads = await self._store.get_threads_with_applied_rules(
                payload.account_id, [m.thread_id for m in page.messages if m.thread_id]
            )
        to_process = select_messages_to_process(
            page.messages, processed_threads, self._ignored_senders
        )

        logger.info(
            "bulk_page_fetched",
            job_id=job_id,
            page=page_count + 1,
            fetched=len(page.messages),
            to_process=len(to_process),
            has_next_page=bool(page.next_page_token),
        )

        if job.status == "PENDING":
            await self._store.update_bulk_job_status(job_id, "RUNNING")

        if await self._store.is_bulk_job_cancelled(job_id):
            logger.info("bulk_fetch_cancelled_before_fan_out", job_id=job_id, page=page_count)
            return {"status": "cancelled", "page_count": page_count}

        # Counted before any worker exists; a retried page only re-queues
        # threads that still have no outcome
        recorded = await self._store.record_bulk_page(
            job_id,
            page_count,
            len(page.messages),
            [(message.thread_id or message.id, message.id) for message in to_process],
        )
        if not recorded:
            logger.info("bulk_page_already_recorded", job_id=job_id, page=page_count + 1)

        # Threads without an outcome; a worker still live from an earlier
        # attempt holds its idempotency key and is not queued twice
        threads = await self._store.get_unfinished_bulk_threads(job_id, page_count)
        if threads:
            created = await self._queue.enqueue_unique(
                [
                    JobRequest(
                        name=BULK_WORKER,
                        payload=dump_payload(
                            BulkWorkerPayload(
                                job_id=job_id,
                                account_id=payload.account_id,
                                message_id=thread.message_id,
                                thread_id=thread.thread_id,
                                force_reprocess=payload.force_reprocess,
                            )
                        ),
                        idempotency_key=worker_idempotency_key(job_id, thread.thread_id),
                        concurrency_key=worker_concurrency_key(payload.account_id),
                        concurrency_limit=self._config.worker_concurrency,
                    )
                    for thread in threads
                ]
            )
            logger.info(
                "bulk_workers_queued",
                job_id=job_id,
                count=len(created),
                already_queued=len(threads) - len(created),
            )

        if page.next_page_token:
            next_payload = payload.model_copy(
                update={"page_token": page.next_page_token, "page_count": page_count + 1}
            )
            await self._queue.enqueue(
                BULK_FETCH,
                dump_payload(next_payload),
                idempotency_key=fetch_idempotency_key(job_id, page_count + 1),
                concurrency_key=fetcher_concurrency_key(payload.account_id),
                concurrency_limit=self._config.fetcher_concurrency,
            )
            logger.info("bulk_next_page_queued", job_id=job_id, next_page=page_count + 2)
            return {
                "status": "continuing",
                "page_count": page_count + 1,
                "emails_queued": len(threads),
                "has_more_pages": True,
            }

        await self._finish_fetching(job_id, page_count)
        return {
            "status": "complete",
            "page_count": page_count + 1,
            "emails_queued": len(threads),
            "has_more_pages": False,
        }

    async def _finish_fetching(self, job_id: str, page_count: int) -> None:
        await self._store.mark_bulk_job_fetch_complete(job_id)
        job = await self._store.get_bulk_job(job_id)
        logger.info(
            "bulk_fetching_complete",
            job_id=job_id,
            total_pages=page_count + 1,
            total_emails=job.total_emails if job else None,
            emails_queued=job.emails_queued if job else None,
        )

        if job is not None and job.emails_queued == 0:
            await self._store.update_bulk_job_status(job_id, "COMPLETED")
            logger.info("bulk_job_completed_nothing_to_process", job_id=job_id)
            return

        # Workers may all have finished before the last page was fanned out
        await self._jobs.check_and_mark_complete(job_id)
