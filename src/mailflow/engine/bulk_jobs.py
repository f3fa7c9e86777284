"""Bulk processing job lifecycle.

A bulk job is one row in bulk_process_jobs plus a chain of fetcher jobs (one
page each) that fan out one worker job per message. The manager owns the
row: it starts a job, reports progress, cancels it and decides when it is
complete.

Cancellation is cooperative. Cancelling only flips the row to CANCELLED;
fetchers and workers check the flag before doing any work.
"""

from datetime import datetime

from mailflow.core.errors import JobConflictError, NotFoundError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import ensure_utc
from mailflow.db.store import BulkProcessJob, DatabaseStore
from mailflow.jobs.payloads import BULK_FETCH, BulkFetchPayload, dump_payload
from mailflow.queue.base import JobQueue

logger = get_logger(__name__)


def fetcher_concurrency_key(account_id: str) -> str:
    return f"bulk-fetcher:{account_id}"


def worker_concurrency_key(account_id: str) -> str:
    return f"bulk-worker:{account_id}"


def fetch_idempotency_key(job_id: str, page_count: int) -> str:
    return f"bulk-fetch-{job_id}-{page_count}"


class BulkJobManager:
    """Starts, inspects and cancels bulk processing jobs."""

    def __init__(self, store: DatabaseStore, queue: JobQueue, fetcher_concurrency: int = 1):
        self._store = store
        self._queue = queue
        self._fetcher_concurrency = fetcher_concurrency

    async def start(
        self,
        account_id: str,
        start_date: datetime,
        end_date: datetime | None = None,
        only_unread: bool = True,
        force_reprocess: bool = False,
    ) -> BulkProcessJob:
        """Create a job, mark it RUNNING and enqueue its first fetcher page.

        Raises:
            NotFoundError: If the account does not exist
            JobConflictError: If the account already has a PENDING or RUNNING job
            QueueError: If the first fetcher cannot be enqueued (the job is marked FAILED)
        """
        account = await self._store.get_account(account_id)
        if account is None:
            raise NotFoundError(
                f"Account {account_id} not found", entity="account", entity_id=account_id
            )

        active = await self._store.get_active_bulk_job(account_id)
        if active is not None:
            raise JobConflictError(
                "A bulk processing job is already running for this account. "
                "Wait for it to complete or cancel it.",
                active_job_id=active.id,
            )

        start_date = ensure_utc(start_date)
        end_date = ensure_utc(end_date) if end_date else None
        job = await self._store.create_bulk_job(
            account_id,
            start_date,
            end_date,
            only_unread=only_unread,
            force_reprocess=force_reprocess,
        )
        await self._store.update_bulk_job_status(job.id, "RUNNING")

        payload = BulkFetchPayload(
            job_id=job.id,
            account_id=account_id,
            start_date=start_date,
            end_date=end_date,
            only_unread=only_unread,
            force_reprocess=force_reprocess,
            page_count=0,
        )
        try:
            await self._queue.enqueue(
                BULK_FETCH,
                dump_payload(payload),
                idempotency_key=fetch_idempotency_key(job.id, 0),
                concurrency_key=fetcher_concurrency_key(account_id),
                concurrency_limit=self._fetcher_concurrency,
            )
        except Exception as e:
            logger.error("bulk_job_trigger_failed", job_id=job.id, error=str(e))
            await self._store.update_bulk_job_status(
                job.id, "FAILED", error=f"Failed to start fetcher: {e}"
            )
            raise

        logger.info(
            "bulk_job_started",
            job_id=job.id,
            account_id=account_id,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat() if end_date else None,
            only_unread=only_unread,
            force_reprocess=force_reprocess,
        )
        return await self.get_status(job.id)

    async def get_status(self, job_id: str) -> BulkProcessJob:
        """Raises NotFoundError if the job does not exist."""
        job = await self._store.get_bulk_job(job_id)
        if job is None:
            raise NotFoundError(f"Bulk job {job_id} not found", entity="bulk_job", entity_id=job_id)
        return job

    async def get_active(self, account_id: str) -> BulkProcessJob | None:
        return await self._store.get_active_bulk_job(account_id)

    async def cancel(self, job_id: str) -> BulkProcessJob:
        """Flag a job as CANCELLED. A job that already finished is returned unchanged.

        Raises:
            NotFoundError: If the job does not exist
        """
        job = await self.get_status(job_id)
        if job.is_terminal:
            logger.info("bulk_job_cancel_ignored", job_id=job_id, status=job.status)
            return job

        if await self._store.update_bulk_job_status(job_id, "CANCELLED"):
            logger.info(
                "bulk_job_cancelled",
                job_id=job_id,
                processed=job.processed,
                emails_queued=job.emails_queued,
            )
        return await self.get_status(job_id)

    async def check_and_mark_complete(self, job_id: str) -> bool:
        """Complete the job if every queued message has been handled.

        Returns:
            True if this call completed the job
        """
        completed = await self._store.mark_bulk_job_complete_if_done(job_id)
        if completed:
            job = await self._store.get_bulk_job(job_id)
            logger.info(
                "bulk_job_completed",
                job_id=job_id,
                emails_queued=job.emails_queued if job else None,
                processed=job.processed if job else None,
                failed=job.failed if job else None,
            )
        return completed
