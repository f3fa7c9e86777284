"""Bulk worker: runs the account's rules against one message of a bulk job.

Idempotent per message: a message that already has an executed rule is
counted as processed and skipped, unless the job forces reprocessing.

The worker returns a JobResult and never raises. Failures are counted
against the job only on the last delivery attempt, so a message that
succeeds on retry is not also counted as failed. The job handler turns a
failure result into a raised error to engage the queue's retry policy.

A thread's outcome is recorded once, so a duplicate delivery of the same
worker never moves the job's counters twice.
"""

from mailflow.core.errors import NotFoundError
from mailflow.core.logging import get_logger
from mailflow.db.store import BulkThreadOutcome, DatabaseStore
from mailflow.engine.bulk_jobs import BulkJobManager
from mailflow.engine.results import JobResult
from mailflow.engine.rules import RuleRunner
from mailflow.jobs.payloads import BulkWorkerPayload
from mailflow.providers.base import ProviderFactory

logger = get_logger(__name__)


class BulkWorker:
    """Processes single messages for bulk jobs."""

    def __init__(
        self,
        store: DatabaseStore,
        providers: ProviderFactory,
        rule_runner: RuleRunner,
        jobs: BulkJobManager,
    ):
        self._store = store
        self._providers = providers
        self._rule_runner = rule_runner
        self._jobs = jobs

    async def process(
        self, payload: BulkWorkerPayload, attempt: int = 1, max_attempts: int = 3
    ) -> JobResult:
        job_id = payload.job_id
        logger.info(
            "bulk_message_processing",
            job_id=job_id,
            message_id=payload.message_id,
            attempt=attempt,
        )

        if await self._store.is_bulk_job_cancelled(job_id):
            logger.info("bulk_message_skipped_job_cancelled", job_id=job_id)
            return JobResult.skip("Job cancelled")

        try:
            result = await self._process(payload)
        except Exception as e:
            final_attempt = attempt >= max_attempts
            logger.error(
                "bulk_message_failed",
                job_id=job_id,
                message_id=payload.message_id,
                thread_id=payload.thread_id,
                attempt=attempt,
                final_attempt=final_attempt,
                error=str(e),
            )
            if final_attempt:
                await self._record(payload, "failed")
            result = JobResult.failure(str(e) or type(e).__name__)

        await self._jobs.check_and_mark_complete(job_id)
        return result

    async def _process(self, payload: BulkWorkerPayload) -> JobResult:
        account = await self._store.get_account(payload.account_id)
        if account is None:
            raise NotFoundError(
                f"Account {payload.account_id} not found",
                entity="account",
                entity_id=payload.account_id,
            )

        provider = self._providers.create(account)
        message = await provider.get_message(payload.message_id)
        if message is None:
            raise NotFoundError(
                f"Message not found: {payload.message_id}",
                entity="message",
                entity_id=payload.message_id,
            )

        if not payload.force_reprocess and await self._store.has_executed_rule(
            payload.account_id, payload.message_id
        ):
            await self._record(payload, "processed")
            logger.info("bulk_message_already_processed", message_id=payload.message_id)
            return JobResult.skip("Already processed")

        rules = await self._store.get_enabled_rules(payload.account_id)
        if not rules:
            await self._record(payload, "processed")
            logger.info("bulk_no_rules_configured", account_id=payload.account_id)
            return JobResult.skip("No rules configured")

        results = await self._rule_runner.run(provider, message, rules, account)
        await self._record(payload, "processed")

        logger.info(
            "bulk_message_processed",
            job_id=payload.job_id,
            message_id=payload.message_id,
            rules_matched=len(results),
        )
        if not results:
            return JobResult.skip("No matching rule")
        return JobResult.ok(
            rules_matched=len(results),
            rule_names=[r.rule_name for r in results],
        )

    async def _record(self, payload: BulkWorkerPayload, outcome: BulkThreadOutcome) -> None:
        if not await self._store.record_bulk_thread_outcome(
            payload.job_id, payload.thread_id, outcome
        ):
            logger.info(
                "bulk_thread_outcome_already_recorded",
                job_id=payload.job_id,
                thread_id=payload.thread_id,
                outcome=outcome,
            )
