"""Outermost job handlers.

Each handler receives a validated payload and the delivery context, calls
one engine and returns a JSON-friendly result for the job log. Engines
return structured results for outcomes they have recorded; a handler raises
only when the queue should retry:

- scheduled action executor: retryable errors are raised by the executor
  itself; a recorded final failure is returned, not raised
- bulk worker: every failure result is raised as JobFailedError
- everything else: exceptions propagate unchanged
"""

from typing import Any

from mailflow.core.errors import JobFailedError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import utc_now
from mailflow.engine.schedule import calculate_next_occurrence
from mailflow.jobs.payloads import (
    BULK_FETCH,
    BULK_WORKER,
    DIGEST_ADD_ITEM,
    DIGEST_SEND,
    EXECUTE_SCHEDULED_ACTION,
    SWEEP_SCHEDULED_ACTIONS,
    BulkFetchPayload,
    BulkWorkerPayload,
    DigestAddItemPayload,
    DigestSendPayload,
    ExecuteScheduledActionPayload,
    SweepScheduledActionsPayload,
    dump_payload,
)
from mailflow.queue.base import JobContext
from mailflow.queue.worker import JobDefinition, JobRegistry
from mailflow.services import Services

logger = get_logger(__name__)


def build_job_registry(services: Services) -> JobRegistry:
    """Register a handler for every job name, with timeouts and retry policy from config."""
    config = services.config
    retry = {
        "max_attempts": config.queue.max_attempts,
        "retry_delays_seconds": tuple(config.queue.retry_delays_seconds),
    }

    async def execute_scheduled_action(
        payload: ExecuteScheduledActionPayload, context: JobContext
    ) -> dict[str, Any]:
        result = await services.executor.execute(
            payload.scheduled_action_id,
            scheduled_for=payload.scheduled_for,
            attempt=context.attempt,
            max_attempts=context.max_attempts,
        )
        return result.to_dict()

    async def sweep_scheduled_actions(
        payload: SweepScheduledActionsPayload, context: JobContext
    ) -> dict[str, Any]:
        result = await services.sweeper.run()
        return result.to_dict()

    async def bulk_fetch(payload: BulkFetchPayload, context: JobContext) -> dict[str, Any]:
        return await services.bulk_fetcher.fetch(
            payload, attempt=context.attempt, max_attempts=context.max_attempts
        )

    async def bulk_worker(payload: BulkWorkerPayload, context: JobContext) -> dict[str, Any]:
        result = await services.bulk_worker.process(
            payload, attempt=context.attempt, max_attempts=context.max_attempts
        )
        if not result.success:
            raise JobFailedError(
                f"Failed to process message {payload.message_id}: {result.error}",
                job_name=context.job_name,
                result=result.to_dict(),
            )
        return result.to_dict()

    async def digest_add_item(
        payload: DigestAddItemPayload, context: JobContext
    ) -> dict[str, Any]:
        result = await services.digest_aggregator.add_item(payload)
        return result.to_dict()

    async def digest_send(payload: DigestSendPayload, context: JobContext) -> dict[str, Any]:
        result = await services.digest_sender.send(payload.account_id, force=payload.force)
        return result.to_dict()

    registry = JobRegistry()
    registry.register(
        JobDefinition(
            EXECUTE_SCHEDULED_ACTION,
            ExecuteScheduledActionPayload,
            execute_scheduled_action,
            timeout_seconds=config.scheduled_actions.executor_timeout_seconds,
            **retry,
        )
    )
    registry.register(
        JobDefinition(
            SWEEP_SCHEDULED_ACTIONS,
            SweepScheduledActionsPayload,
            sweep_scheduled_actions,
            timeout_seconds=config.scheduled_actions.sweeper_timeout_seconds,
            **retry,
        )
    )
    registry.register(
        JobDefinition(
            BULK_FETCH,
            BulkFetchPayload,
            bulk_fetch,
            timeout_seconds=config.bulk.fetcher_timeout_seconds,
            **retry,
        )
    )
    registry.register(
        JobDefinition(
            BULK_WORKER,
            BulkWorkerPayload,
            bulk_worker,
            timeout_seconds=config.bulk.worker_timeout_seconds,
            **retry,
        )
    )
    registry.register(
        JobDefinition(
            DIGEST_ADD_ITEM,
            DigestAddItemPayload,
            digest_add_item,
            timeout_seconds=config.digest.send_timeout_seconds,
            **retry,
        )
    )
    registry.register(
        JobDefinition(
            DIGEST_SEND,
            DigestSendPayload,
            digest_send,
            timeout_seconds=config.digest.send_timeout_seconds,
            **retry,
        )
    )
    return registry


async def enqueue_due_digest_sends(services: Services) -> list[str]:
    """Queue a digest send for every account whose schedule is due.

    Each schedule is advanced before its job is queued, with a conditional
    update, so two triggers running together queue a single send.

    Returns:
        Queue job ids
    """
    now = utc_now()
    job_ids = []
    for schedule in await services.store.get_due_digest_schedules(now):
        advanced = await services.store.advance_digest_schedule(
            schedule.id,
            schedule.next_occurrence_at,
            calculate_next_occurrence(schedule, now),
        )
        if not advanced:
            continue
        job_id = await services.queue.enqueue(
            DIGEST_SEND,
            dump_payload(DigestSendPayload(account_id=schedule.account_id)),
            idempotency_key=f"digest-send-{schedule.account_id}",
        )
        job_ids.append(job_id)
        logger.info("digest_send_scheduled", account_id=schedule.account_id, job_id=job_id)
    return job_ids
