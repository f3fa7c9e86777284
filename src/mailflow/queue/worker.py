"""Queue consumer: claims due jobs and runs their registered handlers.

Each claimed job is validated against its payload model, run under its
definition's wall-clock timeout with the job bound into the log context, and then
completed, retried with backoff, or failed:

- handler returns              -> completed
- PayloadValidationError       -> failed, never retried
- any other exception/timeout  -> retried after the next backoff delay
                                  until max_attempts, then failed

Usage:
    registry = JobRegistry()
    registry.register(JobDefinition(BULK_WORKER, BulkWorkerPayload, handle_bulk_worker))

    worker = QueueWorker(queue, registry)
    await worker.run_once()
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from mailflow.core.errors import PayloadValidationError, QueueError, RateLimitExceeded
from mailflow.core.logging import bind_job_context, clear_job_context, get_logger
from mailflow.jobs.payloads import JobPayload, parse_payload
from mailflow.queue.base import JobContext, QueuedJob
from mailflow.queue.sqlite import SqliteJobQueue

logger = get_logger(__name__)

JobHandler = Callable[[Any, JobContext], Awaitable[dict[str, Any] | None]]


@dataclass(frozen=True)
class JobDefinition:
    """How to run one named job.

    Attributes:
        name: Job name the queue stores
        payload_model: Schema the raw payload must satisfy
        handler: Coroutine taking (payload, context)
        timeout_seconds: Wall-clock limit for one invocation
        max_attempts: Total attempts, first run included
        retry_delays_seconds: Delay before each retry; the last value repeats
    """

    name: str
    payload_model: type[JobPayload]
    handler: JobHandler
    timeout_seconds: float = 300.0
    max_attempts: int = 3
    retry_delays_seconds: tuple[int, ...] = (60, 300)

    def retry_delay(self, attempts_made: int) -> float:
        """Delay before the next attempt after `attempts_made` failed ones."""
        if not self.retry_delays_seconds:
            return 0.0
        index = min(max(attempts_made, 1) - 1, len(self.retry_delays_seconds) - 1)
        return float(self.retry_delays_seconds[index])


class JobRegistry:
    """Job name -> definition lookup."""

    def __init__(self) -> None:
        self._definitions: dict[str, JobDefinition] = {}

    def register(self, definition: JobDefinition) -> None:
        if definition.name in self._definitions:
            raise ValueError(f"Job '{definition.name}' is already registered")
        self._definitions[definition.name] = definition

    def get(self, name: str) -> JobDefinition | None:
        return self._definitions.get(name)

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions


class QueueWorker:
    """Consumer that drains due jobs from a SqliteJobQueue."""

    def __init__(
        self,
        queue: SqliteJobQueue,
        registry: JobRegistry,
        claim_batch_size: int = 20,
        lease_seconds: int = 900,
        poll_interval_seconds: float = 2.0,
    ):
        self._queue = queue
        self._registry = registry
        self._claim_batch_size = claim_batch_size
        self._lease_seconds = lease_seconds
        self._poll_interval = poll_interval_seconds

    async def run_once(self) -> int:
        """Claim and run one batch of due jobs concurrently.

        Returns:
            Number of jobs claimed
        """
        await self._queue.release_expired_leases()
        jobs = await self._queue.claim_due(self._claim_batch_size, self._lease_seconds)
        if not jobs:
            return 0

        logger.debug("jobs_claimed", count=len(jobs))
        await asyncio.gather(*(self._run_job(job) for job in jobs))
        return len(jobs)

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Poll until stop_event is set. Sleeps only when nothing was due."""
        logger.info("queue_worker_started", jobs=self._registry.names())
        while not stop_event.is_set():
            try:
                claimed = await self.run_once()
            except QueueError as e:
                logger.error("queue_poll_failed", error=str(e))
                claimed = 0

            if claimed == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
                except TimeoutError:
                    pass
        logger.info("queue_worker_stopped")

    async def _run_job(self, job: QueuedJob) -> None:
        bind_job_context(job.id, job.name, job.attempts)
        try:
            definition = self._registry.get(job.name)
            if definition is None:
                logger.error("job_handler_missing", job_name=job.name, job_id=job.id)
                await self._queue.fail(job.id, f"No handler registered for job '{job.name}'")
                return

            try:
                payload = parse_payload(job.name, job.payload, definition.payload_model)
            except PayloadValidationError as e:
                logger.error(
                    "job_payload_invalid",
                    job_name=job.name,
                    job_id=job.id,
                    errors=e.errors,
                )
                await self._queue.fail(job.id, str(e))
                return

            context = JobContext(
                job_id=job.id,
                job_name=job.name,
                attempt=job.attempts,
                max_attempts=definition.max_attempts,
            )
            start = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    definition.handler(payload, context),
                    timeout=definition.timeout_seconds,
                )
            except PayloadValidationError as e:
                logger.error("job_payload_rejected", job_name=job.name, error=str(e))
                await self._queue.fail(job.id, str(e))
                return
            except Exception as e:
                await self._handle_failure(job, definition, e)
                return

            await self._queue.complete(job.id)
            logger.info(
                "job_completed",
                job_name=job.name,
                attempt=job.attempts,
                duration_ms=int((time.monotonic() - start) * 1000),
                result=result,
            )
        finally:
            clear_job_context()

    async def _handle_failure(
        self, job: QueuedJob, definition: JobDefinition, error: Exception
    ) -> None:
        if isinstance(error, TimeoutError):
            message = f"Timed out after {definition.timeout_seconds}s"
        else:
            message = f"{type(error).__name__}: {error}"

        if job.attempts < definition.max_attempts:
            delay = definition.retry_delay(job.attempts)
            if isinstance(error, RateLimitExceeded) and error.retry_after:
                delay = max(delay, error.retry_after)
            await self._queue.retry(job.id, delay, message)
            logger.warning(
                "job_retry_scheduled",
                job_name=job.name,
                attempt=job.attempts,
                max_attempts=definition.max_attempts,
                delay_seconds=delay,
                error=message,
            )
            return

        await self._queue.fail(job.id, message)
        logger.error(
            "job_failed",
            job_name=job.name,
            attempts=job.attempts,
            error=message,
        )
