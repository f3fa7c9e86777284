"""Recovery sweeper for scheduled actions.

Finds PENDING actions whose scheduled time has passed (their queue job was
lost, never enqueued, or exhausted its retries while the row was handed back)
and re-enqueues an executor job for immediate execution.

EXECUTING rows whose invocation was lost (claimed longer ago than the
executor time limit) are handed back to PENDING on every sweep.

The sweep is a self-re-arming job: every run enqueues the next run at the
next interval boundary before returning, whether or not the sweep itself
succeeded. Re-arm jobs are keyed by their boundary, so two sweep chains that
meet in the same window collapse into one.
"""

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from mailflow.core.logging import get_logger
from mailflow.core.timeutil import utc_now
from mailflow.db.store import DatabaseStore
from mailflow.engine.scheduler import scheduled_action_idempotency_key
from mailflow.jobs.payloads import (
    EXECUTE_SCHEDULED_ACTION,
    SWEEP_SCHEDULED_ACTIONS,
    ExecuteScheduledActionPayload,
    SweepScheduledActionsPayload,
    dump_payload,
)
from mailflow.queue.base import JobQueue

logger = get_logger(__name__)

KICKSTART_IDEMPOTENCY_KEY = "scheduled-action-sweep-kickstart"


@dataclass
class SweepResult:
    processed: int = 0
    retriggered: int = 0
    released: int = 0
    failed: int = 0
    failed_actions: list[dict[str, str]] = field(default_factory=list)
    next_run_job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "retriggered": self.retriggered,
            "released": self.released,
            "failed": self.failed,
            "failed_actions": self.failed_actions,
            "next_run_job_id": self.next_run_job_id,
        }


class RecoverySweeper:
    """Re-drives overdue PENDING actions and keeps its own schedule alive."""

    def __init__(
        self,
        store: DatabaseStore,
        queue: JobQueue,
        interval_minutes: int = 5,
        batch_size: int = 100,
        stale_after_seconds: int = 300,
    ):
        self._store = store
        self._queue = queue
        self._interval_seconds = interval_minutes * 60
        self._batch_size = batch_size
        self._stale_after_seconds = stale_after_seconds

    async def run(self) -> SweepResult:
        """Sweep once, then always re-arm the next run.

        Raises:
            QueueError: If the next run cannot be enqueued (the queue retries this job)
        """
        result = SweepResult()
        try:
            result = await self.sweep()
        finally:
            result.next_run_job_id = await self.rearm()
        return result

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Re-enqueue overdue PENDING actions, oldest first, one batch per call.

        EXECUTING rows claimed longer ago than the executor time limit are
        handed back to PENDING first, so they are re-driven like any other
        overdue row. Each row is handled independently; a failed re-trigger
        is recorded and the batch continues.
        """
        now = now or utc_now()
        released = await self._store.release_stale_executing_actions(
            now - timedelta(seconds=self._stale_after_seconds)
        )
        if released:
            logger.warning(
                "sweep_stale_actions_released", count=len(released), scheduled_action_ids=released
            )

        overdue = await self._store.get_overdue_scheduled_actions(now, limit=self._batch_size)
        result = SweepResult(processed=len(overdue), released=len(released))
        if not overdue:
            logger.info("sweep_nothing_overdue")
            return result

        for action in overdue:
            try:
                job_id = await self._queue.enqueue(
                    EXECUTE_SCHEDULED_ACTION,
                    dump_payload(ExecuteScheduledActionPayload(scheduled_action_id=action.id)),
                    idempotency_key=scheduled_action_idempotency_key(action.id),
                )
                await self._store.set_scheduling_status(action.id, "SCHEDULED", job_id)
                result.retriggered += 1
                logger.info(
                    "sweep_action_retriggered",
                    scheduled_action_id=action.id,
                    action_type=action.action_type,
                    overdue_seconds=int((now - action.scheduled_for).total_seconds()),
                )
            except Exception as e:
                result.failed += 1
                result.failed_actions.append({"id": action.id, "error": str(e)})
                logger.error(
                    "sweep_action_retrigger_failed",
                    scheduled_action_id=action.id,
                    error=str(e),
                )

        logger.info(
            "sweep_complete",
            processed=result.processed,
            retriggered=result.retriggered,
            failed=result.failed,
        )
        return result

    def next_run_at(self, now: datetime | None = None) -> tuple[int, datetime]:
        """Next interval boundary strictly after now, as (slot number, time)."""
        now = now or utc_now()
        slot = math.floor(now.timestamp() / self._interval_seconds) + 1
        return slot, datetime.fromtimestamp(slot * self._interval_seconds, UTC)

    async def rearm(self) -> str:
        """Enqueue the next sweep at the next interval boundary."""
        slot, run_at = self.next_run_at()
        job_id = await self._queue.enqueue(
            SWEEP_SCHEDULED_ACTIONS,
            dump_payload(SweepScheduledActionsPayload(reason="rearm")),
            not_before=run_at,
            idempotency_key=f"scheduled-action-sweep-{slot}",
        )
        logger.debug("sweep_rearmed", next_run_at=run_at.isoformat(), job_id=job_id)
        return job_id

    async def kickstart(self) -> str:
        """Start (or restart) the sweep chain with an immediate run."""
        job_id = await self._queue.enqueue(
            SWEEP_SCHEDULED_ACTIONS,
            dump_payload(SweepScheduledActionsPayload(reason="kickstart")),
            idempotency_key=KICKSTART_IDEMPOTENCY_KEY,
        )
        logger.info("sweep_kickstarted", job_id=job_id)
        return job_id

    async def status_counts(self) -> dict[str, int]:
        """Scheduled actions per status, plus how many PENDING ones are overdue."""
        counts = await self._store.count_scheduled_actions_by_status()
        for status in ("PENDING", "EXECUTING", "COMPLETED", "FAILED", "CANCELLED"):
            counts.setdefault(status, 0)
        counts["overdue"] = await self._store.count_overdue_scheduled_actions(utc_now())
        return counts
