"""Scheduling of delayed rule actions.

A delayed action is a ScheduledAction row (status PENDING, full payload
snapshot) plus one durable queue job that will not run before the action's
scheduled time. The job's idempotency key is derived from the row id, so
scheduling the same row twice never creates two live queue entries.

If the enqueue fails the row stays PENDING with scheduling status FAILED;
the recovery sweeper picks it up once it is overdue.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from mailflow.core.errors import ActionValidationError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import ensure_utc, utc_now
from mailflow.db.store import ActionPayload, DatabaseStore, RuleAction, ScheduledAction
from mailflow.engine.actions import can_action_be_delayed
from mailflow.jobs.payloads import (
    EXECUTE_SCHEDULED_ACTION,
    ExecuteScheduledActionPayload,
    dump_payload,
)
from mailflow.queue.base import JobQueue

logger = get_logger(__name__)


def scheduled_action_idempotency_key(action_id: str) -> str:
    return f"scheduled-action-{action_id}"


@dataclass(frozen=True)
class TargetMessage:
    message_id: str
    thread_id: str


class ActionScheduler:
    """Creates, enqueues and cancels delayed actions."""

    def __init__(self, store: DatabaseStore, queue: JobQueue):
        self._store = store
        self._queue = queue

    async def schedule(
        self,
        executed_rule_id: str,
        payload: ActionPayload,
        target: TargetMessage,
        account_id: str,
        scheduled_for: datetime,
    ) -> ScheduledAction:
        """Persist a delayed action and enqueue its executor job.

        Raises:
            ActionValidationError: If the type cannot be delayed or the time is not in the future
            QueueError: If the executor job cannot be enqueued (the row is kept)
        """
        if not can_action_be_delayed(payload.action_type):
            raise ActionValidationError(
                f"Action type {payload.action_type} is not supported for delayed execution",
                action_type=payload.action_type,
            )

        scheduled_for = ensure_utc(scheduled_for)
        if scheduled_for <= utc_now():
            raise ActionValidationError(
                f"Scheduled time {scheduled_for.isoformat()} is not in the future. "
                "Delays must be positive.",
                action_type=payload.action_type,
            )

        action = await self._store.create_scheduled_action(
            executed_rule_id=executed_rule_id,
            account_id=account_id,
            message_id=target.message_id,
            thread_id=target.thread_id,
            payload=payload,
            scheduled_for=scheduled_for,
        )

        try:
            job_id = await self._queue.enqueue(
                EXECUTE_SCHEDULED_ACTION,
                dump_payload(
                    ExecuteScheduledActionPayload(
                        scheduled_action_id=action.id,
                        scheduled_for=scheduled_for,
                    )
                ),
                not_before=scheduled_for,
                idempotency_key=scheduled_action_idempotency_key(action.id),
            )
        except Exception as e:
            logger.error(
                "scheduled_action_enqueue_failed",
                scheduled_action_id=action.id,
                action_type=payload.action_type,
                error=str(e),
            )
            await self._store.set_scheduling_status(action.id, "FAILED")
            raise

        await self._store.set_scheduling_status(action.id, "SCHEDULED", job_id)
        action.scheduling_status = "SCHEDULED"
        action.scheduled_job_id = job_id

        logger.info(
            "scheduled_action_created",
            scheduled_action_id=action.id,
            action_type=payload.action_type,
            account_id=account_id,
            scheduled_for=scheduled_for.isoformat(),
            job_id=job_id,
        )
        return action

    async def schedule_delayed_actions(
        self,
        executed_rule_id: str,
        actions: list[RuleAction],
        target: TargetMessage,
        account_id: str,
    ) -> list[ScheduledAction]:
        """Schedule every delayable action with a positive delay at now + delay."""
        delayed = [
            a
            for a in actions
            if a.delay_minutes
            and a.delay_minutes > 0
            and can_action_be_delayed(a.payload.action_type)
        ]
        if not delayed:
            return []

        scheduled = []
        for action in delayed:
            scheduled.append(
                await self.schedule(
                    executed_rule_id=executed_rule_id,
                    payload=action.payload,
                    target=target,
                    account_id=account_id,
                    scheduled_for=utc_now() + timedelta(minutes=action.delay_minutes),
                )
            )

        logger.info(
            "delayed_actions_scheduled",
            count=len(scheduled),
            executed_rule_id=executed_rule_id,
            message_id=target.message_id,
        )
        return scheduled

    async def cancel_scheduled_actions(
        self,
        account_id: str,
        message_id: str,
        thread_id: str | None = None,
        rule_id: str | None = None,
        reason: str = "Superseded by new rule",
    ) -> int:
        """Cancel PENDING actions for a message.

        Queue jobs are cancelled best-effort first; the rows are then moved to
        CANCELLED with one conditional update, so an action already EXECUTING
        is left to finish.

        Returns:
            Number of actions cancelled
        """
        pending = await self._store.get_pending_scheduled_actions(
            account_id, message_id, thread_id, rule_id
        )
        if not pending:
            return 0

        for action in pending:
            if not action.scheduled_job_id:
                continue
            try:
                if await self._queue.cancel(action.scheduled_job_id):
                    logger.info(
                        "scheduled_action_job_cancelled",
                        scheduled_action_id=action.id,
                        job_id=action.scheduled_job_id,
                    )
            except Exception as e:
                logger.warning(
                    "scheduled_action_job_cancel_failed",
                    scheduled_action_id=action.id,
                    job_id=action.scheduled_job_id,
                    error=str(e),
                )

        count = await self._store.cancel_pending_scheduled_actions(
            account_id, message_id, thread_id, rule_id
        )
        logger.info(
            "scheduled_actions_cancelled",
            count=count,
            account_id=account_id,
            message_id=message_id,
            rule_id=rule_id,
            reason=reason,
        )
        return count
