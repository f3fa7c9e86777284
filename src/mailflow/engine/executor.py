"""Execution of scheduled actions.

State machine:

    PENDING -> EXECUTING -> COMPLETED | FAILED
    PENDING -> CANCELLED

Every invocation re-reads the row and claims it with a single conditional
update (PENDING -> EXECUTING). Only the invocation whose update affected a
row performs the side effect; every other concurrent or duplicate delivery
returns a skipped result.

Failure handling after a successful claim:
- target message gone            -> COMPLETED, reason "target gone"
- invalid payload for the action -> FAILED (final)
- retryable provider error       -> row handed back to PENDING and the error
                                    raised, until the last attempt, then FAILED
- missing account / credentials  -> row handed back to PENDING and the error
                                    raised; the sweeper re-drives it later
- non-retryable provider error   -> FAILED (final)
- cancelled (timeout, shutdown)  -> row handed back to PENDING, or FAILED on
                                    the last attempt
"""

import asyncio
from datetime import datetime

from mailflow.core.errors import (
    ActionValidationError,
    AuthenticationError,
    MessageNotFoundError,
    NotFoundError,
    ProviderError,
)
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import ensure_utc, utc_now
from mailflow.db.store import DatabaseStore, ScheduledAction
from mailflow.engine.actions import perform_action
from mailflow.engine.results import JobResult
from mailflow.jobs.payloads import (
    EXECUTE_SCHEDULED_ACTION,
    ExecuteScheduledActionPayload,
    dump_payload,
)
from mailflow.providers.base import ProviderFactory
from mailflow.queue.base import JobQueue

logger = get_logger(__name__)

TARGET_GONE = "target gone"


class ScheduledActionExecutor:
    """Runs one scheduled action per invocation."""

    def __init__(self, store: DatabaseStore, queue: JobQueue, providers: ProviderFactory):
        self._store = store
        self._queue = queue
        self._providers = providers

    async def execute(
        self,
        action_id: str,
        scheduled_for: datetime | None = None,
        attempt: int = 1,
        max_attempts: int = 3,
    ) -> JobResult:
        """Execute a scheduled action if it is still PENDING.

        Args:
            action_id: ScheduledAction id
            scheduled_for: Time carried by the job; a future value defers the run
            attempt: Current delivery attempt (1-based)
            max_attempts: Attempts the queue will make in total

        Raises:
            ProviderError: Retryable provider failure with attempts remaining
            NotFoundError: Owning account missing
            AuthenticationError: Account has no usable credentials
        """
        if scheduled_for is not None and ensure_utc(scheduled_for) > utc_now():
            return await self._defer(action_id, ensure_utc(scheduled_for))

        action = await self._store.get_scheduled_action(action_id)
        if action is None:
            logger.info("scheduled_action_not_found", scheduled_action_id=action_id)
            return JobResult.skip("not found")

        if action.status == "CANCELLED":
            logger.info("scheduled_action_cancelled_skip", scheduled_action_id=action_id)
            return JobResult.skip("cancelled")

        if action.status != "PENDING":
            logger.info(
                "scheduled_action_not_pending",
                scheduled_action_id=action_id,
                status=action.status,
            )
            return JobResult.skip("not pending", status=action.status)

        if not await self._store.mark_scheduled_action_executing(action_id):
            logger.info("scheduled_action_already_claimed", scheduled_action_id=action_id)
            return JobResult.skip("already being processed")

        final_attempt = attempt >= max_attempts
        try:
            return await self._run(action)

        except ActionValidationError as e:
            return await self._fail(action, str(e))

        except (NotFoundError, AuthenticationError) as e:
            logger.warning(
                "scheduled_action_account_unavailable",
                scheduled_action_id=action_id,
                account_id=action.account_id,
                attempt=attempt,
                error=str(e),
            )
            await self._store.release_scheduled_action(action_id)
            raise

        except ProviderError as e:
            if e.retryable and not final_attempt:
                logger.warning(
                    "scheduled_action_retryable_error",
                    scheduled_action_id=action_id,
                    attempt=attempt,
                    status_code=e.status_code,
                    error=str(e),
                )
                await self._store.release_scheduled_action(action_id)
                raise
            return await self._fail(action, str(e))

        except asyncio.CancelledError:
            # Timed out or shut down mid-run; the row must not stay EXECUTING
            logger.warning(
                "scheduled_action_interrupted",
                scheduled_action_id=action_id,
                attempt=attempt,
                final_attempt=final_attempt,
            )
            if final_attempt:
                await asyncio.shield(
                    self._store.fail_scheduled_action(
                        action_id, f"Execution interrupted on attempt {attempt}"
                    )
                )
            else:
                await asyncio.shield(self._store.release_scheduled_action(action_id))
            raise

        except Exception:
            await self._store.release_scheduled_action(action_id)
            raise

    async def _run(self, action: ScheduledAction) -> JobResult:
        account = await self._store.get_account(action.account_id)
        if account is None:
            raise NotFoundError(
                f"Account {action.account_id} for scheduled action {action.id} not found",
                entity="account",
                entity_id=action.account_id,
            )

        provider = self._providers.create(account)

        try:
            message = await provider.get_message(action.message_id)
            if message is None:
                return await self._complete_target_gone(action)
            details = await perform_action(provider, action.payload, message)
        except MessageNotFoundError:
            return await self._complete_target_gone(action)

        executed_action_id = await self._store.create_executed_action(
            action.executed_rule_id,
            action.action_type,
            {"scheduled_action_id": action.id, **details},
        )
        await self._store.complete_scheduled_action(action.id, executed_action_id)

        logger.info(
            "scheduled_action_completed",
            scheduled_action_id=action.id,
            action_type=action.action_type,
            executed_action_id=executed_action_id,
        )
        return JobResult.ok(executed_action_id=executed_action_id)

    async def _complete_target_gone(self, action: ScheduledAction) -> JobResult:
        await self._store.complete_scheduled_action(action.id, None)
        logger.info(
            "scheduled_action_target_gone",
            scheduled_action_id=action.id,
            message_id=action.message_id,
        )
        return JobResult.ok(TARGET_GONE)

    async def _fail(self, action: ScheduledAction, error: str) -> JobResult:
        await self._store.fail_scheduled_action(action.id, error)
        logger.error(
            "scheduled_action_failed",
            scheduled_action_id=action.id,
            action_type=action.action_type,
            error=error,
        )
        return JobResult.failure(error)

    async def _defer(self, action_id: str, scheduled_for: datetime) -> JobResult:
        """Hand the action back to the queue for delivery at its scheduled time.

        Enqueued without an idempotency key: the running job still holds it.
        """
        job_id = await self._queue.enqueue(
            EXECUTE_SCHEDULED_ACTION,
            dump_payload(
                ExecuteScheduledActionPayload(
                    scheduled_action_id=action_id, scheduled_for=scheduled_for
                )
            ),
            not_before=scheduled_for,
        )
        logger.info(
            "scheduled_action_deferred",
            scheduled_action_id=action_id,
            scheduled_for=scheduled_for.isoformat(),
            job_id=job_id,
        )
        return JobResult.skip("deferred", job_id=job_id)
