"""Rule running for one message.

RuleRunner is the seam the bulk worker calls. StaticRuleRunner matches a
message against each enabled rule's stored sender and subject patterns and
applies the first rule that matches:

- actions with a positive delay go to the ActionScheduler
- DIGEST actions are queued for digest aggregation
- everything else is performed immediately

Any scheduled actions still pending for the message from an earlier run are
cancelled first, since the new run supersedes them.
"""

from dataclasses import dataclass, field
from typing import Protocol

import regex

from mailflow.core.logging import get_logger
from mailflow.db.store import Account, DatabaseStore, Rule
from mailflow.engine.actions import DIGEST, can_action_be_delayed, perform_action
from mailflow.engine.digest import enqueue_digest_item
from mailflow.engine.scheduler import ActionScheduler, TargetMessage
from mailflow.providers.base import EmailMessage, EmailProvider
from mailflow.queue.base import JobQueue

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0


@dataclass
class RuleRunResult:
    """Outcome of applying one rule to one message."""

    rule_id: str
    rule_name: str
    executed_rule_id: str
    performed: list[str] = field(default_factory=list)
    scheduled: list[str] = field(default_factory=list)
    digest_jobs: list[str] = field(default_factory=list)


class RuleRunner(Protocol):
    async def run(
        self,
        provider: EmailProvider,
        message: EmailMessage,
        rules: list[Rule],
        account: Account,
    ) -> list[RuleRunResult]:
        """Apply matching rules to a message and return what was applied."""
        ...


def pattern_matches(pattern: str | None, value: str) -> bool:
    """Case-insensitive search. A missing pattern matches anything.

    Invalid or runaway patterns never match.
    """
    if not pattern:
        return True
    try:
        match = regex.search(pattern, value or "", flags=regex.IGNORECASE, timeout=REGEX_TIMEOUT)
        return match is not None
    except (regex.error, TimeoutError):
        logger.warning("rule_pattern_unusable", pattern=pattern)
        return False


def rule_matches(rule: Rule, message: EmailMessage) -> bool:
    """A rule needs at least one pattern, and every pattern it has must match."""
    if not rule.from_pattern and not rule.subject_pattern:
        return False
    return pattern_matches(rule.from_pattern, message.from_address) and pattern_matches(
        rule.subject_pattern, message.subject
    )


class StaticRuleRunner:
    """Applies the first rule whose stored patterns match the message."""

    def __init__(
        self,
        store: DatabaseStore,
        scheduler: ActionScheduler,
        queue: JobQueue,
        digest_concurrency: int = 3,
    ):
        self._store = store
        self._scheduler = scheduler
        self._queue = queue
        self._digest_concurrency = digest_concurrency

    async def run(
        self,
        provider: EmailProvider,
        message: EmailMessage,
        rules: list[Rule],
        account: Account,
    ) -> list[RuleRunResult]:
        rule = next((r for r in rules if r.enabled and rule_matches(r, message)), None)
        if rule is None:
            await self._store.create_executed_rule(
                account.id, message.id, message.thread_id, "SKIPPED", reason="No matching rule"
            )
            logger.debug("no_rule_matched", message_id=message.id)
            return []

        await self._scheduler.cancel_scheduled_actions(
            account.id, message.id, message.thread_id, reason="Superseded by new rule run"
        )

        executed = await self._store.create_executed_rule(
            account.id, message.id, message.thread_id, "APPLYING", rule_id=rule.id
        )
        result = RuleRunResult(rule_id=rule.id, rule_name=rule.name, executed_rule_id=executed.id)
        target = TargetMessage(message_id=message.id, thread_id=message.thread_id)

        try:
            for action in rule.actions:
                action_type = action.payload.action_type
                if (
                    action.delay_minutes
                    and action.delay_minutes > 0
                    and can_action_be_delayed(action_type)
                ):
                    continue

                if action_type == DIGEST:
                    action_id = await self._store.create_executed_action(executed.id, DIGEST)
                    job_id = await enqueue_digest_item(
                        self._queue,
                        account.id,
                        message,
                        action_id=action_id,
                        concurrency_limit=self._digest_concurrency,
                    )
                    if job_id:
                        result.digest_jobs.append(job_id)
                    continue

                details = await perform_action(provider, action.payload, message)
                await self._store.create_executed_action(executed.id, action_type, details)
                result.performed.append(action_type)

            scheduled = await self._scheduler.schedule_delayed_actions(
                executed.id, rule.actions, target, account.id
            )
            result.scheduled = [s.id for s in scheduled]
        except Exception as e:
            await self._store.update_executed_rule_status(executed.id, "ERROR", reason=str(e))
            raise

        await self._store.update_executed_rule_status(executed.id, "APPLIED")
        logger.info(
            "rule_applied",
            rule_name=rule.name,
            message_id=message.id,
            performed=result.performed,
            scheduled=len(result.scheduled),
        )
        return [result]
