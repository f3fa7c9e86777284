"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for mailflow. It uses aiosqlite for async access and returns
typed dataclasses.

Every status transition that concurrent job invocations can race on is a
single conditional UPDATE (``WHERE id = ? AND status = ?``) whose affected
row count tells the caller whether it won. No read-then-write sequences are
used for state machine transitions.

Usage:
    from mailflow.db.store import DatabaseStore

    store = DatabaseStore("data/mailflow.db")
    await store.initialize()

    action = await store.create_scheduled_action(...)
    if await store.mark_scheduled_action_executing(action.id):
        ...
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from mailflow.core.errors import DatabaseError, JobConflictError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import parse_iso, to_iso, utc_now
from mailflow.db.models import init_database

logger = get_logger(__name__)

# Fixed placeholder written over digest item content once the digest is sent
REDACTED_CONTENT = "[REDACTED]"

# Type aliases
ActionType = Literal[
    "ARCHIVE",
    "LABEL",
    "REPLY",
    "SEND_EMAIL",
    "FORWARD",
    "DRAFT_EMAIL",
    "MARK_SPAM",
    "MARK_READ",
    "MOVE_FOLDER",
    "DIGEST",
]
ScheduledActionStatus = Literal["PENDING", "EXECUTING", "COMPLETED", "FAILED", "CANCELLED"]
SchedulingStatus = Literal["PENDING", "SCHEDULED", "FAILED"]
ExecutedRuleStatus = Literal["APPLYING", "APPLIED", "SKIPPED", "ERROR"]
BulkJobStatus = Literal["PENDING", "RUNNING", "COMPLETED", "FAILED", "CANCELLED"]
DigestStatus = Literal["PENDING", "PROCESSING", "SENT", "FAILED"]
BulkThreadOutcome = Literal["processed", "failed"]

TERMINAL_ACTION_STATUSES = frozenset({"COMPLETED", "FAILED", "CANCELLED"})
TERMINAL_JOB_STATUSES = frozenset({"COMPLETED", "FAILED", "CANCELLED"})


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Account:
    """Connected mailbox."""

    id: str
    email: str
    provider: str
    assistant_email: str | None = None
    access_token: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ActionPayload:
    """Everything needed to perform one action, captured when it is planned."""

    action_type: str
    label: str | None = None
    subject: str | None = None
    content: str | None = None
    to_address: str | None = None
    cc_address: str | None = None
    bcc_address: str | None = None
    url: str | None = None
    folder_name: str | None = None
    folder_id: str | None = None


@dataclass
class RuleAction:
    """Action attached to a stored rule."""

    id: str
    rule_id: str
    payload: ActionPayload
    delay_minutes: int | None = None


@dataclass
class Rule:
    """Stored automation rule with its actions."""

    id: str
    account_id: str
    name: str
    enabled: bool = True
    system_type: str | None = None
    from_pattern: str | None = None
    subject_pattern: str | None = None
    created_at: datetime | None = None
    actions: list[RuleAction] = field(default_factory=list)


@dataclass
class ExecutedRule:
    """Record of a rule run against one message."""

    id: str
    account_id: str
    message_id: str
    thread_id: str
    status: ExecutedRuleStatus
    rule_id: str | None = None
    reason: str | None = None
    created_at: datetime | None = None


@dataclass
class ExecutedAction:
    """Record of an action performed for an executed rule."""

    id: str
    executed_rule_id: str
    action_type: str
    rule_name: str | None = None
    details_json: dict[str, Any] | None = None
    created_at: datetime | None = None


@dataclass
class ScheduledAction:
    """Deferred action row (see the status state machine in the executor)."""

    id: str
    executed_rule_id: str
    account_id: str
    message_id: str
    thread_id: str
    payload: ActionPayload
    scheduled_for: datetime
    status: ScheduledActionStatus = "PENDING"
    scheduling_status: SchedulingStatus | None = None
    scheduled_job_id: str | None = None
    executed_at: datetime | None = None
    executed_action_id: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def action_type(self) -> str:
        return self.payload.action_type


@dataclass
class BulkProcessJob:
    """Bulk mailbox processing job and its progress counters."""

    id: str
    account_id: str
    status: BulkJobStatus
    start_date: datetime
    end_date: datetime | None = None
    only_unread: bool = False
    force_reprocess: bool = False
    total_emails: int = 0
    emails_queued: int = 0
    processed: int = 0
    failed: int = 0
    pages_fetched: int = 0
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    fetch_completed_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass
class BulkJobThread:
    """One thread a bulk job fanned out to a worker."""

    job_id: str
    thread_id: str
    message_id: str
    page: int
    outcome: BulkThreadOutcome | None = None


@dataclass
class DigestItem:
    """One summarized message inside a digest."""

    id: str
    digest_id: str
    message_id: str
    thread_id: str
    content: str
    action_id: str | None = None
    cold_email_id: str | None = None
    rule_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Digest:
    """Aggregated digest for one account."""

    id: str
    account_id: str
    status: DigestStatus
    sent_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    items: list[DigestItem] = field(default_factory=list)


@dataclass(frozen=True)
class DigestItemWrite:
    """Outcome of adding an item to an account's pending digest."""

    digest_id: str
    item_id: str
    created: bool


@dataclass
class DigestSchedule:
    """Recurring delivery schedule for an account's digest."""

    id: str
    account_id: str
    interval_days: int = 1
    time_of_day: str = "08:00"
    last_occurrence_at: datetime | None = None
    next_occurrence_at: datetime | None = None


class DatabaseStore:
    """Database store for all mailflow data.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether the database has been initialized
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s so concurrent job invocations queue on the write lock
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        - cache_size: 64MB for better read performance
        - temp_store: MEMORY for faster temp operations
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")

            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA cache_size = -64000")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def create_account(
        self,
        email: str,
        provider: str,
        assistant_email: str | None = None,
        access_token: str | None = None,
        account_id: str | None = None,
    ) -> Account:
        """Create a connected mailbox record.

        Raises:
            DatabaseError: If the operation fails
        """
        account = Account(
            id=account_id or _new_id(),
            email=email,
            provider=provider,
            assistant_email=assistant_email,
            access_token=access_token,
            created_at=utc_now(),
        )
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO accounts (
                        id, email, provider, assistant_email, access_token, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        account.id,
                        account.email,
                        account.provider,
                        account.assistant_email,
                        account.access_token,
                        to_iso(account.created_at),
                    ),
                )
                await db.commit()
                return account

        except aiosqlite.Error as e:
            logger.error("account_create_failed", email=email, error=str(e))
            raise DatabaseError(f"Failed to create account for {email}: {e}") from e

    async def get_account(self, account_id: str) -> Account | None:
        """Get an account by ID, or None if it does not exist."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
                row = await cursor.fetchone()
                return self._row_to_account(row) if row else None

        except aiosqlite.Error as e:
            logger.error("account_get_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get account {account_id}: {e}") from e

    async def list_accounts(self) -> list[Account]:
        """List all accounts, oldest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM accounts ORDER BY created_at")
                rows = await cursor.fetchall()
                return [self._row_to_account(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("account_list_failed", error=str(e))
            raise DatabaseError(f"Failed to list accounts: {e}") from e

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            provider=row["provider"],
            assistant_email=row["assistant_email"],
            access_token=row["access_token"],
            created_at=parse_iso(row["created_at"]),
        )

    # =========================================================================
    # Rule Operations
    # =========================================================================

    async def create_rule(
        self,
        account_id: str,
        name: str,
        actions: list[tuple[ActionPayload, int | None]] | None = None,
        enabled: bool = True,
        system_type: str | None = None,
        from_pattern: str | None = None,
        subject_pattern: str | None = None,
    ) -> Rule:
        """Create a rule with its actions.

        Args:
            account_id: Owning account
            name: Human-readable rule name (shown in digests)
            actions: (payload, delay_minutes) pairs
            enabled: Whether the rule runs
            system_type: Built-in rule kind, e.g. 'COLD_EMAIL'
            from_pattern: Regex matched against the sender address
            subject_pattern: Regex matched against the subject

        Returns:
            The created Rule with its actions
        """
        rule = Rule(
            id=_new_id(),
            account_id=account_id,
            name=name,
            enabled=enabled,
            system_type=system_type,
            from_pattern=from_pattern,
            subject_pattern=subject_pattern,
            created_at=utc_now(),
        )
        for payload, delay in actions or []:
            rule.actions.append(
                RuleAction(id=_new_id(), rule_id=rule.id, payload=payload, delay_minutes=delay)
            )

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO rules (
                        id, account_id, name, enabled, system_type,
                        from_pattern, subject_pattern, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rule.id,
                        account_id,
                        name,
                        1 if enabled else 0,
                        system_type,
                        from_pattern,
                        subject_pattern,
                        to_iso(rule.created_at),
                    ),
                )
                await db.executemany(
                    """
                    INSERT INTO rule_actions (
                        id, rule_id, action_type, label, subject, content,
                        to_address, cc_address, bcc_address, url,
                        folder_name, folder_id, delay_minutes
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (a.id, rule.id, *self._payload_values(a.payload), a.delay_minutes)
                        for a in rule.actions
                    ],
                )
                await db.commit()
                return rule

        except aiosqlite.Error as e:
            logger.error("rule_create_failed", account_id=account_id, name=name, error=str(e))
            raise DatabaseError(f"Failed to create rule '{name}': {e}") from e

    async def get_enabled_rules(self, account_id: str) -> list[Rule]:
        """Get an account's enabled rules with their actions."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM rules WHERE account_id = ? AND enabled = 1 ORDER BY created_at",
                    (account_id,),
                )
                rules = [self._row_to_rule(row) for row in await cursor.fetchall()]
                if not rules:
                    return []

                by_id = {rule.id: rule for rule in rules}
                placeholders = ",".join("?" * len(by_id))
                cursor = await db.execute(
                    f"SELECT * FROM rule_actions WHERE rule_id IN ({placeholders})",
                    list(by_id),
                )
                for row in await cursor.fetchall():
                    by_id[row["rule_id"]].actions.append(
                        RuleAction(
                            id=row["id"],
                            rule_id=row["rule_id"],
                            payload=self._row_to_payload(row),
                            delay_minutes=row["delay_minutes"],
                        )
                    )
                return rules

        except aiosqlite.Error as e:
            logger.error("rules_get_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get rules for account {account_id}: {e}") from e

    def _row_to_rule(self, row: aiosqlite.Row) -> Rule:
        return Rule(
            id=row["id"],
            account_id=row["account_id"],
            name=row["name"],
            enabled=bool(row["enabled"]),
            system_type=row["system_type"],
            from_pattern=row["from_pattern"],
            subject_pattern=row["subject_pattern"],
            created_at=parse_iso(row["created_at"]),
        )

    @staticmethod
    def _payload_values(payload: ActionPayload) -> tuple[Any, ...]:
        return (
            payload.action_type,
            payload.label,
            payload.subject,
            payload.content,
            payload.to_address,
            payload.cc_address,
            payload.bcc_address,
            payload.url,
            payload.folder_name,
            payload.folder_id,
        )

    @staticmethod
    def _row_to_payload(row: aiosqlite.Row) -> ActionPayload:
        return ActionPayload(
            action_type=row["action_type"],
            label=row["label"],
            subject=row["subject"],
            content=row["content"],
            to_address=row["to_address"],
            cc_address=row["cc_address"],
            bcc_address=row["bcc_address"],
            url=row["url"],
            folder_name=row["folder_name"],
            folder_id=row["folder_id"],
        )

    # =========================================================================
    # Executed Rule / Action Operations
    # =========================================================================

    async def create_executed_rule(
        self,
        account_id: str,
        message_id: str,
        thread_id: str,
        status: ExecutedRuleStatus,
        rule_id: str | None = None,
        reason: str | None = None,
    ) -> ExecutedRule:
        """Record a rule run against a message."""
        executed = ExecutedRule(
            id=_new_id(),
            account_id=account_id,
            rule_id=rule_id,
            message_id=message_id,
            thread_id=thread_id,
            status=status,
            reason=reason,
            created_at=utc_now(),
        )
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO executed_rules (
                        id, account_id, rule_id, message_id, thread_id,
                        status, reason, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        executed.id,
                        account_id,
                        rule_id,
                        message_id,
                        thread_id,
                        status,
                        reason,
                        to_iso(executed.created_at),
                    ),
                )
                await db.commit()
                return executed

        except aiosqlite.Error as e:
            logger.error("executed_rule_create_failed", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to record rule execution for {message_id}: {e}") from e

    async def update_executed_rule_status(
        self, executed_rule_id: str, status: ExecutedRuleStatus, reason: str | None = None
    ) -> None:
        """Set the status of an executed rule."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE executed_rules SET status = ?, reason = COALESCE(?, reason) WHERE id = ?",
                    (status, reason, executed_rule_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error(
                "executed_rule_update_failed", executed_rule_id=executed_rule_id, error=str(e)
            )
            raise DatabaseError(f"Failed to update executed rule {executed_rule_id}: {e}") from e

    async def has_executed_rule(self, account_id: str, message_id: str) -> bool:
        """Check whether any rule has already been run for a message."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT 1 FROM executed_rules WHERE account_id = ? AND message_id = ? LIMIT 1",
                    (account_id, message_id),
                )
                return await cursor.fetchone() is not None

        except aiosqlite.Error as e:
            logger.error("executed_rule_check_failed", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to check executed rules for {message_id}: {e}") from e

    async def get_threads_with_applied_rules(
        self, account_id: str, thread_ids: list[str]
    ) -> set[str]:
        """Return the subset of thread ids that already have an APPLIED/APPLYING run."""
        if not thread_ids:
            return set()

        try:
            async with self._db() as db:
                placeholders = ",".join("?" * len(thread_ids))
                cursor = await db.execute(
                    f"""
                    SELECT DISTINCT thread_id FROM executed_rules
                    WHERE account_id = ?
                      AND thread_id IN ({placeholders})
                      AND status IN ('APPLIED', 'APPLYING')
                    """,
                    [account_id, *thread_ids],
                )
                return {row["thread_id"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("applied_threads_query_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to query applied threads: {e}") from e

    async def create_executed_action(
        self,
        executed_rule_id: str,
        action_type: str,
        details: dict[str, Any] | None = None,
    ) -> str:
        """Record a performed action and return its id."""
        action_id = _new_id()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO executed_actions (
                        id, executed_rule_id, action_type, details_json, created_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        action_id,
                        executed_rule_id,
                        action_type,
                        json.dumps(details) if details else None,
                        to_iso(utc_now()),
                    ),
                )
                await db.commit()
                return action_id

        except aiosqlite.Error as e:
            logger.error(
                "executed_action_create_failed",
                executed_rule_id=executed_rule_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to record executed action: {e}") from e

    async def get_executed_action(self, action_id: str) -> ExecutedAction | None:
        """Get an executed action with the name of the rule that produced it."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT ea.*, r.name AS rule_name
                    FROM executed_actions ea
                    JOIN executed_rules er ON er.id = ea.executed_rule_id
                    LEFT JOIN rules r ON r.id = er.rule_id
                    WHERE ea.id = ?
                    """,
                    (action_id,),
                )
                row = await cursor.fetchone()
                if not row:
                    return None

                details = None
                if row["details_json"]:
                    try:
                        details = json.loads(row["details_json"])
                    except json.JSONDecodeError:
                        logger.warning("executed_action_details_unreadable", action_id=action_id)

                return ExecutedAction(
                    id=row["id"],
                    executed_rule_id=row["executed_rule_id"],
                    action_type=row["action_type"],
                    rule_name=row["rule_name"],
                    details_json=details,
                    created_at=parse_iso(row["created_at"]),
                )

        except aiosqlite.Error as e:
            logger.error("executed_action_get_failed", action_id=action_id, error=str(e))
            raise DatabaseError(f"Failed to get executed action {action_id}: {e}") from e

    # =========================================================================
    # Scheduled Action Operations
    # =========================================================================

    async def create_scheduled_action(
        self,
        executed_rule_id: str,
        account_id: str,
        message_id: str,
        thread_id: str,
        payload: ActionPayload,
        scheduled_for: datetime,
    ) -> ScheduledAction:
        """Persist a PENDING scheduled action with its payload snapshot."""
        now = utc_now()
        action = ScheduledAction(
            id=_new_id(),
            executed_rule_id=executed_rule_id,
            account_id=account_id,
            message_id=message_id,
            thread_id=thread_id,
            payload=payload,
            scheduled_for=scheduled_for,
            status="PENDING",
            scheduling_status="PENDING",
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO scheduled_actions (
                        id, executed_rule_id, account_id, message_id, thread_id,
                        action_type, label, subject, content, to_address,
                        cc_address, bcc_address, url, folder_name, folder_id,
                        scheduled_for, status, scheduling_status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        action.id,
                        executed_rule_id,
                        account_id,
                        message_id,
                        thread_id,
                        *self._payload_values(payload),
                        to_iso(scheduled_for),
                        "PENDING",
                        "PENDING",
                        to_iso(now),
                        to_iso(now),
                    ),
                )
                await db.commit()
                return action

        except aiosqlite.Error as e:
            logger.error(
                "scheduled_action_create_failed",
                message_id=message_id,
                action_type=payload.action_type,
                error=str(e),
            )
            raise DatabaseError(f"Failed to create scheduled action: {e}") from e

    async def get_scheduled_action(self, action_id: str) -> ScheduledAction | None:
        """Get a scheduled action by ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM scheduled_actions WHERE id = ?", (action_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_scheduled_action(row) if row else None

        except aiosqlite.Error as e:
            logger.error("scheduled_action_get_failed", action_id=action_id, error=str(e))
            raise DatabaseError(f"Failed to get scheduled action {action_id}: {e}") from e

    async def _transition_scheduled_action(
        self,
        action_id: str,
        from_status: ScheduledActionStatus,
        to_status: ScheduledActionStatus,
        extra_sql: str = "",
        extra_params: tuple[Any, ...] = (),
    ) -> bool:
        """Conditionally move one action between statuses.

        Returns:
            True if this call performed the transition, False if the row was
            not in from_status (another caller won, or it was cancelled)
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    UPDATE scheduled_actions
                    SET status = ?, updated_at = ?{extra_sql}
                    WHERE id = ? AND status = ?
                    """,
                    (to_status, to_iso(utc_now()), *extra_params, action_id, from_status),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error(
                "scheduled_action_transition_failed",
                action_id=action_id,
                from_status=from_status,
                to_status=to_status,
                error=str(e),
            )
            raise DatabaseError(
                f"Failed to move scheduled action {action_id} {from_status}->{to_status}: {e}"
            ) from e

    async def mark_scheduled_action_executing(self, action_id: str) -> bool:
        """Claim an action for execution (PENDING -> EXECUTING)."""
        return await self._transition_scheduled_action(action_id, "PENDING", "EXECUTING")

    async def release_scheduled_action(self, action_id: str) -> bool:
        """Hand a claimed action back for a later attempt (EXECUTING -> PENDING)."""
        return await self._transition_scheduled_action(action_id, "EXECUTING", "PENDING")

    async def complete_scheduled_action(
        self, action_id: str, executed_action_id: str | None
    ) -> bool:
        """Record a successful execution (EXECUTING -> COMPLETED)."""
        return await self._transition_scheduled_action(
            action_id,
            "EXECUTING",
            "COMPLETED",
            ", executed_at = ?, executed_action_id = ?",
            (to_iso(utc_now()), executed_action_id),
        )

    async def fail_scheduled_action(self, action_id: str, error_message: str) -> bool:
        """Record a final failure (EXECUTING -> FAILED), keeping the error for operators."""
        return await self._transition_scheduled_action(
            action_id,
            "EXECUTING",
            "FAILED",
            ", executed_at = ?, error_message = ?",
            (to_iso(utc_now()), error_message[:2000]),
        )

    async def cancel_scheduled_action(self, action_id: str) -> bool:
        """Cancel a single action (PENDING -> CANCELLED)."""
        return await self._transition_scheduled_action(action_id, "PENDING", "CANCELLED")

    async def get_pending_scheduled_actions(
        self,
        account_id: str,
        message_id: str,
        thread_id: str | None = None,
        rule_id: str | None = None,
    ) -> list[ScheduledAction]:
        """Get PENDING actions for a message, optionally narrowed to a thread and rule."""
        query, params = self._pending_filter(account_id, message_id, thread_id, rule_id)
        try:
            async with self._db() as db:
                cursor = await db.execute(f"SELECT * FROM scheduled_actions WHERE {query}", params)
                rows = await cursor.fetchall()
                return [self._row_to_scheduled_action(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("pending_actions_query_failed", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to query pending actions for {message_id}: {e}") from e

    async def cancel_pending_scheduled_actions(
        self,
        account_id: str,
        message_id: str,
        thread_id: str | None = None,
        rule_id: str | None = None,
    ) -> int:
        """Cancel all PENDING actions matching the filter.

        Rows already EXECUTING or terminal are untouched.

        Returns:
            Number of actions cancelled
        """
        query, params = self._pending_filter(account_id, message_id, thread_id, rule_id)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"UPDATE scheduled_actions SET status = 'CANCELLED', updated_at = ? WHERE {query}",
                    [to_iso(utc_now()), *params],
                )
                await db.commit()
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error("pending_actions_cancel_failed", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to cancel actions for {message_id}: {e}") from e

    @staticmethod
    def _pending_filter(
        account_id: str,
        message_id: str,
        thread_id: str | None,
        rule_id: str | None,
    ) -> tuple[str, list[Any]]:
        query = "account_id = ? AND message_id = ? AND status = 'PENDING'"
        params: list[Any] = [account_id, message_id]
        if thread_id:
            query += " AND thread_id = ?"
            params.append(thread_id)
        if rule_id:
            query += " AND executed_rule_id IN (SELECT id FROM executed_rules WHERE rule_id = ?)"
            params.append(rule_id)
        return query, params

    async def set_scheduling_status(
        self,
        action_id: str,
        scheduling_status: SchedulingStatus,
        scheduled_job_id: str | None = None,
    ) -> None:
        """Record which queue entry carries an action and whether enqueueing worked."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE scheduled_actions
                    SET scheduling_status = ?,
                        scheduled_job_id = COALESCE(?, scheduled_job_id),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (scheduling_status, scheduled_job_id, to_iso(utc_now()), action_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("scheduling_status_update_failed", action_id=action_id, error=str(e))
            raise DatabaseError(f"Failed to update scheduling status for {action_id}: {e}") from e

    async def release_stale_executing_actions(self, claimed_before: datetime) -> list[str]:
        """Hand EXECUTING actions claimed before a cutoff back to PENDING.

        A row still EXECUTING past the executor's time limit lost its
        invocation (process killed, lease lost) and would otherwise never
        run again.

        Returns:
            Ids of the released actions
        """
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        """
                        SELECT id FROM scheduled_actions
                        WHERE status = 'EXECUTING' AND updated_at < ?
                        """,
                        (to_iso(claimed_before),),
                    )
                    ids = [row["id"] for row in await cursor.fetchall()]
                    if ids:
                        placeholders = ",".join("?" * len(ids))
                        await db.execute(
                            f"""
                            UPDATE scheduled_actions SET status = 'PENDING', updated_at = ?
                            WHERE id IN ({placeholders}) AND status = 'EXECUTING'
                            """,
                            [to_iso(utc_now()), *ids],
                        )
                    await db.commit()
                    return ids
                except BaseException:
                    await db.rollback()
                    raise

        except aiosqlite.Error as e:
            logger.error("stale_actions_release_failed", error=str(e))
            raise DatabaseError(f"Failed to release stale scheduled actions: {e}") from e

    async def get_overdue_scheduled_actions(
        self, now: datetime, limit: int = 100
    ) -> list[ScheduledAction]:
        """Get PENDING actions whose execution time has passed, oldest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM scheduled_actions
                    WHERE status = 'PENDING' AND scheduled_for < ?
                    ORDER BY scheduled_for ASC
                    LIMIT ?
                    """,
                    (to_iso(now), limit),
                )
                rows = await cursor.fetchall()
                return [self._row_to_scheduled_action(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("overdue_actions_query_failed", error=str(e))
            raise DatabaseError(f"Failed to query overdue scheduled actions: {e}") from e

    async def count_overdue_scheduled_actions(self, now: datetime) -> int:
        """Count PENDING actions whose execution time has passed."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) AS n FROM scheduled_actions WHERE status = 'PENDING' AND scheduled_for < ?",
                    (to_iso(now),),
                )
                row = await cursor.fetchone()
                return row["n"]

        except aiosqlite.Error as e:
            logger.error("overdue_actions_count_failed", error=str(e))
            raise DatabaseError(f"Failed to count overdue scheduled actions: {e}") from e

    async def count_scheduled_actions_by_status(self) -> dict[str, int]:
        """Count scheduled actions per status."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT status, COUNT(*) AS n FROM scheduled_actions GROUP BY status"
                )
                return {row["status"]: row["n"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("scheduled_action_counts_failed", error=str(e))
            raise DatabaseError(f"Failed to count scheduled actions: {e}") from e

    def _row_to_scheduled_action(self, row: aiosqlite.Row) -> ScheduledAction:
        return ScheduledAction(
            id=row["id"],
            executed_rule_id=row["executed_rule_id"],
            account_id=row["account_id"],
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            payload=self._row_to_payload(row),
            scheduled_for=parse_iso(row["scheduled_for"]),
            status=row["status"],
            scheduling_status=row["scheduling_status"],
            scheduled_job_id=row["scheduled_job_id"],
            executed_at=parse_iso(row["executed_at"]),
            executed_action_id=row["executed_action_id"],
            error_message=row["error_message"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

    # =========================================================================
    # Bulk Process Job Operations
    # =========================================================================

    async def create_bulk_job(
        self,
        account_id: str,
        start_date: datetime,
        end_date: datetime | None = None,
        only_unread: bool = False,
        force_reprocess: bool = False,
    ) -> BulkProcessJob:
        """Create a PENDING bulk processing job.

        Raises:
            JobConflictError: If the account already has a PENDING or RUNNING
                job (enforced by a partial unique index, so concurrent starts
                cannot both succeed)
        """
        job = BulkProcessJob(
            id=_new_id(),
            account_id=account_id,
            status="PENDING",
            start_date=start_date,
            end_date=end_date,
            only_unread=only_unread,
            force_reprocess=force_reprocess,
            created_at=utc_now(),
        )
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO bulk_process_jobs (
                        id, account_id, status, start_date, end_date,
                        only_unread, force_reprocess, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        account_id,
                        job.status,
                        to_iso(start_date),
                        to_iso(end_date),
                        1 if only_unread else 0,
                        1 if force_reprocess else 0,
                        to_iso(job.created_at),
                    ),
                )
                await db.commit()
                return job

        except aiosqlite.IntegrityError as e:
            active = await self.get_active_bulk_job(account_id)
            if active is None:
                logger.error("bulk_job_create_failed", account_id=account_id, error=str(e))
                raise DatabaseError(f"Failed to create bulk job: {e}") from e
            logger.warning("bulk_job_conflict", account_id=account_id, active_job_id=active.id)
            raise JobConflictError(
                "A bulk processing job is already running for this account. "
                "Wait for it to complete or cancel it.",
                active_job_id=active.id,
            ) from e

        except aiosqlite.Error as e:
            logger.error("bulk_job_create_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to create bulk job: {e}") from e

    async def get_bulk_job(self, job_id: str) -> BulkProcessJob | None:
        """Get a bulk job by ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM bulk_process_jobs WHERE id = ?", (job_id,))
                row = await cursor.fetchone()
                return self._row_to_bulk_job(row) if row else None

        except aiosqlite.Error as e:
            logger.error("bulk_job_get_failed", job_id=job_id, error=str(e))
            raise DatabaseError(f"Failed to get bulk job {job_id}: {e}") from e

    async def get_active_bulk_job(self, account_id: str) -> BulkProcessJob | None:
        """Get the newest PENDING or RUNNING job for an account."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM bulk_process_jobs
                    WHERE account_id = ? AND status IN ('PENDING', 'RUNNING')
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (account_id,),
                )
                row = await cursor.fetchone()
                return self._row_to_bulk_job(row) if row else None

        except aiosqlite.Error as e:
            logger.error("active_bulk_job_query_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get active bulk job: {e}") from e

    async def update_bulk_job_status(
        self, job_id: str, status: BulkJobStatus, error: str | None = None
    ) -> bool:
        """Move a non-terminal job to a new status.

        RUNNING stamps started_at; terminal statuses stamp completed_at.
        Terminal jobs are never moved again.

        Returns:
            True if the job was updated
        """
        now = to_iso(utc_now())
        started_at = now if status == "RUNNING" else None
        completed_at = now if status in TERMINAL_JOB_STATUSES else None
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE bulk_process_jobs
                    SET status = ?,
                        error = COALESCE(?, error),
                        started_at = COALESCE(started_at, ?),
                        completed_at = COALESCE(?, completed_at)
                    WHERE id = ? AND status NOT IN ('COMPLETED', 'FAILED', 'CANCELLED')
                    """,
                    (status, error, started_at, completed_at, job_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("bulk_job_status_update_failed", job_id=job_id, error=str(e))
            raise DatabaseError(f"Failed to update bulk job {job_id}: {e}") from e

    async def record_bulk_page(
        self,
        job_id: str,
        page_count: int,
        total_emails: int,
        threads: list[tuple[str, str]],
    ) -> bool:
        """Count one fetched page and register its threads, exactly once.

        In one transaction: move pages_fetched forward if `page_count` is the
        next page the job expects, register every (thread_id, message_id) the
        page fans out, and add the page to total_emails and emails_queued. A
        thread already registered by an earlier page of the same job is not
        registered or counted again.

        Runs before any worker job is enqueued, so every worker belongs to a
        counted thread. A retried fetcher invocation never double counts.

        Returns:
            True if this call recorded the page
        """
        now = to_iso(utc_now())
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        """
                        UPDATE bulk_process_jobs
                        SET pages_fetched = pages_fetched + 1
                        WHERE id = ? AND pages_fetched = ?
                        """,
                        (job_id, page_count),
                    )
                    if cursor.rowcount == 0:
                        await db.rollback()
                        return False

                    await db.executemany(
                        """
                        INSERT OR IGNORE INTO bulk_job_threads (
                            job_id, thread_id, message_id, page, created_at
                        ) VALUES (?, ?, ?, ?, ?)
                        """,
                        [
                            (job_id, thread_id, message_id, page_count, now)
                            for thread_id, message_id in threads
                        ],
                    )
                    cursor = await db.execute(
                        "SELECT COUNT(*) AS n FROM bulk_job_threads WHERE job_id = ? AND page = ?",
                        (job_id, page_count),
                    )
                    queued = (await cursor.fetchone())["n"]
                    await db.execute(
                        """
                        UPDATE bulk_process_jobs
                        SET total_emails = total_emails + ?,
                            emails_queued = emails_queued + ?
                        WHERE id = ?
                        """,
                        (total_emails, queued, job_id),
                    )
                    await db.commit()
                    return True
                except BaseException:
                    await db.rollback()
                    raise

        except aiosqlite.Error as e:
            logger.error("bulk_page_record_failed", job_id=job_id, page=page_count, error=str(e))
            raise DatabaseError(f"Failed to record page for bulk job {job_id}: {e}") from e

    async def get_unfinished_bulk_threads(self, job_id: str, page: int) -> list[BulkJobThread]:
        """Threads a page registered that have no outcome yet."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM bulk_job_threads
                    WHERE job_id = ? AND page = ? AND outcome IS NULL
                    ORDER BY rowid ASC
                    """,
                    (job_id, page),
                )
                return [
                    BulkJobThread(
                        job_id=row["job_id"],
                        thread_id=row["thread_id"],
                        message_id=row["message_id"],
                        page=row["page"],
                        outcome=row["outcome"],
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("bulk_threads_query_failed", job_id=job_id, page=page, error=str(e))
            raise DatabaseError(f"Failed to query threads for bulk job {job_id}: {e}") from e

    async def record_bulk_thread_outcome(
        self, job_id: str, thread_id: str, outcome: BulkThreadOutcome
    ) -> bool:
        """Record a thread's outcome and count it against the job, once.

        The counter moves in the same transaction as the thread row, and only
        if the thread had no outcome yet, so duplicate deliveries of a worker
        never inflate processed or failed.

        Returns:
            True if this call recorded the outcome
        """
        column = "processed" if outcome == "processed" else "failed"
        now = to_iso(utc_now())
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        """
                        UPDATE bulk_job_threads SET outcome = ?, finished_at = ?
                        WHERE job_id = ? AND thread_id = ? AND outcome IS NULL
                        """,
                        (outcome, now, job_id, thread_id),
                    )
                    recorded = cursor.rowcount > 0
                    if recorded:
                        await db.execute(
                            f"UPDATE bulk_process_jobs SET {column} = {column} + 1 WHERE id = ?",
                            (job_id,),
                        )
                    await db.commit()
                    return recorded
                except BaseException:
                    await db.rollback()
                    raise

        except aiosqlite.Error as e:
            logger.error(
                "bulk_thread_outcome_failed", job_id=job_id, thread_id=thread_id, error=str(e)
            )
            raise DatabaseError(f"Failed to record outcome for bulk job {job_id}: {e}") from e

    async def is_bulk_job_cancelled(self, job_id: str) -> bool:
        """Check the cooperative cancellation flag for a job."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT status FROM bulk_process_jobs WHERE id = ?", (job_id,)
                )
                row = await cursor.fetchone()
                return row is not None and row["status"] == "CANCELLED"

        except aiosqlite.Error as e:
            logger.error("bulk_job_cancel_check_failed", job_id=job_id, error=str(e))
            raise DatabaseError(f"Failed to check cancellation for bulk job {job_id}: {e}") from e

    async def mark_bulk_job_fetch_complete(self, job_id: str) -> bool:
        """Record that the fetcher has fanned out its last page.

        Returns:
            True if the marker was set by this call
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE bulk_process_jobs
                    SET fetch_completed_at = ?
                    WHERE id = ? AND fetch_completed_at IS NULL
                    """,
                    (to_iso(utc_now()), job_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("bulk_job_fetch_complete_failed", job_id=job_id, error=str(e))
            raise DatabaseError(f"Failed to mark fetch complete for bulk job {job_id}: {e}") from e

    async def mark_bulk_job_complete_if_done(self, job_id: str) -> bool:
        """Complete a RUNNING job once every queued message has an outcome.

        Only jobs whose fetcher has finished paging qualify, so workers
        draining an early page cannot complete a job with pages still unread.

        Returns:
            True if this call completed the job
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE bulk_process_jobs
                    SET status = 'COMPLETED', completed_at = ?
                    WHERE id = ?
                      AND status = 'RUNNING'
                      AND fetch_completed_at IS NOT NULL
                      AND emails_queued > 0
                      AND processed + failed >= emails_queued
                    """,
                    (to_iso(utc_now()), job_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("bulk_job_completion_check_failed", job_id=job_id, error=str(e))
            raise DatabaseError(f"Failed to check completion for bulk job {job_id}: {e}") from e

    def _row_to_bulk_job(self, row: aiosqlite.Row) -> BulkProcessJob:
        return BulkProcessJob(
            id=row["id"],
            account_id=row["account_id"],
            status=row["status"],
            start_date=parse_iso(row["start_date"]),
            end_date=parse_iso(row["end_date"]),
            only_unread=bool(row["only_unread"]),
            force_reprocess=bool(row["force_reprocess"]),
            total_emails=row["total_emails"],
            emails_queued=row["emails_queued"],
            processed=row["processed"],
            failed=row["failed"],
            pages_fetched=row["pages_fetched"],
            error=row["error"],
            created_at=parse_iso(row["created_at"]),
            started_at=parse_iso(row["started_at"]),
            fetch_completed_at=parse_iso(row["fetch_completed_at"]),
            completed_at=parse_iso(row["completed_at"]),
        )

    # =========================================================================
    # Digest Operations
    # =========================================================================

    async def add_digest_item(
        self,
        account_id: str,
        message_id: str,
        thread_id: str,
        content: str,
        action_id: str | None = None,
        cold_email_id: str | None = None,
    ) -> DigestItemWrite:
        """Append or update an item in the account's pending digest.

        Inside one write transaction: take the oldest PENDING digest (or
        create one), then update the item for the same message/thread or
        insert a new one. Repeated calls for the same message converge on a
        single item.
        """
        now = to_iso(utc_now())
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        """
                        SELECT id FROM digests
                        WHERE account_id = ? AND status = 'PENDING'
                        ORDER BY created_at ASC
                        LIMIT 1
                        """,
                        (account_id,),
                    )
                    row = await cursor.fetchone()
                    if row:
                        digest_id = row["id"]
                    else:
                        digest_id = _new_id()
                        await db.execute(
                            """
                            INSERT INTO digests (id, account_id, status, created_at, updated_at)
                            VALUES (?, ?, 'PENDING', ?, ?)
                            """,
                            (digest_id, account_id, now, now),
                        )

                    cursor = await db.execute(
                        """
                        SELECT id FROM digest_items
                        WHERE digest_id = ? AND message_id = ? AND thread_id = ?
                        """,
                        (digest_id, message_id, thread_id),
                    )
                    existing = await cursor.fetchone()
                    if existing:
                        item_id = existing["id"]
                        await db.execute(
                            """
                            UPDATE digest_items
                            SET content = ?,
                                action_id = COALESCE(?, action_id),
                                cold_email_id = COALESCE(?, cold_email_id),
                                updated_at = ?
                            WHERE id = ?
                            """,
                            (content, action_id, cold_email_id, now, item_id),
                        )
                    else:
                        item_id = _new_id()
                        await db.execute(
                            """
                            INSERT INTO digest_items (
                                id, digest_id, message_id, thread_id, content,
                                action_id, cold_email_id, created_at, updated_at
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            (
                                item_id,
                                digest_id,
                                message_id,
                                thread_id,
                                content,
                                action_id,
                                cold_email_id,
                                now,
                                now,
                            ),
                        )

                    await db.execute(
                        "UPDATE digests SET updated_at = ? WHERE id = ?", (now, digest_id)
                    )
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise

                return DigestItemWrite(digest_id=digest_id, item_id=item_id, created=not existing)

        except aiosqlite.Error as e:
            logger.error("digest_item_write_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to add digest item for {message_id}: {e}") from e

    async def claim_pending_digests(self, account_id: str) -> list[Digest]:
        """Move every PENDING digest of an account to PROCESSING and return them.

        Only digests this call moved are returned, with their items and the
        rule name behind each item, so two concurrent senders never pick the
        same rows.
        """
        now = to_iso(utc_now())
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        """
                        SELECT * FROM digests
                        WHERE account_id = ? AND status = 'PENDING'
                        ORDER BY created_at ASC
                        """,
                        (account_id,),
                    )
                    digests = [self._row_to_digest(row) for row in await cursor.fetchall()]
                    if digests:
                        placeholders = ",".join("?" * len(digests))
                        await db.execute(
                            f"""
                            UPDATE digests SET status = 'PROCESSING', updated_at = ?
                            WHERE id IN ({placeholders}) AND status = 'PENDING'
                            """,
                            [now, *(d.id for d in digests)],
                        )
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise

                for digest in digests:
                    digest.status = "PROCESSING"
                    digest.items = await self._fetch_digest_items(db, digest.id)
                return digests

        except aiosqlite.Error as e:
            logger.error("digest_claim_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to claim pending digests: {e}") from e

    async def _fetch_digest_items(
        self, db: aiosqlite.Connection, digest_id: str
    ) -> list[DigestItem]:
        cursor = await db.execute(
            """
            SELECT di.*, r.name AS rule_name
            FROM digest_items di
            LEFT JOIN executed_actions ea ON ea.id = di.action_id
            LEFT JOIN executed_rules er ON er.id = ea.executed_rule_id
            LEFT JOIN rules r ON r.id = er.rule_id
            WHERE di.digest_id = ?
            ORDER BY di.created_at ASC
            """,
            (digest_id,),
        )
        return [self._row_to_digest_item(row) for row in await cursor.fetchall()]

    async def get_digest(self, digest_id: str) -> Digest | None:
        """Get a digest with its items."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM digests WHERE id = ?", (digest_id,))
                row = await cursor.fetchone()
                if not row:
                    return None
                digest = self._row_to_digest(row)
                digest.items = await self._fetch_digest_items(db, digest_id)
                return digest

        except aiosqlite.Error as e:
            logger.error("digest_get_failed", digest_id=digest_id, error=str(e))
            raise DatabaseError(f"Failed to get digest {digest_id}: {e}") from e

    async def get_digests_by_status(
        self, account_id: str, status: DigestStatus
    ) -> list[Digest]:
        """Get an account's digests in one status, oldest first, without items."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM digests WHERE account_id = ? AND status = ?
                    ORDER BY created_at ASC
                    """,
                    (account_id, status),
                )
                return [self._row_to_digest(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("digest_status_query_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to query digests: {e}") from e

    async def finalize_sent_digests(
        self,
        digest_ids: list[str],
        sent_at: datetime,
        schedule_id: str | None = None,
        next_occurrence_at: datetime | None = None,
    ) -> None:
        """Record a delivered digest in a single transaction.

        Updates the schedule's last/next occurrence, marks the digests SENT
        and overwrites their items' content with REDACTED_CONTENT. Either
        all three happen or none do.

        Raises:
            DatabaseError: If the transaction fails (it is rolled back)
        """
        sent_iso = to_iso(sent_at)
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    if schedule_id:
                        await db.execute(
                            """
                            UPDATE digest_schedules
                            SET last_occurrence_at = ?, next_occurrence_at = ?
                            WHERE id = ?
                            """,
                            (sent_iso, to_iso(next_occurrence_at), schedule_id),
                        )
                    if digest_ids:
                        placeholders = ",".join("?" * len(digest_ids))
                        await db.execute(
                            f"""
                            UPDATE digests SET status = 'SENT', sent_at = ?, updated_at = ?
                            WHERE id IN ({placeholders})
                            """,
                            [sent_iso, sent_iso, *digest_ids],
                        )
                        await db.execute(
                            f"""
                            UPDATE digest_items SET content = ?, updated_at = ?
                            WHERE digest_id IN ({placeholders})
                            """,
                            [REDACTED_CONTENT, sent_iso, *digest_ids],
                        )
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise

        except aiosqlite.Error as e:
            logger.error("digest_finalize_failed", digest_ids=digest_ids, error=str(e))
            raise DatabaseError(f"Failed to record sent digests: {e}") from e

    async def mark_digests_failed(self, digest_ids: list[str]) -> None:
        """Mark digests FAILED; item content is left intact for audit and requeue."""
        if not digest_ids:
            return
        try:
            async with self._db() as db:
                placeholders = ",".join("?" * len(digest_ids))
                await db.execute(
                    f"UPDATE digests SET status = 'FAILED', updated_at = ? WHERE id IN ({placeholders})",
                    [to_iso(utc_now()), *digest_ids],
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("digest_mark_failed_failed", digest_ids=digest_ids, error=str(e))
            raise DatabaseError(f"Failed to mark digests failed: {e}") from e

    def _row_to_digest(self, row: aiosqlite.Row) -> Digest:
        return Digest(
            id=row["id"],
            account_id=row["account_id"],
            status=row["status"],
            sent_at=parse_iso(row["sent_at"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

    def _row_to_digest_item(self, row: aiosqlite.Row) -> DigestItem:
        keys = row.keys()
        return DigestItem(
            id=row["id"],
            digest_id=row["digest_id"],
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            content=row["content"],
            action_id=row["action_id"],
            cold_email_id=row["cold_email_id"],
            rule_name=row["rule_name"] if "rule_name" in keys else None,
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

    # =========================================================================
    # Digest Schedule Operations
    # =========================================================================

    async def get_digest_schedule(self, account_id: str) -> DigestSchedule | None:
        """Get an account's digest schedule, if one is configured."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM digest_schedules WHERE account_id = ?", (account_id,)
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return DigestSchedule(
                    id=row["id"],
                    account_id=row["account_id"],
                    interval_days=row["interval_days"],
                    time_of_day=row["time_of_day"],
                    last_occurrence_at=parse_iso(row["last_occurrence_at"]),
                    next_occurrence_at=parse_iso(row["next_occurrence_at"]),
                )

        except aiosqlite.Error as e:
            logger.error("digest_schedule_get_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get digest schedule: {e}") from e

    async def upsert_digest_schedule(
        self,
        account_id: str,
        interval_days: int = 1,
        time_of_day: str = "08:00",
        next_occurrence_at: datetime | None = None,
    ) -> DigestSchedule:
        """Create or replace an account's digest schedule."""
        schedule_id = _new_id()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO digest_schedules (
                        id, account_id, interval_days, time_of_day, next_occurrence_at
                    ) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(account_id) DO UPDATE SET
                        interval_days = excluded.interval_days,
                        time_of_day = excluded.time_of_day,
                        next_occurrence_at = excluded.next_occurrence_at
                    """,
                    (
                        schedule_id,
                        account_id,
                        interval_days,
                        time_of_day,
                        to_iso(next_occurrence_at),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("digest_schedule_upsert_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to save digest schedule: {e}") from e

        schedule = await self.get_digest_schedule(account_id)
        assert schedule is not None
        return schedule

    async def advance_digest_schedule(
        self, schedule_id: str, expected_next: datetime | None, next_occurrence_at: datetime
    ) -> bool:
        """Move a schedule's next occurrence forward if nobody else has.

        Returns:
            True if this call advanced the schedule
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE digest_schedules SET next_occurrence_at = ?
                    WHERE id = ? AND next_occurrence_at IS ?
                    """,
                    (to_iso(next_occurrence_at), schedule_id, to_iso(expected_next)),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("digest_schedule_advance_failed", schedule_id=schedule_id, error=str(e))
            raise DatabaseError(f"Failed to advance digest schedule {schedule_id}: {e}") from e

    async def get_due_digest_schedules(self, now: datetime) -> list[DigestSchedule]:
        """Schedules whose next occurrence is at or before `now`."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM digest_schedules
                    WHERE next_occurrence_at IS NOT NULL AND next_occurrence_at <= ?
                    ORDER BY next_occurrence_at ASC
                    """,
                    (to_iso(now),),
                )
                return [
                    DigestSchedule(
                        id=row["id"],
                        account_id=row["account_id"],
                        interval_days=row["interval_days"],
                        time_of_day=row["time_of_day"],
                        last_occurrence_at=parse_iso(row["last_occurrence_at"]),
                        next_occurrence_at=parse_iso(row["next_occurrence_at"]),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("due_digest_schedules_query_failed", error=str(e))
            raise DatabaseError(f"Failed to query due digest schedules: {e}") from e

    # =========================================================================
    # App State Operations
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        """Get a state value, or None if not set."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM app_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None

        except aiosqlite.Error as e:
            logger.error("state_get_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        """Set a state value."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO app_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, to_iso(utc_now())),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("state_set_failed", key=key, error=str(e))
            raise DatabaseError(f"Failed to set state: {e}") from e
