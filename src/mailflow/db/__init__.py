"""Database layer for mailflow.

SQLite access through aiosqlite. Every state change the engines depend on
(scheduled action claims, bulk job counters, digest finalization) is a
conditional update so that concurrent workers cannot both win.

Usage:
    from mailflow.db import DatabaseStore

    store = DatabaseStore("data/mailflow.db")
    await store.initialize()

    account = await store.create_account("me@example.com", "outlook")
    job = await store.create_bulk_job(account.id, start_date)
"""

from mailflow.db.store import (
    Account,
    ActionPayload,
    BulkProcessJob,
    DatabaseStore,
    Digest,
    DigestItem,
    DigestItemWrite,
    DigestSchedule,
    ExecutedAction,
    ExecutedRule,
    Rule,
    RuleAction,
    ScheduledAction,
)

__all__ = [
    "DatabaseStore",
    # Accounts and rules
    "Account",
    "Rule",
    "RuleAction",
    "ExecutedRule",
    "ExecutedAction",
    # Scheduled actions
    "ActionPayload",
    "ScheduledAction",
    # Bulk processing
    "BulkProcessJob",
    # Digests
    "Digest",
    "DigestItem",
    "DigestItemWrite",
    "DigestSchedule",
]
