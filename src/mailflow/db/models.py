"""SQLite database schema and initialization for mailflow.

Tables:
- accounts: Connected mailboxes and their provider credentials
- rules / rule_actions: Stored automation rules and the actions they run
- executed_rules / executed_actions: Audit records of rule runs per message
- scheduled_actions: Deferred actions and their status state machine
- bulk_process_jobs: Bulk mailbox processing jobs and progress counters
- bulk_job_threads: Threads a bulk job fanned out and the outcome of each
- digests / digest_items / digest_schedules: Digest aggregation and delivery
- app_state: Key-value state persistence

The durable queue keeps its own table (see mailflow.queue.sqlite) and may
share the same database file.

Usage:
    from mailflow.db.models import init_database

    await init_database("data/mailflow.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailflow.core.errors import DatabaseError
from mailflow.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    provider TEXT NOT NULL,                 -- 'outlook'
    assistant_email TEXT,                   -- Plus-address the assistant replies from
    access_token TEXT,                      -- Refreshed outside this service
    created_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS rules (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    name TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    system_type TEXT,                       -- e.g. 'COLD_EMAIL'
    from_pattern TEXT,                      -- Regex matched against the sender
    subject_pattern TEXT,                   -- Regex matched against the subject
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rules_account ON rules(account_id, enabled);

CREATE TABLE IF NOT EXISTS rule_actions (
    id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL REFERENCES rules(id),
    action_type TEXT NOT NULL,
    label TEXT,
    subject TEXT,
    content TEXT,
    to_address TEXT,
    cc_address TEXT,
    bcc_address TEXT,
    url TEXT,
    folder_name TEXT,
    folder_id TEXT,
    delay_minutes INTEGER                   -- NULL or 0 runs immediately
);

CREATE TABLE IF NOT EXISTS executed_rules (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    rule_id TEXT REFERENCES rules(id),
    message_id TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    status TEXT NOT NULL,                   -- 'APPLYING', 'APPLIED', 'SKIPPED', 'ERROR'
    reason TEXT,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_executed_rules_message
    ON executed_rules(account_id, message_id);
CREATE INDEX IF NOT EXISTS idx_executed_rules_thread
    ON executed_rules(account_id, thread_id, status);

CREATE TABLE IF NOT EXISTS executed_actions (
    id TEXT PRIMARY KEY,
    executed_rule_id TEXT NOT NULL REFERENCES executed_rules(id),
    action_type TEXT NOT NULL,
    details_json TEXT,
    created_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduled_actions (
    id TEXT PRIMARY KEY,
    executed_rule_id TEXT NOT NULL REFERENCES executed_rules(id),
    account_id TEXT NOT NULL REFERENCES accounts(id),
    message_id TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    action_type TEXT NOT NULL,
    label TEXT,                             -- Payload snapshot, immutable after insert
    subject TEXT,
    content TEXT,
    to_address TEXT,
    cc_address TEXT,
    bcc_address TEXT,
    url TEXT,
    folder_name TEXT,
    folder_id TEXT,
    scheduled_for DATETIME NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING', -- 'PENDING', 'EXECUTING', 'COMPLETED', 'FAILED', 'CANCELLED'
    scheduling_status TEXT,                 -- 'PENDING', 'SCHEDULED', 'FAILED'
    scheduled_job_id TEXT,                  -- Queue job carrying this action
    executed_at DATETIME,
    executed_action_id TEXT,
    error_message TEXT,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scheduled_actions_due
    ON scheduled_actions(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_scheduled_actions_message
    ON scheduled_actions(account_id, message_id, status);

CREATE TABLE IF NOT EXISTS bulk_process_jobs (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    status TEXT NOT NULL DEFAULT 'PENDING', -- 'PENDING', 'RUNNING', 'COMPLETED', 'FAILED', 'CANCELLED'
    start_date DATETIME NOT NULL,
    end_date DATETIME,
    only_unread INTEGER NOT NULL DEFAULT 0,
    force_reprocess INTEGER NOT NULL DEFAULT 0,
    total_emails INTEGER NOT NULL DEFAULT 0,
    emails_queued INTEGER NOT NULL DEFAULT 0,
    processed INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    pages_fetched INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    created_at DATETIME NOT NULL,
    started_at DATETIME,
    fetch_completed_at DATETIME, -- set once the last page has been fanned out
    completed_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_bulk_jobs_account
    ON bulk_process_jobs(account_id, status);

-- At most one PENDING or RUNNING job per account
CREATE UNIQUE INDEX IF NOT EXISTS idx_bulk_jobs_one_active
    ON bulk_process_jobs(account_id)
    WHERE status IN ('PENDING', 'RUNNING');

CREATE TABLE IF NOT EXISTS bulk_job_threads (
    job_id TEXT NOT NULL REFERENCES bulk_process_jobs(id),
    thread_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    page INTEGER NOT NULL,                  -- page that fanned the thread out
    outcome TEXT,                           -- NULL until 'processed' or 'failed'
    created_at DATETIME NOT NULL,
    finished_at DATETIME,
    PRIMARY KEY (job_id, thread_id)
);

CREATE INDEX IF NOT EXISTS idx_bulk_job_threads_page
    ON bulk_job_threads(job_id, page);

CREATE TABLE IF NOT EXISTS digests (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    status TEXT NOT NULL DEFAULT 'PENDING', -- 'PENDING', 'PROCESSING', 'SENT', 'FAILED'
    sent_at DATETIME,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_digests_account_status
    ON digests(account_id, status, created_at);

CREATE TABLE IF NOT EXISTS digest_items (
    id TEXT PRIMARY KEY,
    digest_id TEXT NOT NULL REFERENCES digests(id),
    message_id TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    content TEXT NOT NULL,                  -- JSON summary, '[REDACTED]' after send
    action_id TEXT REFERENCES executed_actions(id),
    cold_email_id TEXT,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    UNIQUE (digest_id, message_id, thread_id)
);

CREATE TABLE IF NOT EXISTS digest_schedules (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL UNIQUE REFERENCES accounts(id),
    interval_days INTEGER NOT NULL DEFAULT 1,
    time_of_day TEXT NOT NULL DEFAULT '08:00', -- HH:MM, UTC
    last_occurrence_at DATETIME,
    next_occurrence_at DATETIME
);

CREATE TABLE IF NOT EXISTS app_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME NOT NULL
);
"""

REQUIRED_TABLES = [
    "accounts",
    "rules",
    "rule_actions",
    "executed_rules",
    "executed_actions",
    "scheduled_actions",
    "bulk_process_jobs",
    "bulk_job_threads",
    "digests",
    "digest_items",
    "digest_schedules",
    "app_state",
]


async def init_database(db_path: str | Path) -> None:
    """Initialize the database, creating tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If the schema cannot be applied
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Owner read/write only: digest items hold message summaries until sent
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning(
                    "database_tables_missing",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False

            return True

    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False
