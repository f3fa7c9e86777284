"""SQLite-backed durable job queue.

Jobs live in a `queue_jobs` table alongside the application tables, so a
job enqueued inside a handler survives a restart exactly like the rows it
refers to. Delivery is at-least-once: a job claimed by a consumer that
crashes is handed out again once its lease expires.

Semantics:
- not_before: a job is not claimable before this instant (delayed delivery)
- idempotency_key: while a job with the key is queued or running, further
  enqueues with the same key return that job's id instead of adding a row
- concurrency_key/limit: at most `limit` jobs sharing a key run at once

Usage:
    queue = SqliteJobQueue("data/mailflow.db")
    await queue.initialize()

    job_id = await queue.enqueue(
        "scheduled-action.execute",
        payload,
        not_before=scheduled_for,
        idempotency_key=f"scheduled-action-{action_id}",
    )
"""

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from mailflow.core.errors import QueueError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import parse_iso, to_iso, utc_now
from mailflow.queue.base import JobRequest, QueuedJob

logger = get_logger(__name__)

QUEUE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_jobs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    payload TEXT NOT NULL,                  -- JSON
    status TEXT NOT NULL DEFAULT 'queued',  -- 'queued', 'running', 'completed', 'failed', 'cancelled'
    not_before DATETIME NOT NULL,
    idempotency_key TEXT,
    concurrency_key TEXT,
    concurrency_limit INTEGER,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    locked_until DATETIME,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queue_jobs_due ON queue_jobs(status, not_before);
CREATE INDEX IF NOT EXISTS idx_queue_jobs_concurrency ON queue_jobs(concurrency_key, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_jobs_active_key
    ON queue_jobs(idempotency_key)
    WHERE idempotency_key IS NOT NULL AND status IN ('queued', 'running');
"""

# Candidates scanned per claimed slot, so jobs blocked by a concurrency
# limit do not starve claimable ones behind them
_CLAIM_SCAN_FACTOR = 5


class SqliteJobQueue:
    """Durable queue implementing the JobQueue protocol plus consumer operations."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create the queue table and indexes if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with self._db() as db:
                await db.executescript(QUEUE_SCHEMA_SQL)
                await db.commit()
            logger.info("job_queue_initialized", db_path=str(self.db_path))

        except aiosqlite.Error as e:
            logger.error("job_queue_init_failed", db_path=str(self.db_path), error=str(e))
            raise QueueError(f"Failed to initialize job queue at {self.db_path}: {e}") from e

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Producer Operations
    # =========================================================================

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        not_before: datetime | None = None,
        idempotency_key: str | None = None,
        concurrency_key: str | None = None,
        concurrency_limit: int | None = None,
    ) -> str:
        """Enqueue one job.

        Returns:
            The new job id, or the id of the active job holding idempotency_key

        Raises:
            QueueError: If the job cannot be stored
        """
        ids = await self.enqueue_many(
            [
                JobRequest(
                    name=name,
                    payload=payload,
                    not_before=not_before,
                    idempotency_key=idempotency_key,
                    concurrency_key=concurrency_key,
                    concurrency_limit=concurrency_limit,
                )
            ]
        )
        return ids[0]

    async def enqueue_many(self, requests: list[JobRequest]) -> list[str]:
        """Enqueue several jobs in one transaction.

        Either every request is stored (or deduplicated) or none is.

        Returns:
            Job ids in request order
        """
        return [job_id for job_id, _ in await self._enqueue(requests)]

    async def enqueue_unique(self, requests: list[JobRequest]) -> list[str]:
        """Enqueue several jobs in one transaction, reporting only new ones.

        Requests whose idempotency key is held by a queued or running job are
        dropped, so the result counts exactly the jobs that will run because
        of this call.

        Returns:
            Ids of the jobs created, in request order
        """
        return [job_id for job_id, created in await self._enqueue(requests) if created]

    async def _enqueue(self, requests: list[JobRequest]) -> list[tuple[str, bool]]:
        if not requests:
            return []

        now = utc_now()
        results: list[tuple[str, bool]] = []
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    for request in requests:
                        results.append(await self._insert(db, request, now))
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise

        except (aiosqlite.Error, TypeError, ValueError) as e:
            logger.error(
                "job_enqueue_failed",
                job_names=sorted({r.name for r in requests}),
                count=len(requests),
                error=str(e),
            )
            raise QueueError(f"Failed to enqueue {len(requests)} job(s): {e}") from e

        logger.debug(
            "jobs_enqueued",
            job_names=sorted({r.name for r in requests}),
            count=len(results),
            created=sum(1 for _, created in results if created),
        )
        return results

    async def _insert(
        self, db: aiosqlite.Connection, request: JobRequest, now: datetime
    ) -> tuple[str, bool]:
        if request.idempotency_key:
            cursor = await db.execute(
                """
                SELECT id FROM queue_jobs
                WHERE idempotency_key = ? AND status IN ('queued', 'running')
                """,
                (request.idempotency_key,),
            )
            existing = await cursor.fetchone()
            if existing:
                logger.debug(
                    "job_enqueue_deduplicated",
                    job_name=request.name,
                    idempotency_key=request.idempotency_key,
                    job_id=existing["id"],
                )
                return existing["id"], False

        job_id = str(uuid.uuid4())
        await db.execute(
            """
            INSERT INTO queue_jobs (
                id, name, payload, status, not_before, idempotency_key,
                concurrency_key, concurrency_limit, created_at, updated_at
            ) VALUES (?, ?, ?, 'queued', ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                request.name,
                json.dumps(request.payload),
                to_iso(request.not_before or now),
                request.idempotency_key,
                request.concurrency_key,
                request.concurrency_limit,
                to_iso(now),
                to_iso(now),
            ),
        )
        return job_id, True

    async def cancel(self, job_id: str) -> bool:
        """Cancel a queued job. Running and finished jobs are left alone."""
        return await self._transition(job_id, "queued", "cancelled")

    # =========================================================================
    # Consumer Operations
    # =========================================================================

    async def claim_due(self, limit: int, lease_seconds: int) -> list[QueuedJob]:
        """Claim up to `limit` due jobs for this consumer.

        Claimed jobs move to running, their attempt counter increments and
        they are leased for lease_seconds. Concurrency limits are counted
        against jobs already running under the same key.
        """
        now = utc_now()
        locked_until = now + timedelta(seconds=lease_seconds)
        claimed: list[QueuedJob] = []
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        """
                        SELECT concurrency_key, COUNT(*) AS n FROM queue_jobs
                        WHERE status = 'running' AND concurrency_key IS NOT NULL
                        GROUP BY concurrency_key
                        """
                    )
                    running = {row["concurrency_key"]: row["n"] for row in await cursor.fetchall()}

                    cursor = await db.execute(
                        """
                        SELECT * FROM queue_jobs
                        WHERE status = 'queued' AND not_before <= ?
                        ORDER BY not_before ASC, created_at ASC
                        LIMIT ?
                        """,
                        (to_iso(now), limit * _CLAIM_SCAN_FACTOR),
                    )
                    for row in await cursor.fetchall():
                        if len(claimed) >= limit:
                            break
                        job = self._row_to_job(row)
                        key = job.concurrency_key
                        if key and job.concurrency_limit:
                            if running.get(key, 0) >= job.concurrency_limit:
                                continue
                            running[key] = running.get(key, 0) + 1

                        await db.execute(
                            """
                            UPDATE queue_jobs
                            SET status = 'running', attempts = attempts + 1,
                                locked_until = ?, updated_at = ?
                            WHERE id = ? AND status = 'queued'
                            """,
                            (to_iso(locked_until), to_iso(now), job.id),
                        )
                        job.status = "running"
                        job.attempts += 1
                        job.locked_until = locked_until
                        claimed.append(job)

                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise

        except aiosqlite.Error as e:
            logger.error("job_claim_failed", error=str(e))
            raise QueueError(f"Failed to claim due jobs: {e}") from e

        return claimed

    async def complete(self, job_id: str) -> bool:
        """Mark a running job completed."""
        return await self._transition(job_id, "running", "completed")

    async def fail(self, job_id: str, error: str) -> bool:
        """Mark a running job permanently failed."""
        return await self._transition(job_id, "running", "failed", error=error)

    async def retry(self, job_id: str, delay_seconds: float, error: str) -> bool:
        """Put a running job back in the queue to run again after a delay."""
        return await self._transition(
            job_id,
            "running",
            "queued",
            error=error,
            not_before=utc_now() + timedelta(seconds=delay_seconds),
        )

    async def _transition(
        self,
        job_id: str,
        from_status: str,
        to_status: str,
        error: str | None = None,
        not_before: datetime | None = None,
    ) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE queue_jobs
                    SET status = ?,
                        last_error = COALESCE(?, last_error),
                        not_before = COALESCE(?, not_before),
                        locked_until = NULL,
                        updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        to_status,
                        error[:2000] if error else None,
                        to_iso(not_before),
                        to_iso(utc_now()),
                        job_id,
                        from_status,
                    ),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error(
                "job_transition_failed",
                job_id=job_id,
                to_status=to_status,
                error=str(e),
            )
            raise QueueError(f"Failed to move job {job_id} to {to_status}: {e}") from e

    async def release_expired_leases(self) -> int:
        """Return running jobs whose lease has expired to the queue.

        A consumer that died mid-job never completes or retries it; once the
        lease passes the job becomes claimable again.

        Returns:
            Number of jobs released
        """
        now = to_iso(utc_now())
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE queue_jobs
                    SET status = 'queued', locked_until = NULL, not_before = ?,
                        last_error = 'lease expired', updated_at = ?
                    WHERE status = 'running' AND locked_until < ?
                    """,
                    (now, now, now),
                )
                await db.commit()
                released = cursor.rowcount

        except aiosqlite.Error as e:
            logger.error("job_lease_release_failed", error=str(e))
            raise QueueError(f"Failed to release expired job leases: {e}") from e

        if released:
            logger.warning("job_leases_expired", count=released)
        return released

    # =========================================================================
    # Inspection
    # =========================================================================

    async def get_job(self, job_id: str) -> QueuedJob | None:
        """Get a job by id."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM queue_jobs WHERE id = ?", (job_id,))
                row = await cursor.fetchone()
                return self._row_to_job(row) if row else None

        except aiosqlite.Error as e:
            logger.error("job_get_failed", job_id=job_id, error=str(e))
            raise QueueError(f"Failed to get job {job_id}: {e}") from e

    async def list_jobs(self, name: str | None = None, status: str | None = None) -> list[QueuedJob]:
        """List jobs, optionally filtered by name and status, oldest first."""
        query = "SELECT * FROM queue_jobs WHERE 1 = 1"
        params: list[Any] = []
        if name:
            query += " AND name = ?"
            params.append(name)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at ASC"

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [self._row_to_job(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("job_list_failed", error=str(e))
            raise QueueError(f"Failed to list jobs: {e}") from e

    async def count_by_status(self) -> dict[str, int]:
        """Count jobs per status."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT status, COUNT(*) AS n FROM queue_jobs GROUP BY status"
                )
                return {row["status"]: row["n"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("job_count_failed", error=str(e))
            raise QueueError(f"Failed to count jobs: {e}") from e

    def _row_to_job(self, row: aiosqlite.Row) -> QueuedJob:
        return QueuedJob(
            id=row["id"],
            name=row["name"],
            payload=json.loads(row["payload"]),
            status=row["status"],
            not_before=parse_iso(row["not_before"]),
            attempts=row["attempts"],
            idempotency_key=row["idempotency_key"],
            concurrency_key=row["concurrency_key"],
            concurrency_limit=row["concurrency_limit"],
            last_error=row["last_error"],
            locked_until=parse_iso(row["locked_until"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
