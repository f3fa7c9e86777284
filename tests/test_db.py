"""Tests for the database layer.

Covers schema initialization and the conditional updates the engines rely on:
- scheduled action status transitions
- bulk job page recording and completion
- digest item upserts, claims, finalization and failure
- digest schedule advancement
"""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest

from mailflow.core.errors import DatabaseError, JobConflictError
from mailflow.db.models import REQUIRED_TABLES, init_database, verify_schema
from mailflow.db.store import REDACTED_CONTENT, Account, ActionPayload, DatabaseStore


async def _seed_action(
    store: DatabaseStore,
    account: Account,
    scheduled_for: datetime | None = None,
    message_id: str = "msg-1",
):
    executed = await store.create_executed_rule(account.id, message_id, "thread-1", "APPLIED")
    return await store.create_scheduled_action(
        executed_rule_id=executed.id,
        account_id=account.id,
        message_id=message_id,
        thread_id="thread-1",
        payload=ActionPayload(action_type="LABEL", label="Later"),
        scheduled_for=scheduled_for or datetime.now(UTC) + timedelta(minutes=30),
    )


class TestDatabaseInitialization:
    """Tests for database initialization."""

    @pytest.mark.asyncio
    async def test_init_database_creates_all_tables(self, data_dir: Path) -> None:
        db_path = data_dir / "fresh.db"
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in await cursor.fetchall()}

        assert set(REQUIRED_TABLES).issubset(tables)

    @pytest.mark.asyncio
    async def test_init_database_enables_wal_mode(self, data_dir: Path) -> None:
        db_path = data_dir / "fresh.db"
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    @pytest.mark.asyncio
    async def test_init_is_idempotent(self, store: DatabaseStore) -> None:
        await store.initialize()
        assert await verify_schema(store.db_path)

    @pytest.mark.asyncio
    async def test_verify_schema_false_for_foreign_db(self, data_dir: Path) -> None:
        db_path = data_dir / "other.db"
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE dummy (id INTEGER)")
            await db.commit()

        assert not await verify_schema(db_path)


class TestScheduledActionTransitions:
    """PENDING -> EXECUTING -> COMPLETED | FAILED, PENDING -> CANCELLED."""

    @pytest.mark.asyncio
    async def test_payload_snapshot_round_trips(self, store: DatabaseStore, account) -> None:
        action = await _seed_action(store, account)
        loaded = await store.get_scheduled_action(action.id)

        assert loaded.status == "PENDING"
        assert loaded.payload == ActionPayload(action_type="LABEL", label="Later")
        assert loaded.scheduled_for == action.scheduled_for

    @pytest.mark.asyncio
    async def test_claim_succeeds_once(self, store: DatabaseStore, account) -> None:
        action = await _seed_action(store, account)

        assert await store.mark_scheduled_action_executing(action.id)
        assert not await store.mark_scheduled_action_executing(action.id)

    @pytest.mark.asyncio
    async def test_cancel_only_affects_pending(self, store: DatabaseStore, account) -> None:
        action = await _seed_action(store, account)
        await store.mark_scheduled_action_executing(action.id)

        assert not await store.cancel_scheduled_action(action.id)
        assert (await store.get_scheduled_action(action.id)).status == "EXECUTING"

    @pytest.mark.asyncio
    async def test_release_returns_to_pending(self, store: DatabaseStore, account) -> None:
        action = await _seed_action(store, account)
        await store.mark_scheduled_action_executing(action.id)

        assert await store.release_scheduled_action(action.id)
        assert (await store.get_scheduled_action(action.id)).status == "PENDING"

    @pytest.mark.asyncio
    async def test_fail_keeps_error_message(self, store: DatabaseStore, account) -> None:
        action = await _seed_action(store, account)
        await store.mark_scheduled_action_executing(action.id)

        assert await store.fail_scheduled_action(action.id, "Graph API error (400)")
        loaded = await store.get_scheduled_action(action.id)
        assert loaded.status == "FAILED"
        assert loaded.error_message == "Graph API error (400)"
        assert loaded.executed_at is not None

    @pytest.mark.asyncio
    async def test_overdue_query_is_oldest_first(self, store: DatabaseStore, account) -> None:
        now = datetime.now(UTC)
        newer = await _seed_action(store, account, now - timedelta(minutes=1), "msg-new")
        older = await _seed_action(store, account, now - timedelta(hours=1), "msg-old")
        await _seed_action(store, account, now + timedelta(hours=1), "msg-future")

        overdue = await store.get_overdue_scheduled_actions(now)

        assert [a.id for a in overdue] == [older.id, newer.id]
        assert await store.count_overdue_scheduled_actions(now) == 2

    @pytest.mark.asyncio
    async def test_cancel_pending_for_message(self, store: DatabaseStore, account) -> None:
        first = await _seed_action(store, account)
        second = await _seed_action(store, account)
        await store.mark_scheduled_action_executing(second.id)

        cancelled = await store.cancel_pending_scheduled_actions(account.id, "msg-1")

        assert cancelled == 1
        assert (await store.get_scheduled_action(first.id)).status == "CANCELLED"
        assert (await store.get_scheduled_action(second.id)).status == "EXECUTING"


class TestBulkJobOperations:
    """Page recording and completion rules for bulk jobs."""

    @pytest.mark.asyncio
    async def test_page_is_recorded_once(self, store: DatabaseStore, account) -> None:
        job = await store.create_bulk_job(account.id, datetime(2026, 1, 1, tzinfo=UTC))
        threads = [("t1", "m1"), ("t2", "m2")]

        assert await store.record_bulk_page(job.id, 0, total_emails=25, threads=threads)
        assert not await store.record_bulk_page(job.id, 0, total_emails=25, threads=threads)

        loaded = await store.get_bulk_job(job.id)
        assert loaded.pages_fetched == 1
        assert loaded.total_emails == 25
        assert loaded.emails_queued == 2
        unfinished = await store.get_unfinished_bulk_threads(job.id, 0)
        assert [(t.thread_id, t.message_id) for t in unfinished] == threads

    @pytest.mark.asyncio
    async def test_thread_from_earlier_page_not_counted_again(
        self, store: DatabaseStore, account
    ) -> None:
        job = await store.create_bulk_job(account.id, datetime(2026, 1, 1, tzinfo=UTC))
        await store.record_bulk_page(job.id, 0, 1, [("t1", "m1")])

        assert await store.record_bulk_page(job.id, 1, 2, [("t1", "m0"), ("t2", "m2")])

        loaded = await store.get_bulk_job(job.id)
        assert loaded.emails_queued == 2
        assert [t.thread_id for t in await store.get_unfinished_bulk_threads(job.id, 1)] == ["t2"]

    @pytest.mark.asyncio
    async def test_thread_outcome_is_counted_once(self, store: DatabaseStore, account) -> None:
        job = await store.create_bulk_job(account.id, datetime(2026, 1, 1, tzinfo=UTC))
        await store.record_bulk_page(job.id, 0, 2, [("t1", "m1"), ("t2", "m2")])

        assert await store.record_bulk_thread_outcome(job.id, "t1", "processed")
        assert not await store.record_bulk_thread_outcome(job.id, "t1", "failed")
        assert await store.record_bulk_thread_outcome(job.id, "t2", "failed")
        assert not await store.record_bulk_thread_outcome(job.id, "unknown", "processed")

        loaded = await store.get_bulk_job(job.id)
        assert (loaded.processed, loaded.failed) == (1, 1)
        assert await store.get_unfinished_bulk_threads(job.id, 0) == []

    @pytest.mark.asyncio
    async def test_not_complete_until_fetching_done(self, store: DatabaseStore, account) -> None:
        job = await store.create_bulk_job(account.id, datetime(2026, 1, 1, tzinfo=UTC))
        await store.update_bulk_job_status(job.id, "RUNNING")
        await store.record_bulk_page(job.id, 0, 2, [("t1", "m1"), ("t2", "m2")])
        await store.record_bulk_thread_outcome(job.id, "t1", "processed")
        await store.record_bulk_thread_outcome(job.id, "t2", "failed")

        assert not await store.mark_bulk_job_complete_if_done(job.id)

        await store.mark_bulk_job_fetch_complete(job.id)
        assert await store.mark_bulk_job_complete_if_done(job.id)
        assert (await store.get_bulk_job(job.id)).status == "COMPLETED"

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, store: DatabaseStore, account) -> None:
        job = await store.create_bulk_job(account.id, datetime(2026, 1, 1, tzinfo=UTC))
        await store.update_bulk_job_status(job.id, "CANCELLED")

        assert not await store.update_bulk_job_status(job.id, "RUNNING")
        assert await store.is_bulk_job_cancelled(job.id)

    @pytest.mark.asyncio
    async def test_active_job_lookup(self, store: DatabaseStore, account) -> None:
        assert await store.get_active_bulk_job(account.id) is None
        job = await store.create_bulk_job(account.id, datetime(2026, 1, 1, tzinfo=UTC))
        assert (await store.get_active_bulk_job(account.id)).id == job.id

    @pytest.mark.asyncio
    async def test_one_active_job_per_account(self, store: DatabaseStore, account) -> None:
        first = await store.create_bulk_job(account.id, datetime(2026, 1, 1, tzinfo=UTC))

        with pytest.raises(JobConflictError) as exc_info:
            await store.create_bulk_job(account.id, datetime(2026, 2, 1, tzinfo=UTC))
        assert exc_info.value.active_job_id == first.id

        await store.update_bulk_job_status(first.id, "COMPLETED")
        second = await store.create_bulk_job(account.id, datetime(2026, 2, 1, tzinfo=UTC))
        assert (await store.get_active_bulk_job(account.id)).id == second.id


class TestDigestOperations:
    """Digest aggregation, claiming and delivery bookkeeping."""

    @pytest.mark.asyncio
    async def test_add_item_creates_pending_digest(self, store: DatabaseStore, account) -> None:
        write = await store.add_digest_item(account.id, "m1", "t1", '{"content": "a"}')

        assert write.created
        digest = await store.get_digest(write.digest_id)
        assert digest.status == "PENDING"
        assert [i.message_id for i in digest.items] == ["m1"]

    @pytest.mark.asyncio
    async def test_add_item_twice_updates(self, store: DatabaseStore, account) -> None:
        first = await store.add_digest_item(account.id, "m1", "t1", '{"content": "old"}')
        second = await store.add_digest_item(account.id, "m1", "t1", '{"content": "new"}')

        assert second.item_id == first.item_id
        assert not second.created
        digest = await store.get_digest(first.digest_id)
        assert len(digest.items) == 1
        assert json.loads(digest.items[0].content) == {"content": "new"}

    @pytest.mark.asyncio
    async def test_claim_moves_to_processing_once(self, store: DatabaseStore, account) -> None:
        await store.add_digest_item(account.id, "m1", "t1", '{"content": "a"}')

        claimed = await store.claim_pending_digests(account.id)
        again = await store.claim_pending_digests(account.id)

        assert len(claimed) == 1
        assert claimed[0].status == "PROCESSING"
        assert len(claimed[0].items) == 1
        assert again == []

    @pytest.mark.asyncio
    async def test_new_items_after_claim_go_to_new_digest(
        self, store: DatabaseStore, account
    ) -> None:
        first = await store.add_digest_item(account.id, "m1", "t1", '{"content": "a"}')
        await store.claim_pending_digests(account.id)
        second = await store.add_digest_item(account.id, "m2", "t2", '{"content": "b"}')

        assert second.digest_id != first.digest_id

    @pytest.mark.asyncio
    async def test_finalize_redacts_and_advances_schedule(
        self, store: DatabaseStore, account
    ) -> None:
        schedule = await store.upsert_digest_schedule(account.id, 1, "08:00")
        write = await store.add_digest_item(account.id, "m1", "t1", '{"content": "secret"}')
        sent_at = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        next_at = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)

        await store.finalize_sent_digests([write.digest_id], sent_at, schedule.id, next_at)

        digest = await store.get_digest(write.digest_id)
        assert digest.status == "SENT"
        assert digest.sent_at == sent_at
        assert all(item.content == REDACTED_CONTENT for item in digest.items)
        schedule = await store.get_digest_schedule(account.id)
        assert schedule.last_occurrence_at == sent_at
        assert schedule.next_occurrence_at == next_at

    @pytest.mark.asyncio
    async def test_finalize_is_all_or_nothing(self, store: DatabaseStore, account) -> None:
        due = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
        schedule = await store.upsert_digest_schedule(account.id, 1, "08:00", due)
        write = await store.add_digest_item(account.id, "m1", "t1", '{"content": "secret"}')
        await store.claim_pending_digests(account.id)
        async with aiosqlite.connect(store.db_path) as db:
            await db.execute(
                """
                CREATE TRIGGER block_redaction BEFORE UPDATE OF content ON digest_items
                BEGIN
                    SELECT RAISE(ABORT, 'redaction blocked');
                END
                """
            )
            await db.commit()

        with pytest.raises(DatabaseError, match="redaction blocked"):
            await store.finalize_sent_digests(
                [write.digest_id],
                datetime(2026, 3, 1, 9, 0, tzinfo=UTC),
                schedule.id,
                due + timedelta(days=1),
            )

        digest = await store.get_digest(write.digest_id)
        assert digest.status == "PROCESSING"
        assert digest.sent_at is None
        assert digest.items[0].content == '{"content": "secret"}'
        unchanged = await store.get_digest_schedule(account.id)
        assert unchanged.next_occurrence_at == due
        assert unchanged.last_occurrence_at is None

    @pytest.mark.asyncio
    async def test_mark_failed_keeps_content(self, store: DatabaseStore, account) -> None:
        write = await store.add_digest_item(account.id, "m1", "t1", '{"content": "keep"}')

        await store.mark_digests_failed([write.digest_id])

        digest = await store.get_digest(write.digest_id)
        assert digest.status == "FAILED"
        assert digest.items[0].content == '{"content": "keep"}'


class TestDigestScheduleOperations:
    @pytest.mark.asyncio
    async def test_advance_is_conditional(self, store: DatabaseStore, account) -> None:
        due = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
        schedule = await store.upsert_digest_schedule(account.id, 1, "08:00", due)
        next_at = due + timedelta(days=1)

        assert await store.advance_digest_schedule(schedule.id, due, next_at)
        assert not await store.advance_digest_schedule(schedule.id, due, next_at)

    @pytest.mark.asyncio
    async def test_due_schedules(self, store: DatabaseStore, account) -> None:
        due = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
        await store.upsert_digest_schedule(account.id, 1, "08:00", due)

        assert await store.get_due_digest_schedules(due - timedelta(minutes=1)) == []
        assert [s.account_id for s in await store.get_due_digest_schedules(due)] == [account.id]


class TestAppState:
    @pytest.mark.asyncio
    async def test_set_and_get(self, store: DatabaseStore) -> None:
        assert await store.get_state("k") is None
        await store.set_state("k", "v1")
        await store.set_state("k", "v2")
        assert await store.get_state("k") == "v2"
