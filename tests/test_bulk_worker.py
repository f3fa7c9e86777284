"""Tests for the bulk worker."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailflow.db.store import ActionPayload
from mailflow.engine.bulk_jobs import BulkJobManager
from mailflow.engine.bulk_worker import BulkWorker
from mailflow.engine.rules import RuleRunResult
from mailflow.jobs.payloads import BulkWorkerPayload
from mailflow.providers.base import EmailMessage

MESSAGE = EmailMessage(id="m1", thread_id="t1", from_address="a@example.com", subject="Hi")


@pytest.fixture
def rule_runner():
    runner = MagicMock()
    runner.run = AsyncMock(return_value=[])
    return runner


@pytest.fixture
def worker(store, queue, providers, provider, rule_runner):
    provider.get_message.return_value = MESSAGE
    return BulkWorker(store, providers, rule_runner, BulkJobManager(store, queue))


async def _job(store, account, queued: int = 5, fetch_done: bool = False):
    job = await store.create_bulk_job(account.id, datetime(2026, 1, 1, tzinfo=UTC))
    await store.update_bulk_job_status(job.id, "RUNNING")
    threads = [(f"t{n}", f"m{n}") for n in range(1, queued + 1)]
    await store.record_bulk_page(job.id, 0, queued, threads)
    if fetch_done:
        await store.mark_bulk_job_fetch_complete(job.id)
    return job


def _payload(job, force=False) -> BulkWorkerPayload:
    return BulkWorkerPayload(
        job_id=job.id,
        account_id=job.account_id,
        message_id="m1",
        thread_id="t1",
        force_reprocess=force,
    )


async def _rule(store, account):
    return await store.create_rule(
        account.id, "Newsletters", [(ActionPayload(action_type="ARCHIVE"), None)], from_pattern="."
    )


@pytest.mark.asyncio
async def test_cancelled_job_skips_without_provider(store, account, worker, providers):
    job = await _job(store, account)
    await store.update_bulk_job_status(job.id, "CANCELLED")

    result = await worker.process(_payload(job))

    assert result.skipped
    assert result.reason == "Job cancelled"
    providers.create.assert_not_called()


@pytest.mark.asyncio
async def test_already_processed_message_is_counted(store, account, worker, rule_runner):
    job = await _job(store, account)
    await store.create_executed_rule(account.id, "m1", "t1", "APPLIED")

    result = await worker.process(_payload(job))

    assert result.reason == "Already processed"
    rule_runner.run.assert_not_called()
    assert (await store.get_bulk_job(job.id)).processed == 1


@pytest.mark.asyncio
async def test_force_reprocess_runs_rules_again(store, account, worker, rule_runner):
    job = await _job(store, account)
    await store.create_executed_rule(account.id, "m1", "t1", "APPLIED")
    await _rule(store, account)

    await worker.process(_payload(job, force=True))

    rule_runner.run.assert_awaited_once()


@pytest.mark.asyncio
async def test_no_rules_configured(store, account, worker):
    job = await _job(store, account)

    result = await worker.process(_payload(job))

    assert result.reason == "No rules configured"
    assert (await store.get_bulk_job(job.id)).processed == 1


@pytest.mark.asyncio
async def test_no_matching_rule(store, account, worker):
    job = await _job(store, account)
    await _rule(store, account)

    result = await worker.process(_payload(job))

    assert result.skipped
    assert result.reason == "No matching rule"


@pytest.mark.asyncio
async def test_matching_rule_reports_names(store, account, worker, rule_runner, provider):
    job = await _job(store, account)
    rule = await _rule(store, account)
    rule_runner.run.return_value = [RuleRunResult(rule.id, rule.name, "er-1")]

    result = await worker.process(_payload(job))

    assert result.success and not result.skipped
    assert result.data == {"rules_matched": 1, "rule_names": ["Newsletters"]}
    args = rule_runner.run.call_args.args
    assert args[0] is provider
    assert args[1] == MESSAGE
    assert [r.id for r in args[2]] == [rule.id]


class TestWorkerFailures:
    @pytest.mark.asyncio
    async def test_failure_before_final_attempt_not_counted(self, store, account, worker, provider):
        provider.get_message.return_value = None
        job = await _job(store, account)

        result = await worker.process(_payload(job), attempt=1, max_attempts=3)

        assert not result.success
        assert "Message not found" in result.error
        assert (await store.get_bulk_job(job.id)).failed == 0

    @pytest.mark.asyncio
    async def test_failure_on_final_attempt_counted(self, store, account, worker, provider):
        provider.get_message.side_effect = RuntimeError("boom")
        job = await _job(store, account)

        result = await worker.process(_payload(job), attempt=3, max_attempts=3)

        assert result.error == "boom"
        assert (await store.get_bulk_job(job.id)).failed == 1


@pytest.mark.asyncio
async def test_last_message_completes_job(store, account, worker):
    job = await _job(store, account, queued=1, fetch_done=True)

    await worker.process(_payload(job))

    assert (await store.get_bulk_job(job.id)).status == "COMPLETED"


@pytest.mark.asyncio
async def test_final_failure_can_complete_job(store, account, worker, provider):
    provider.get_message.return_value = None
    job = await _job(store, account, queued=1, fetch_done=True)

    await worker.process(_payload(job), attempt=3, max_attempts=3)

    stored = await store.get_bulk_job(job.id)
    assert stored.status == "COMPLETED"
    assert stored.failed == 1


@pytest.mark.asyncio
async def test_duplicate_delivery_counts_once(store, account, worker):
    job = await _job(store, account)

    await worker.process(_payload(job))
    await worker.process(_payload(job))

    assert (await store.get_bulk_job(job.id)).processed == 1
