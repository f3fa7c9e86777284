"""Tests for the scheduled action executor."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from mailflow.core.errors import AuthenticationError, MessageNotFoundError, ProviderError
from mailflow.db.store import ActionPayload
from mailflow.engine.executor import TARGET_GONE, ScheduledActionExecutor
from mailflow.jobs.payloads import EXECUTE_SCHEDULED_ACTION
from mailflow.providers.base import EmailMessage

MESSAGE = EmailMessage(id="msg-1", thread_id="thread-1", from_address="Bob <bob@example.com>")


async def _seed(store, account, payload=None, scheduled_for=None):
    executed = await store.create_executed_rule(account.id, "msg-1", "thread-1", "APPLIED")
    return await store.create_scheduled_action(
        executed_rule_id=executed.id,
        account_id=account.id,
        message_id="msg-1",
        thread_id="thread-1",
        payload=payload or ActionPayload(action_type="ARCHIVE"),
        scheduled_for=scheduled_for or datetime.now(UTC) - timedelta(minutes=1),
    )


@pytest.fixture
def executor(store, queue, providers, provider):
    provider.get_message.return_value = MESSAGE
    return ScheduledActionExecutor(store, queue, providers)


# ---------------------------------------------------------------------------
# At-most-once execution
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_deliveries_execute_once(store, account, executor, provider):
    """Five simultaneous deliveries of one action produce a single side effect."""
    action = await _seed(store, account)

    results = await asyncio.gather(*(executor.execute(action.id) for _ in range(5)))

    assert provider.archive_thread.await_count == 1
    assert sum(1 for r in results if not r.skipped) == 1
    assert {r.reason for r in results if r.skipped} <= {"already being processed", "not pending"}
    assert (await store.get_scheduled_action(action.id)).status == "COMPLETED"


@pytest.mark.asyncio
async def test_cancelled_action_never_touches_provider(store, account, executor, providers):
    action = await _seed(store, account)
    await store.cancel_scheduled_action(action.id)

    result = await executor.execute(action.id)

    assert result.skipped
    assert result.reason == "cancelled"
    providers.create.assert_not_called()


@pytest.mark.asyncio
async def test_missing_action_is_skipped(executor):
    result = await executor.execute("does-not-exist")
    assert result.skipped
    assert result.reason == "not found"


@pytest.mark.asyncio
async def test_success_records_executed_action(store, account, executor, provider):
    action = await _seed(store, account, ActionPayload(action_type="LABEL", label="Later"))

    result = await executor.execute(action.id)

    provider.label_message.assert_awaited_once_with("msg-1", "Later")
    executed_action_id = result.data["executed_action_id"]
    row = await store.get_scheduled_action(action.id)
    assert row.status == "COMPLETED"
    assert row.executed_action_id == executed_action_id
    executed = await store.get_executed_action(executed_action_id)
    assert executed.details_json == {"scheduled_action_id": action.id, "label": "Later"}


@pytest.mark.asyncio
async def test_future_time_defers_to_queue(store, queue, account, executor, providers):
    run_at = datetime.now(UTC) + timedelta(minutes=10)
    action = await _seed(store, account, scheduled_for=run_at)

    result = await executor.execute(action.id, scheduled_for=run_at)

    assert result.skipped
    assert result.reason == "deferred"
    providers.create.assert_not_called()
    [job] = await queue.list_jobs(name=EXECUTE_SCHEDULED_ACTION)
    assert job.not_before == run_at
    assert job.idempotency_key is None
    assert (await store.get_scheduled_action(action.id)).status == "PENDING"


# ---------------------------------------------------------------------------
# Target gone
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_deleted_message_completes(store, account, executor, provider):
    provider.get_message.return_value = None
    action = await _seed(store, account)

    result = await executor.execute(action.id)

    assert result.success
    assert result.reason == TARGET_GONE
    provider.archive_thread.assert_not_called()
    row = await store.get_scheduled_action(action.id)
    assert row.status == "COMPLETED"
    assert row.executed_action_id is None


@pytest.mark.asyncio
async def test_message_not_found_during_action_completes(store, account, executor, provider):
    provider.archive_thread.side_effect = MessageNotFoundError("gone", message_id="msg-1")
    action = await _seed(store, account)

    result = await executor.execute(action.id)

    assert result.reason == TARGET_GONE
    assert (await store.get_scheduled_action(action.id)).status == "COMPLETED"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestExecutorFailures:
    @pytest.mark.asyncio
    async def test_retryable_error_releases_row(self, store, account, executor, provider):
        provider.archive_thread.side_effect = ProviderError("unavailable", status_code=503)
        action = await _seed(store, account)

        with pytest.raises(ProviderError):
            await executor.execute(action.id, attempt=1, max_attempts=3)

        assert (await store.get_scheduled_action(action.id)).status == "PENDING"

    @pytest.mark.asyncio
    async def test_retryable_error_on_final_attempt_fails(
        self, store, account, executor, provider
    ):
        provider.archive_thread.side_effect = ProviderError("unavailable", status_code=503)
        action = await _seed(store, account)

        result = await executor.execute(action.id, attempt=3, max_attempts=3)

        assert not result.success
        row = await store.get_scheduled_action(action.id)
        assert row.status == "FAILED"
        assert row.error_message == "unavailable"

    @pytest.mark.asyncio
    async def test_client_error_fails_immediately(self, store, account, executor, provider):
        provider.archive_thread.side_effect = ProviderError("bad request", status_code=400)
        action = await _seed(store, account)

        result = await executor.execute(action.id, attempt=1)

        assert not result.success
        assert (await store.get_scheduled_action(action.id)).status == "FAILED"

    @pytest.mark.asyncio
    async def test_invalid_payload_fails(self, store, account, executor, provider):
        action = await _seed(store, account, ActionPayload(action_type="LABEL"))

        result = await executor.execute(action.id)

        assert not result.success
        assert "requires 'label'" in result.error
        provider.label_message.assert_not_called()
        assert (await store.get_scheduled_action(action.id)).status == "FAILED"

    @pytest.mark.asyncio
    async def test_missing_credentials_release_row(self, store, account, executor, providers):
        providers.create.side_effect = AuthenticationError("no token")
        action = await _seed(store, account)

        with pytest.raises(AuthenticationError):
            await executor.execute(action.id)

        assert (await store.get_scheduled_action(action.id)).status == "PENDING"

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_row(self, store, account, executor, provider):
        provider.archive_thread.side_effect = RuntimeError("bug")
        action = await _seed(store, account)

        with pytest.raises(RuntimeError):
            await executor.execute(action.id)

        assert (await store.get_scheduled_action(action.id)).status == "PENDING"


class TestInterruptedExecution:
    """A run cut off by the job timeout never leaves the row EXECUTING."""

    @staticmethod
    async def _slow_get_message(message_id):
        await asyncio.sleep(5)
        return MESSAGE

    @pytest.mark.asyncio
    async def test_timeout_hands_row_back(self, store, account, executor, provider):
        provider.get_message.side_effect = self._slow_get_message
        action = await _seed(store, account)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(executor.execute(action.id, attempt=1, max_attempts=3), 0.2)

        assert (await store.get_scheduled_action(action.id)).status == "PENDING"

        provider.get_message.side_effect = None
        result = await executor.execute(action.id, attempt=2, max_attempts=3)

        assert result.success and not result.skipped
        assert (await store.get_scheduled_action(action.id)).status == "COMPLETED"

    @pytest.mark.asyncio
    async def test_timeout_on_final_attempt_fails(self, store, account, executor, provider):
        provider.get_message.side_effect = self._slow_get_message
        action = await _seed(store, account)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(executor.execute(action.id, attempt=3, max_attempts=3), 0.2)

        row = await store.get_scheduled_action(action.id)
        assert row.status == "FAILED"
        assert row.error_message == "Execution interrupted on attempt 3"
