"""Tests for the click CLI."""

import asyncio
from pathlib import Path

import pytest
from click.testing import CliRunner

from mailflow.cli import cli
from mailflow.db.store import DatabaseStore


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_env(set_config_env, monkeypatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")


class TestValidateConfig:
    def test_valid(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing_file(self, runner: CliRunner, temp_config_dir: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "-c", str(temp_config_dir / "nope.yaml")])

        assert result.exit_code == 1
        assert "Load error" in result.output

    def test_invalid_values(self, runner: CliRunner, temp_config_dir: Path) -> None:
        path = temp_config_dir / "bad.yaml"
        path.write_text("queue:\n  max_attempts: 0\n")

        result = runner.invoke(cli, ["validate-config", "-c", str(path)])

        assert result.exit_code == 1
        assert "Validation error" in result.output


def test_accounts_add_and_list(runner: CliRunner, cli_env, data_dir: Path) -> None:
    added = runner.invoke(
        cli, ["accounts", "add", "jane@example.com", "--access-token", "tok"]
    )
    assert added.exit_code == 0, added.output

    listed = runner.invoke(cli, ["accounts", "list"])
    assert listed.exit_code == 0
    assert "Accounts" in listed.output

    accounts = asyncio.run(DatabaseStore(data_dir / "mailflow.db").list_accounts())
    assert [a.access_token for a in accounts] == ["tok"]


def test_digest_schedule(runner: CliRunner, cli_env, data_dir: Path) -> None:
    store = DatabaseStore(data_dir / "mailflow.db")
    asyncio.run(store.initialize())
    asyncio.run(store.create_account("jane@example.com", "outlook", account_id="acct-1"))

    result = runner.invoke(cli, ["digest", "schedule", "acct-1", "--every", "7", "--at", "18:30"])

    assert result.exit_code == 0, result.output
    schedule = asyncio.run(store.get_digest_schedule("acct-1"))
    assert schedule.interval_days == 7
    assert schedule.next_occurrence_at.hour == 18
    assert schedule.next_occurrence_at.minute == 30


def test_bulk_status_unknown_job(runner: CliRunner, cli_env) -> None:
    result = runner.invoke(cli, ["bulk", "status", "missing"])

    assert result.exit_code == 1
    assert "Error" in result.output
