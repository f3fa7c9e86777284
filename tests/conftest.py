"""Pytest fixtures and configuration for mailflow tests.

Provides common fixtures for configuration, the database, the queue and a
mocked mail provider.
"""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailflow.config_schema import AppConfig
from mailflow.db.store import Account, DatabaseStore
from mailflow.queue.sqlite import SqliteJobQueue
from mailflow.services import Services, build_services


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_yaml(data_dir: Path) -> str:
    """Return a minimal valid config.yaml content."""
    return f"""
schema_version: 1

database:
  path: "{data_dir / 'mailflow.db'}"

queue:
  poll_interval_seconds: 0.5
  max_attempts: 3
  retry_delays_seconds: [60, 300]

bulk:
  page_size: 25
  worker_concurrency: 3
  ignored_senders: ["Noreply@Example.com"]

digest:
  system_from_email: "system@mailflow.test"
  fetch_batch_delay_seconds: 0
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "database": {"path": str(data_dir / "mailflow.db")},
        "queue": {"poll_interval_seconds": 0.5},
        "bulk": {"page_size": 25, "worker_concurrency": 3},
        "digest": {
            "system_from_email": "system@mailflow.test",
            "fetch_batch_delay_seconds": 0,
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILFLOW_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILFLOW_CONFIG_PATH")
    os.environ["MAILFLOW_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILFLOW_CONFIG_PATH"]
    else:
        os.environ["MAILFLOW_CONFIG_PATH"] = old_value


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "mailflow.db")
    await s.initialize()
    return s


@pytest.fixture
async def queue(store: DatabaseStore) -> SqliteJobQueue:
    """Return an initialized queue sharing the store's database file."""
    q = SqliteJobQueue(store.db_path)
    await q.initialize()
    return q


@pytest.fixture
async def account(store: DatabaseStore) -> Account:
    """Return a connected Outlook account."""
    return await store.create_account(
        "jane@example.com",
        "outlook",
        access_token="test-token",
        account_id="acct-1",
    )


@pytest.fixture
def provider() -> MagicMock:
    """Return a mock EmailProvider; every capability is an AsyncMock."""
    p = MagicMock()
    p.fetch_messages = AsyncMock()
    p.get_messages_batch = AsyncMock(return_value=[])
    p.get_message = AsyncMock(return_value=None)
    p.send_email = AsyncMock()
    p.send_email_with_html = AsyncMock()
    p.archive_thread = AsyncMock()
    p.label_message = AsyncMock()
    p.reply_to_message = AsyncMock()
    p.forward_message = AsyncMock()
    p.draft_reply = AsyncMock(return_value="draft-1")
    p.mark_spam = AsyncMock()
    p.mark_read = AsyncMock()
    p.move_to_folder = AsyncMock()
    return p


@pytest.fixture
def providers(provider: MagicMock) -> MagicMock:
    """Return a mock ProviderFactory that always builds `provider`."""
    factory = MagicMock()
    factory.create.return_value = provider
    return factory


@pytest.fixture
def summarizer() -> MagicMock:
    """Return a mock Summarizer that finds nothing worth including."""
    s = MagicMock()
    s.summarize = AsyncMock(return_value=None)
    return s


@pytest.fixture
async def services(
    sample_config: AppConfig, store: DatabaseStore, providers: MagicMock, summarizer: MagicMock
) -> Services:
    """Return a Services container on the test database with mocked externals."""
    return await build_services(sample_config, providers=providers, summarizer=summarizer)
