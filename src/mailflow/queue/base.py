"""Durable job queue interface and value types.

Engines depend on the JobQueue protocol only; the SQLite implementation in
mailflow.queue.sqlite is injected by whoever builds the services, and tests
pass an in-memory fake or a MagicMock.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Protocol

QueuedJobStatus = Literal["queued", "running", "completed", "failed", "cancelled"]


@dataclass(frozen=True)
class JobRequest:
    """One job to enqueue.

    Attributes:
        name: Registered job name, e.g. "bulk-process.worker"
        payload: JSON-serializable payload (wire format, camelCase keys)
        not_before: Earliest time the job may run (None = immediately)
        idempotency_key: Enqueues sharing a key collapse onto one job
        concurrency_key: Jobs sharing a key are limited to concurrency_limit running at once
        concurrency_limit: Max running jobs for concurrency_key
    """

    name: str
    payload: dict[str, Any]
    not_before: datetime | None = None
    idempotency_key: str | None = None
    concurrency_key: str | None = None
    concurrency_limit: int | None = None


@dataclass
class QueuedJob:
    """A job row as stored in the queue."""

    id: str
    name: str
    payload: dict[str, Any]
    status: QueuedJobStatus
    not_before: datetime
    attempts: int = 0
    idempotency_key: str | None = None
    concurrency_key: str | None = None
    concurrency_limit: int | None = None
    last_error: str | None = None
    locked_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class JobContext:
    """Delivery metadata handed to a job handler alongside its payload."""

    job_id: str
    job_name: str
    attempt: int = 1
    max_attempts: int = 3
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


class JobQueue(Protocol):
    """At-least-once queue with delayed delivery, idempotency and per-key concurrency."""

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
        """Enqueue a job and return its id (the existing id for a duplicate key)."""
        ...

    async def enqueue_many(self, requests: list[JobRequest]) -> list[str]:
        """Enqueue several jobs in one write; returns ids in request order."""
        ...

    async def enqueue_unique(self, requests: list[JobRequest]) -> list[str]:
        """Like enqueue_many, but returns only the ids of jobs this call created."""
        ...

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not started; False if it is running or finished."""
        ...
