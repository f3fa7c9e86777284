"""Durable job queue.

Jobs are rows in SQLite with a run-at time, an optional idempotency key and
an optional concurrency key. QueueWorker claims due jobs under a lease and
dispatches them to handlers registered in a JobRegistry.
"""

from mailflow.queue.base import JobContext, JobQueue, JobRequest, QueuedJob
from mailflow.queue.sqlite import SqliteJobQueue
from mailflow.queue.worker import JobDefinition, JobRegistry, QueueWorker

__all__ = [
    "JobContext",
    "JobDefinition",
    "JobQueue",
    "JobRegistry",
    "JobRequest",
    "QueueWorker",
    "QueuedJob",
    "SqliteJobQueue",
]
