"""Email processing engines.

This package provides the engines the job handlers drive:
- Scheduled actions: planning, at-most-once execution and the recovery sweep
- Bulk processing: job lifecycle, paginated fetching and per-thread workers
- Digests: per-message aggregation and scheduled delivery
- Static rule matching that feeds all three
"""

from mailflow.engine.bulk_fetcher import BulkFetcher
from mailflow.engine.bulk_jobs import BulkJobManager
from mailflow.engine.bulk_worker import BulkWorker
from mailflow.engine.digest import DigestAggregator, enqueue_digest_item
from mailflow.engine.digest_sender import DigestSender
from mailflow.engine.executor import ScheduledActionExecutor
from mailflow.engine.results import JobResult
from mailflow.engine.rules import RuleRunner, RuleRunResult, StaticRuleRunner
from mailflow.engine.schedule import calculate_next_occurrence
from mailflow.engine.scheduler import ActionScheduler
from mailflow.engine.sweeper import RecoverySweeper, SweepResult

__all__ = [
    # Scheduled actions
    "ActionScheduler",
    "RecoverySweeper",
    "ScheduledActionExecutor",
    "SweepResult",
    # Bulk processing
    "BulkFetcher",
    "BulkJobManager",
    "BulkWorker",
    # Digests
    "DigestAggregator",
    "DigestSender",
    "calculate_next_occurrence",
    "enqueue_digest_item",
    # Rules
    "RuleRunResult",
    "RuleRunner",
    "StaticRuleRunner",
    "JobResult",
]
