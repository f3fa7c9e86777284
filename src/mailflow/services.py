"""Service container.

Builds every engine once from an AppConfig and wires them together with
explicit constructor injection. The CLI, the web app and the job handlers
all work from one Services instance; there are no module-level singletons.

Usage:
    services = await build_services(config)
    registry = build_job_registry(services)
    worker = QueueWorker(services.queue, registry)
"""

from dataclasses import dataclass

import anthropic

from mailflow.ai.summarizer import ClaudeDigestSummarizer, Summarizer
from mailflow.config_schema import AppConfig
from mailflow.core.logging import get_logger
from mailflow.db.store import DatabaseStore
from mailflow.engine.bulk_fetcher import BulkFetcher
from mailflow.engine.bulk_jobs import BulkJobManager
from mailflow.engine.bulk_worker import BulkWorker
from mailflow.engine.digest import DigestAggregator
from mailflow.engine.digest_sender import DigestSender
from mailflow.engine.executor import ScheduledActionExecutor
from mailflow.engine.rules import RuleRunner, StaticRuleRunner
from mailflow.engine.scheduler import ActionScheduler
from mailflow.engine.sweeper import RecoverySweeper
from mailflow.providers.base import ProviderFactory
from mailflow.providers.graph import GraphProviderFactory
from mailflow.queue.sqlite import SqliteJobQueue

logger = get_logger(__name__)


@dataclass
class Services:
    config: AppConfig
    store: DatabaseStore
    queue: SqliteJobQueue
    providers: ProviderFactory
    scheduler: ActionScheduler
    executor: ScheduledActionExecutor
    sweeper: RecoverySweeper
    bulk_jobs: BulkJobManager
    bulk_fetcher: BulkFetcher
    bulk_worker: BulkWorker
    rule_runner: RuleRunner
    digest_aggregator: DigestAggregator
    digest_sender: DigestSender


async def build_services(
    config: AppConfig,
    providers: ProviderFactory | None = None,
    summarizer: Summarizer | None = None,
    rule_runner: RuleRunner | None = None,
) -> Services:
    """Initialize storage and the queue, then build every engine.

    Args:
        config: Loaded application config
        providers: Provider factory (defaults to Microsoft Graph)
        summarizer: Digest summarizer (defaults to Claude)
        rule_runner: Rule runner used by bulk workers (defaults to stored static rules)
    """
    store = DatabaseStore(config.database.path)
    await store.initialize()
    queue = SqliteJobQueue(config.database.path)
    await queue.initialize()

    providers = providers or GraphProviderFactory(config.provider)
    if summarizer is None:
        summarizer = ClaudeDigestSummarizer(anthropic.AsyncAnthropic(), config.models)

    scheduler = ActionScheduler(store, queue)
    rule_runner = rule_runner or StaticRuleRunner(
        store, scheduler, queue, digest_concurrency=config.digest.aggregator_concurrency
    )
    bulk_jobs = BulkJobManager(store, queue, fetcher_concurrency=config.bulk.fetcher_concurrency)

    services = Services(
        config=config,
        store=store,
        queue=queue,
        providers=providers,
        scheduler=scheduler,
        executor=ScheduledActionExecutor(store, queue, providers),
        sweeper=RecoverySweeper(
            store,
            queue,
            interval_minutes=config.scheduled_actions.sweeper_interval_minutes,
            batch_size=config.scheduled_actions.sweeper_batch_size,
            # well past the executor's own time limit
            stale_after_seconds=2 * config.scheduled_actions.executor_timeout_seconds,
        ),
        bulk_jobs=bulk_jobs,
        bulk_fetcher=BulkFetcher(store, queue, providers, bulk_jobs, config.bulk),
        bulk_worker=BulkWorker(store, providers, rule_runner, bulk_jobs),
        rule_runner=rule_runner,
        digest_aggregator=DigestAggregator(store, summarizer, config.digest),
        digest_sender=DigestSender(store, providers, config.digest),
    )
    logger.info("services_built", database=str(store.db_path))
    return services
