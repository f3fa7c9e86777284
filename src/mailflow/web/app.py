"""FastAPI application for the mailflow trigger API.

Creates the FastAPI app with a lifespan that:
1. Loads config and builds the Services container
2. Registers job handlers and starts the queue consumer on APScheduler's
   AsyncIOScheduler (same event loop as uvicorn)
3. Schedules the due-digest trigger and kickstarts the recovery sweep

Tests pass a ready Services instance to create_app(); the lifespan then
skips building and scheduling.

Usage:
    from mailflow.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import FastAPI

from mailflow.core.logging import get_logger
from mailflow.services import Services

logger = get_logger(__name__)

DIGEST_TRIGGER_INTERVAL_SECONDS = 60


def _make_lifespan(services: Services | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build services and start background consumers on startup; stop them on shutdown."""
        if services is not None:
            app.state.services = services
            app.state.scheduler = None
            yield
            return

        from apscheduler.schedulers.asyncio import AsyncIOScheduler

        from mailflow.config import load_config
        from mailflow.core.errors import ConfigLoadError, ConfigValidationError
        from mailflow.jobs.handlers import build_job_registry, enqueue_due_digest_sends
        from mailflow.queue.worker import QueueWorker
        from mailflow.services import build_services

        try:
            config = load_config()
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.error("config_load_failed", error=str(e))
            app.state.services = None
            app.state.scheduler = None
            yield
            return

        built = await build_services(config)
        app.state.services = built

        worker = QueueWorker(
            built.queue,
            build_job_registry(built),
            claim_batch_size=config.queue.claim_batch_size,
            lease_seconds=config.queue.lease_seconds,
            poll_interval_seconds=config.queue.poll_interval_seconds,
        )

        async def _poll_queue() -> None:
            try:
                await worker.run_once()
            except Exception as e:
                logger.error("queue_poll_failed", error=str(e))

        async def _trigger_digests() -> None:
            try:
                await enqueue_due_digest_sends(built)
            except Exception as e:
                logger.error("digest_trigger_failed", error=str(e))

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            _poll_queue,
            "interval",
            seconds=config.queue.poll_interval_seconds,
            id="queue_poll",
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            _trigger_digests,
            "interval",
            seconds=DIGEST_TRIGGER_INTERVAL_SECONDS,
            id="digest_trigger",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now() + timedelta(seconds=10),
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("scheduler_started", poll_interval_seconds=config.queue.poll_interval_seconds)

        await built.sweeper.kickstart()

        yield

        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    return lifespan


def create_app(services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Prebuilt services (tests); None builds them from config on startup

    Returns:
        Configured FastAPI instance
    """
    from mailflow.web.routes import api_router

    app = FastAPI(
        title="mailflow",
        description="Scheduled actions, bulk mailbox processing and digests",
        version="0.1.0",
        lifespan=_make_lifespan(services),
    )
    app.include_router(api_router)
    if services is not None:
        app.state.services = services
    return app
