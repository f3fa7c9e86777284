"""Structured logging configuration for mailflow.

Log lines are structlog events: JSON lines for the long-running worker and
server, coloured console output for interactive CLI commands.

The queue consumer binds the running job (job_run_id, job_name, attempt)
into structlog's context variables before calling its handler, so every line
a scheduled action, bulk page or digest run produces carries them, including
lines from the store and the provider client.

Usage:
    from mailflow.core.logging import bind_job_context, clear_job_context, get_logger

    logger = get_logger(__name__)

    bind_job_context(job.id, job.name, job.attempts)
    try:
        logger.info("scheduled_action_completed", scheduled_action_id="abc123")
    finally:
        clear_job_context()
"""

import logging
import sys
from typing import Any

import structlog

JOB_CONTEXT_KEYS = ("job_run_id", "job_name", "attempt")

# Libraries that log every request or tick at INFO
_NOISY_LOGGERS = ("apscheduler", "httpx", "urllib3", "anthropic", "uvicorn.access")


def bind_job_context(job_id: str, job_name: str, attempt: int) -> None:
    """Attach the running queue job to every log line in this context."""
    structlog.contextvars.bind_contextvars(job_run_id=job_id, job_name=job_name, attempt=attempt)


def clear_job_context() -> None:
    structlog.contextvars.unbind_contextvars(*JOB_CONTEXT_KEYS)


def get_job_context() -> dict[str, Any]:
    """The job fields currently bound, empty outside a job run."""
    bound = structlog.contextvars.get_contextvars()
    return {key: bound[key] for key in JOB_CONTEXT_KEYS if key in bound}


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable format
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, typically with the calling module's __name__."""
    return structlog.get_logger(name)
