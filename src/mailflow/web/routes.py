"""HTTP trigger API.

Thin JSON endpoints over the engines: start, inspect and cancel bulk jobs,
operate the recovery sweeper and trigger digest delivery. Long work never
runs inside a request; endpoints only enqueue jobs or read state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from mailflow.core.errors import DatabaseError, JobConflictError, NotFoundError, QueueError
from mailflow.core.logging import get_logger
from mailflow.db.store import BulkProcessJob
from mailflow.jobs.payloads import DIGEST_SEND, DigestSendPayload, dump_payload
from mailflow.services import Services
from mailflow.web.dependencies import get_services

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class StartBulkProcessRequest(BaseModel):
    """Request body for starting a bulk processing job."""

    account_id: str = Field(min_length=1)
    start_date: datetime
    end_date: datetime | None = None
    only_unread: bool = True
    force_reprocess: bool = False


def _bulk_job_to_dict(job: BulkProcessJob) -> dict[str, Any]:
    handled = job.processed + job.failed
    return {
        "id": job.id,
        "account_id": job.account_id,
        "status": job.status,
        "start_date": job.start_date.isoformat(),
        "end_date": job.end_date.isoformat() if job.end_date else None,
        "only_unread": job.only_unread,
        "force_reprocess": job.force_reprocess,
        "total_emails": job.total_emails,
        "emails_queued": job.emails_queued,
        "processed": job.processed,
        "failed": job.failed,
        "pages_fetched": job.pages_fetched,
        "progress": round(handled / job.emails_queued, 3) if job.emails_queued else None,
        "error": job.error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health(services: Services = Depends(get_services)):
    """Queue depth per status and scheduled actions per status."""
    try:
        queue_counts = await services.queue.count_by_status()
        action_counts = await services.sweeper.status_counts()
    except (DatabaseError, QueueError) as e:
        logger.error("health_check_failed", error=str(e))
        raise HTTPException(status_code=503, detail="Database unavailable") from None
    return {"status": "ok", "queue": queue_counts, "scheduled_actions": action_counts}


# ---------------------------------------------------------------------------
# Bulk processing
# ---------------------------------------------------------------------------


@api_router.post("/bulk-process/start")
async def start_bulk_process(
    body: StartBulkProcessRequest,
    services: Services = Depends(get_services),
):
    """Create a bulk job and queue its first fetcher page."""
    try:
        job = await services.bulk_jobs.start(
            body.account_id,
            body.start_date,
            body.end_date,
            only_unread=body.only_unread,
            force_reprocess=body.force_reprocess,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    except JobConflictError as e:
        raise HTTPException(
            status_code=409, detail={"error": str(e), "active_job_id": e.active_job_id}
        ) from None
    return {"job_id": job.id, "status": job.status}


@api_router.get("/bulk-process/{job_id}")
async def get_bulk_process(job_id: str, services: Services = Depends(get_services)):
    try:
        job = await services.bulk_jobs.get_status(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Bulk job not found") from None
    return _bulk_job_to_dict(job)


@api_router.post("/bulk-process/{job_id}/cancel")
async def cancel_bulk_process(job_id: str, services: Services = Depends(get_services)):
    """Flag a job as cancelled; in-flight fetchers and workers stop at their next check."""
    try:
        job = await services.bulk_jobs.cancel(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Bulk job not found") from None
    return _bulk_job_to_dict(job)


@api_router.get("/accounts/{account_id}/bulk-process/active")
async def get_active_bulk_process(account_id: str, services: Services = Depends(get_services)):
    job = await services.bulk_jobs.get_active(account_id)
    return {"job": _bulk_job_to_dict(job) if job else None}


# ---------------------------------------------------------------------------
# Scheduled actions
# ---------------------------------------------------------------------------


@api_router.post("/scheduled-actions/sweeper/kickstart")
async def kickstart_sweeper(services: Services = Depends(get_services)):
    """Start (or restart) the self-re-arming recovery sweep."""
    job_id = await services.sweeper.kickstart()
    return {"job_id": job_id}


@api_router.get("/scheduled-actions/status")
async def scheduled_actions_status(services: Services = Depends(get_services)):
    return await services.sweeper.status_counts()


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------


@api_router.post("/accounts/{account_id}/digest/send")
async def send_digest(
    account_id: str,
    force: bool = False,
    services: Services = Depends(get_services),
):
    """Queue a digest send for an account."""
    account = await services.store.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")

    job_id = await services.queue.enqueue(
        DIGEST_SEND,
        dump_payload(DigestSendPayload(account_id=account_id, force=force)),
        idempotency_key=f"digest-send-{account_id}",
    )
    logger.info("digest_send_requested", account_id=account_id, force=force, job_id=job_id)
    return {"job_id": job_id}
