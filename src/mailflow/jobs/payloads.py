"""Job names and their payload schemas.

Every job the queue carries has exactly one payload model here. Payloads are
validated at the queue boundary, before a handler runs, so a malformed job
never causes a partial side effect. The wire format uses camelCase keys.

Usage:
    from mailflow.jobs.payloads import BULK_WORKER, BulkWorkerPayload, dump_payload

    payload = BulkWorkerPayload(job_id=..., account_id=..., message_id=..., thread_id=...)
    await queue.enqueue(BULK_WORKER, dump_payload(payload))
"""

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError
from pydantic.alias_generators import to_camel

from mailflow.core.errors import PayloadValidationError

# Job names
EXECUTE_SCHEDULED_ACTION = "scheduled-action.execute"
SWEEP_SCHEDULED_ACTIONS = "scheduled-action.sweep"
BULK_FETCH = "bulk-process.fetch"
BULK_WORKER = "bulk-process.worker"
DIGEST_ADD_ITEM = "digest.add-item"
DIGEST_SEND = "digest.send"

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class JobPayload(BaseModel):
    """Base for all payloads: camelCase on the wire, unknown keys rejected."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class ExecuteScheduledActionPayload(JobPayload):
    """Execute one scheduled action. No scheduledFor means run now (sweeper re-drives)."""

    scheduled_action_id: NonEmptyStr
    scheduled_for: datetime | None = None


class SweepScheduledActionsPayload(JobPayload):
    """Recovery sweep trigger. `reason` is informational ("rearm", "kickstart")."""

    reason: str | None = None


class BulkFetchPayload(JobPayload):
    job_id: NonEmptyStr
    account_id: NonEmptyStr
    start_date: datetime
    end_date: datetime | None = None
    only_unread: bool = False
    force_reprocess: bool = False
    page_token: str | None = None
    page_count: int = Field(default=0, ge=0)


class BulkWorkerPayload(JobPayload):
    job_id: NonEmptyStr
    account_id: NonEmptyStr
    message_id: NonEmptyStr
    thread_id: NonEmptyStr
    force_reprocess: bool = False


class DigestMessage(JobPayload):
    """Message snapshot carried by a digest item job.

    Subject and content are free text and may be empty; identifiers may not.
    """

    id: NonEmptyStr
    thread_id: NonEmptyStr
    from_address: NonEmptyStr = Field(alias="from")
    to: str | None = None
    subject: str
    content: str


class DigestAddItemPayload(JobPayload):
    account_id: NonEmptyStr
    action_id: str | None = None
    cold_email_id: str | None = None
    message: DigestMessage


class DigestSendPayload(JobPayload):
    account_id: NonEmptyStr
    force: bool = False


PAYLOAD_MODELS: dict[str, type[JobPayload]] = {
    EXECUTE_SCHEDULED_ACTION: ExecuteScheduledActionPayload,
    SWEEP_SCHEDULED_ACTIONS: SweepScheduledActionsPayload,
    BULK_FETCH: BulkFetchPayload,
    BULK_WORKER: BulkWorkerPayload,
    DIGEST_ADD_ITEM: DigestAddItemPayload,
    DIGEST_SEND: DigestSendPayload,
}


def dump_payload(payload: JobPayload) -> dict[str, Any]:
    """Serialize a payload to its JSON wire form (camelCase, no null fields)."""
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)


def _format_errors(error: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(loc) for loc in err['loc']) or '<root>'}: {err['msg']}"
        for err in error.errors()
    ]


def parse_payload(
    name: str,
    data: dict[str, Any],
    model: type[JobPayload] | None = None,
) -> JobPayload:
    """Validate a raw payload for a job name.

    Args:
        name: Job name the payload was enqueued under
        data: Raw payload dict from the queue
        model: Explicit model to validate with (defaults to the registered one)

    Raises:
        PayloadValidationError: If the job name is unknown or the payload is invalid
    """
    model = model or PAYLOAD_MODELS.get(name)
    if model is None:
        raise PayloadValidationError(f"Unknown job name '{name}'", job_name=name)

    try:
        return model.model_validate(data)
    except ValidationError as e:
        errors = _format_errors(e)
        raise PayloadValidationError(
            f"Invalid payload for job '{name}': " + "; ".join(errors),
            job_name=name,
            errors=errors,
        ) from e
