"""Performing rule actions against a mailbox.

perform_action is shared by immediate rule execution and by the scheduled
action executor, so a delayed action does exactly what it would have done
had it run at once.
"""

from typing import Any

from mailflow.core.errors import ActionValidationError
from mailflow.db.store import ActionPayload
from mailflow.providers.base import EmailMessage, EmailProvider

ARCHIVE = "ARCHIVE"
LABEL = "LABEL"
REPLY = "REPLY"
SEND_EMAIL = "SEND_EMAIL"
FORWARD = "FORWARD"
DRAFT_EMAIL = "DRAFT_EMAIL"
MARK_SPAM = "MARK_SPAM"
MARK_READ = "MARK_READ"
MOVE_FOLDER = "MOVE_FOLDER"
DIGEST = "DIGEST"

ACTION_TYPES = frozenset(
    {
        ARCHIVE,
        LABEL,
        REPLY,
        SEND_EMAIL,
        FORWARD,
        DRAFT_EMAIL,
        MARK_SPAM,
        MARK_READ,
        MOVE_FOLDER,
        DIGEST,
    }
)

# Only these may be deferred with a delay
DELAYABLE_ACTION_TYPES = frozenset(
    {ARCHIVE, LABEL, REPLY, SEND_EMAIL, FORWARD, DRAFT_EMAIL, MARK_SPAM}
)


def can_action_be_delayed(action_type: str) -> bool:
    return action_type in DELAYABLE_ACTION_TYPES


def _require(payload: ActionPayload, field_name: str) -> str:
    value = getattr(payload, field_name)
    if not value:
        raise ActionValidationError(
            f"{payload.action_type} action requires '{field_name}'",
            action_type=payload.action_type,
        )
    return value


async def perform_action(
    provider: EmailProvider,
    payload: ActionPayload,
    message: EmailMessage,
) -> dict[str, Any]:
    """Run one action against a message.

    Returns:
        Details worth recording on the executed action (may be empty)

    Raises:
        ActionValidationError: If the payload lacks a required field or the type is unknown
        ProviderError: If the provider call fails
    """
    action_type = payload.action_type

    if action_type == ARCHIVE:
        await provider.archive_thread(message.thread_id, message.id)
    elif action_type == LABEL:
        label = _require(payload, "label")
        await provider.label_message(message.id, label)
        return {"label": label}
    elif action_type == REPLY:
        await provider.reply_to_message(message, _require(payload, "content"))
    elif action_type == SEND_EMAIL:
        to = _require(payload, "to_address")
        await provider.send_email(
            to=to,
            subject=payload.subject or "",
            body=payload.content or "",
            cc=payload.cc_address,
            bcc=payload.bcc_address,
        )
        return {"to": to}
    elif action_type == FORWARD:
        to = _require(payload, "to_address")
        await provider.forward_message(message, to, payload.content)
        return {"to": to}
    elif action_type == DRAFT_EMAIL:
        draft_id = await provider.draft_reply(message, payload.content or "")
        return {"draft_id": draft_id} if draft_id else {}
    elif action_type == MARK_SPAM:
        await provider.mark_spam(message)
    elif action_type == MARK_READ:
        await provider.mark_read(message)
    elif action_type == MOVE_FOLDER:
        folder_id = _require(payload, "folder_id")
        await provider.move_to_folder(message, folder_id)
        return {"folder_id": folder_id}
    else:
        raise ActionValidationError(
            f"Action type {action_type} cannot be performed against a mailbox",
            action_type=action_type,
        )

    return {}
