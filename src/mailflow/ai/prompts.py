"""Prompt and tool definition for per-message digest summaries.

Usage:
    from mailflow.ai.prompts import SUMMARIZE_FOR_DIGEST_TOOL, build_digest_user_message
"""

from typing import Any

# ---------------------------------------------------------------------------
# Tool definition
# ---------------------------------------------------------------------------

SUMMARIZE_FOR_DIGEST_TOOL: dict[str, Any] = {
    "name": "summarize_for_digest",
    "description": "Summarize an email for the user's periodic digest, or decline to",
    "input_schema": {
        "type": "object",
        "properties": {
            "worth_including": {
                "type": "boolean",
                "description": (
                    "False when the email carries nothing the user would want to read "
                    "in a digest (empty notifications, pure tracking mail, duplicates)"
                ),
            },
            "content": {
                "type": "string",
                "description": (
                    "Two to four short sentences with the facts the user needs: "
                    "who, what is asked or announced, any dates or amounts. Empty "
                    "when worth_including is false."
                ),
            },
        },
        "required": ["worth_including", "content"],
    },
}

DIGEST_SUMMARY_SYSTEM_PROMPT = """\
You write entries for an email digest. Each entry summarizes one email that \
matched the user's rule named in the request.

Guidelines:
- Lead with what matters to the reader, not with "This email".
- Keep names, dates, amounts and deadlines exactly as written.
- Never invent details that are not in the email.
- Plain text only, no markdown, no greeting or sign-off.
- If the email has no useful information for the reader, set worth_including \
to false and leave content empty.

Always respond by calling the summarize_for_digest tool."""

# Body text beyond this is dropped before it reaches the model
MAX_CONTENT_CHARS = 6000


def build_digest_user_message(
    rule_name: str,
    from_address: str,
    to: str,
    subject: str,
    content: str,
) -> str:
    """Assemble the per-email user message."""
    body = content.strip()
    if len(body) > MAX_CONTENT_CHARS:
        body = body[:MAX_CONTENT_CHARS] + "\n[truncated]"

    return (
        f"Rule: {rule_name}\n"
        f"From: {from_address}\n"
        f"To: {to or '(not given)'}\n"
        f"Subject: {subject or '(no subject)'}\n"
        f"\n<email_body>\n{body}\n</email_body>"
    )
