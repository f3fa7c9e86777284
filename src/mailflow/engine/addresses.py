"""Email address parsing helpers.

Sender fields arrive as either a bare address or "Display Name <address>".
Patterns run through the `regex` module with a timeout so a pathological
header cannot stall a job.
"""

import regex

ADDRESS_PATTERN = regex.compile(r"<\s*([^<>\s]+@[^<>\s]+)\s*>")
BARE_ADDRESS_PATTERN = regex.compile(r"[^\s<>\"',;]+@[^\s<>\"',;]+")
REGEX_TIMEOUT = 1.0

ASSISTANT_PLUS_TAG = "assistant"


def extract_email_address(value: str | None) -> str:
    """Lowercased address from a header value, or "" if none can be found."""
    if not value:
        return ""
    try:
        match = ADDRESS_PATTERN.search(value, timeout=REGEX_TIMEOUT)
        if match:
            return match.group(1).strip().lower()
        match = BARE_ADDRESS_PATTERN.search(value, timeout=REGEX_TIMEOUT)
        return match.group(0).strip().lower() if match else ""
    except TimeoutError:
        return ""


def extract_name_from_email(value: str | None) -> str:
    """Display name from a header value, falling back to the address.

    "Jane Doe <jane@example.com>" -> "Jane Doe"
    "jane@example.com"            -> "jane@example.com"
    """
    if not value:
        return ""
    value = value.strip()
    if "<" in value:
        name = value.split("<", 1)[0].strip().strip('"').strip()
        if name:
            return name
        return extract_email_address(value) or value
    return value


def extract_domain(email: str) -> str:
    """Lowercase domain of an address, or "" if invalid."""
    if not email or "@" not in email:
        return ""
    return email.rsplit("@", 1)[1].lower()


def is_assistant_email(
    user_email: str, email_to_check: str, assistant_email: str | None = None
) -> bool:
    """Whether a sender is the account's own assistant.

    Matches the configured assistant address and the user's
    "+assistant" plus-address (jane+assistant@example.com).
    """
    address = extract_email_address(email_to_check)
    if not address:
        return False

    if assistant_email and address == extract_email_address(assistant_email):
        return True

    user_address = extract_email_address(user_email)
    if "@" not in user_address:
        return False
    local, domain = user_address.rsplit("@", 1)
    local = local.split("+", 1)[0]
    return address == f"{local}+{ASSISTANT_PLUS_TAG}@{domain}"
