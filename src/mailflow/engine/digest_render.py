"""Digest email rendering.

Items are grouped under a camelCase key per rule name (the display name is
kept alongside) and rendered through the Jinja2 template in
mailflow/templates/digest_email.html with auto-escaping on.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import regex
from jinja2 import Environment, FileSystemLoader, select_autoescape

from mailflow.core.timeutil import utc_now

_TEMPLATES_DIR = Path(__file__).parent.parent / "templates"
DIGEST_TEMPLATE = "digest_email.html"

_WORD_PATTERN = regex.compile(r"[\p{L}\p{N}]+")

_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def camel_case(value: str) -> str:
    """Rule name to grouping key, e.g. Cold Email -> coldEmail."""
    words = _WORD_PATTERN.findall(value or "")
    if not words:
        return ""
    first, *rest = words
    return first.lower() + "".join(w[:1].upper() + w[1:].lower() for w in rest)


@dataclass
class DigestEntry:
    content: str
    sender: str
    subject: str


@dataclass
class DigestSection:
    key: str
    rule_name: str
    entries: list[DigestEntry] = field(default_factory=list)


@dataclass
class DigestContent:
    """Grouped digest entries in first-seen rule order."""

    sections: dict[str, DigestSection] = field(default_factory=dict)

    def add(self, rule_name: str, entry: DigestEntry) -> None:
        key = camel_case(rule_name) or "other"
        section = self.sections.get(key)
        if section is None:
            section = self.sections[key] = DigestSection(key=key, rule_name=rule_name)
        section.entries.append(entry)

    @property
    def total_entries(self) -> int:
        return sum(len(s.entries) for s in self.sections.values())

    def __bool__(self) -> bool:
        return bool(self.sections)


def generate_digest_subject(content: DigestContent) -> str:
    """Subject line summarising what the digest holds."""
    total = content.total_entries
    if total == 0:
        return "Your email digest"

    sections = sorted(content.sections.values(), key=lambda s: len(s.entries), reverse=True)
    names = [s.rule_name for s in sections[:2]]
    if len(sections) > 2:
        names.append(f"{len(sections) - 2} more")
    noun = "email" if total == 1 else "emails"
    return f"Your email digest: {total} {noun} in {', '.join(names)}"


def render_digest_html(
    content: DigestContent,
    account_id: str,
    base_url: str,
    date: datetime | None = None,
) -> str:
    template = _env.get_template(DIGEST_TEMPLATE)
    return template.render(
        sections=list(content.sections.values()),
        total=content.total_entries,
        date=date or utc_now(),
        base_url=base_url.rstrip("/"),
        account_id=account_id,
    )
