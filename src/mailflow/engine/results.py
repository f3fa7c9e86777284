"""Structured outcome returned by engine operations.

Engines never raise for outcomes they have already recorded; they return a
JobResult. Only the outermost job handler decides whether a failure result
should be raised to make the queue retry.
"""

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class JobResult:
    success: bool
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, reason: str | None = None, **data: Any) -> "JobResult":
        return cls(success=True, reason=reason, data=data)

    @classmethod
    def skip(cls, reason: str, **data: Any) -> "JobResult":
        return cls(success=True, skipped=True, reason=reason, data=data)

    @classmethod
    def failure(cls, error: str, **data: Any) -> "JobResult":
        return cls(success=False, error=error, data=data)

    def to_dict(self) -> dict[str, Any]:
        """Flatten to a JSON-friendly dict, dropping unset fields."""
        result = asdict(self)
        data = result.pop("data")
        flat = {k: v for k, v in result.items() if v is not None}
        if not self.skipped:
            flat.pop("skipped")
        flat.update(data)
        return flat
